"""
Top-level test configuration for vmplane.
"""

import os
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure test-friendly defaults
os.environ.setdefault("VMPLANE_JSON_LOGS", "false")
os.environ.setdefault("VMPLANE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("VMPLANE_PROVISIONER__BACKEND", "docker")

from vmplane.db.models import UserVM, generate_uuid7, utc_now  # noqa: E402


class FakeSession:
    """In-memory stand-in for an AsyncSession holding UserVM rows by id."""

    def __init__(self) -> None:
        self.vms: dict[uuid.UUID, UserVM] = {}
        self.executed: list = []
        self.commits = 0
        self.flushes = 0

    async def get(self, model, key):
        return self.vms.get(key)

    def add(self, vm: UserVM) -> None:
        self.vms[vm.id] = vm

    async def flush(self) -> None:
        self.flushes += 1

    async def commit(self) -> None:
        self.commits += 1

    async def delete(self, vm: UserVM) -> None:
        self.vms.pop(vm.id, None)

    async def execute(self, stmt):
        self.executed.append(stmt)
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        result.scalars.return_value.all.return_value = []
        return result

    @asynccontextmanager
    async def session(self):
        yield self


@pytest.fixture
def fake_db():
    return FakeSession()


@pytest.fixture
def make_vm():
    """Factory for UserVM rows with every column populated."""

    def _make(**overrides) -> UserVM:
        now = utc_now()
        fields = dict(
            id=generate_uuid7(),
            user_id="user-1",
            instance_id=None,
            status="provisioning",
            status_message="",
            vcpus=2,
            memory_mb=4096,
            disk_gb=10,
            environment_vars={},
            ip_address=None,
            ssh_port=None,
            ssh_username=None,
            auto_stop=True,
            auto_stop_minutes=60,
            total_runtime_minutes=0,
            last_started_at=None,
            last_stopped_at=None,
            last_activity_at=None,
            created_at=now - timedelta(hours=1),
            updated_at=now - timedelta(hours=1),
        )
        fields.update(overrides)
        return UserVM(**fields)

    return _make


@pytest.fixture
def running_vm(make_vm):
    """Factory for a provisioned, running VM."""

    def _make(**overrides) -> UserVM:
        fields = dict(
            status="running",
            instance_id="i-1",
            ip_address="10.0.0.5",
            ssh_port=2222,
            ssh_username="vmuser",
            last_started_at=utc_now() - timedelta(minutes=10),
        )
        fields.update(overrides)
        return make_vm(**fields)

    return _make


@pytest.fixture
def redis_pipe():
    """An AsyncMock redis client whose pipeline() yields a recording pipe."""
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.execute = AsyncMock(return_value=[])
    redis.pipeline = MagicMock(return_value=pipe)
    return redis, pipe
