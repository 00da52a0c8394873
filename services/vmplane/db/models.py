"""
SQLAlchemy database models for vmplane.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Hard deletes (a destroyed VM leaves no row behind)
"""

import time
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class UserVM(Base):
    """A user's personal virtual machine.

    One row per user. Created in 'provisioning' when a provision job is
    submitted, deleted when a destroy completes.

    State machine: provisioning → running ⇄ (stopping → stopped → starting)
    with destroying → (row deleted) from running, stopped or error. See
    vmplane.services.vm_service for the full transition table.

    Network fields (ip_address, ssh_port, ssh_username) stay null until the
    provisioner has returned a reachable machine.
    """

    __tablename__ = "user_vms"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=generate_uuid7
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    instance_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="provisioning")
    status_message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Sizing (immutable after creation)
    vcpus: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    disk_gb: Mapped[int] = mapped_column(Integer, nullable=False)
    environment_vars: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)

    # Network
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ssh_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ssh_username: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Idle reaper inputs
    auto_stop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_stop_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Usage accounting
    total_runtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_stopped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (Index("ix_user_vms_status_updated_at", "status", "updated_at"),)
