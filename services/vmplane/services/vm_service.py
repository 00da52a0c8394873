"""VM state machine, accounting and record management.

Status is written only from worker code paths (job handlers and the
reconciler). Request-handling code reads records and creates the initial
'provisioning' row at submission time, nothing else.
"""

import math
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vmplane.config import TierResources, settings
from vmplane.db.models import UserVM, generate_uuid7, utc_now
from vmplane.errors import InvalidTransitionError, VMExistsError
from vmplane.logging_config import get_logger
from vmplane.provisioning.protocol import VMDetails

logger = get_logger(__name__)

# Valid state transitions
VALID_TRANSITIONS: dict[str, set[str]] = {
    "provisioning": {"running", "error"},
    "running": {"stopping", "destroying"},
    "stopping": {"stopped", "error"},
    "stopped": {"starting", "destroying"},
    "starting": {"running", "error"},
    "error": {"destroying"},
}

# A queue retry re-runs the failed provision job from 'error'.
RETRY_TRANSITIONS: dict[str, set[str]] = {
    "error": {"provisioning"},
}

# A failed destroy puts the row back where it was; the reconciler forces
# a stuck destroy to 'error'.
RESTORE_TRANSITIONS: dict[str, set[str]] = {
    "destroying": {"running", "stopped", "error"},
}

TRANSITIONAL_STATES = frozenset({"provisioning", "starting", "stopping", "destroying"})

# States a VM can only be in after a successful provision.
NETWORKED_STATES = frozenset({"running", "stopping", "stopped", "starting"})


def can_transition(
    current: str, target: str, retry: bool = False, restore: bool = False
) -> bool:
    """Check if a state transition is valid."""
    if target in VALID_TRANSITIONS.get(current, set()):
        return True
    if retry and target in RETRY_TRANSITIONS.get(current, set()):
        return True
    if restore and target in RESTORE_TRANSITIONS.get(current, set()):
        return True
    return False


def has_network(vm: UserVM) -> bool:
    """True when the VM carries everything needed to reach it over SSH."""
    return bool(vm.ip_address) and vm.ssh_port is not None and bool(vm.ssh_username)


def accrued_minutes(started_at: datetime | None, now: datetime) -> int:
    """Whole minutes elapsed since started_at (floor, never negative)."""
    if started_at is None:
        return 0
    seconds = (now - started_at).total_seconds()
    return max(0, math.floor(seconds / 60))


def resources_for_tier(
    tier: str | None = None,
    vcpus: int | None = None,
    memory_mb: int | None = None,
    disk_gb: int | None = None,
) -> TierResources:
    """Resolve VM sizing from the tier table; explicit values win."""
    tier = tier or settings.default_tier
    base = settings.tiers.get(tier)
    if base is None:
        raise ValueError(f"Unknown tier: {tier}")
    return base.model_copy(
        update={
            "vcpus": vcpus if vcpus is not None else base.vcpus,
            "memory_mb": memory_mb if memory_mb is not None else base.memory_mb,
            "disk_gb": disk_gb if disk_gb is not None else base.disk_gb,
        }
    )


# --- Reads ---


async def get_vm(db: AsyncSession, vm_id: uuid.UUID | str) -> UserVM | None:
    if isinstance(vm_id, str):
        try:
            vm_id = uuid.UUID(vm_id)
        except ValueError:
            return None
    return await db.get(UserVM, vm_id)


async def get_vm_for_user(db: AsyncSession, user_id: str) -> UserVM | None:
    result = await db.execute(select(UserVM).where(UserVM.user_id == user_id))
    return result.scalar_one_or_none()


async def find_stuck_vms(db: AsyncSession, older_than: timedelta) -> list[UserVM]:
    """VMs sitting in a transitional state since before now - older_than."""
    cutoff = utc_now() - older_than
    result = await db.execute(
        select(UserVM)
        .where(UserVM.status.in_(TRANSITIONAL_STATES))
        .where(UserVM.updated_at < cutoff)
        .order_by(UserVM.updated_at)
    )
    return list(result.scalars().all())


# --- Writes ---


async def create_vm_record(
    db: AsyncSession,
    user_id: str,
    tier: str | None = None,
    vcpus: int | None = None,
    memory_mb: int | None = None,
    disk_gb: int | None = None,
    environment_vars: dict[str, Any] | None = None,
) -> UserVM:
    """Create the user's VM row in 'provisioning' with no network fields."""
    if await get_vm_for_user(db, user_id) is not None:
        raise VMExistsError(user_id)

    resources = resources_for_tier(tier, vcpus=vcpus, memory_mb=memory_mb, disk_gb=disk_gb)
    now = utc_now()
    vm = UserVM(
        id=generate_uuid7(),
        user_id=user_id,
        status="provisioning",
        status_message="",
        vcpus=resources.vcpus,
        memory_mb=resources.memory_mb,
        disk_gb=resources.disk_gb,
        environment_vars=dict(environment_vars or {}),
        auto_stop=resources.auto_stop,
        auto_stop_minutes=resources.auto_stop_minutes,
        total_runtime_minutes=0,
        created_at=now,
        updated_at=now,
    )
    db.add(vm)
    await db.flush()

    logger.info(
        "VM record created",
        vm_id=str(vm.id),
        user_id=user_id,
        vcpus=vm.vcpus,
        memory_mb=vm.memory_mb,
        disk_gb=vm.disk_gb,
    )
    return vm


async def transition_vm(
    db: AsyncSession,
    vm: UserVM,
    target_status: str,
    status_message: str = "",
    retry: bool = False,
    restore: bool = False,
) -> UserVM:
    """Transition a VM to a new status."""
    if not can_transition(vm.status, target_status, retry=retry, restore=restore):
        raise InvalidTransitionError(vm.status, target_status)

    old_status = vm.status
    vm.status = target_status
    vm.status_message = status_message
    vm.updated_at = utc_now()
    await db.flush()

    logger.info(
        "VM transitioned",
        vm_id=str(vm.id),
        from_status=old_status,
        to_status=target_status,
    )
    return vm


async def mark_provisioned(
    db: AsyncSession, vm: UserVM, details: VMDetails, ssh_username: str
) -> UserVM:
    """provisioning → running, recording every network field in one update."""
    if vm.status != "provisioning":
        raise InvalidTransitionError(vm.status, "running")

    now = utc_now()
    vm.status = "running"
    vm.status_message = ""
    vm.instance_id = details.instance_id
    vm.ip_address = details.ip_address
    vm.ssh_port = details.ssh_port
    vm.ssh_username = ssh_username
    vm.last_started_at = now
    vm.updated_at = now
    await db.flush()

    logger.info(
        "VM provisioned",
        vm_id=str(vm.id),
        instance_id=details.instance_id,
        ip_address=details.ip_address,
        ssh_port=details.ssh_port,
    )
    return vm


async def mark_started(db: AsyncSession, vm: UserVM) -> UserVM:
    """starting → running and open a new runtime interval."""
    if vm.status != "starting":
        raise InvalidTransitionError(vm.status, "running")
    vm.last_started_at = utc_now()
    return await transition_vm(db, vm, "running")


async def mark_stopped(db: AsyncSession, vm: UserVM) -> int:
    """stopping → stopped and accrue the runtime interval. Returns minutes added."""
    if vm.status != "stopping":
        raise InvalidTransitionError(vm.status, "stopped")

    now = utc_now()
    minutes = accrued_minutes(vm.last_started_at, now)
    vm.last_stopped_at = now
    vm.total_runtime_minutes = (vm.total_runtime_minutes or 0) + minutes
    await transition_vm(db, vm, "stopped")

    logger.info(
        "VM runtime accrued",
        vm_id=str(vm.id),
        minutes=minutes,
        total_runtime_minutes=vm.total_runtime_minutes,
    )
    return minutes


async def mark_error(db: AsyncSession, vm: UserVM, message: str) -> UserVM:
    """Record a failure. Only transitional states (and destroying, by restore) may fail."""
    return await transition_vm(
        db, vm, "error", status_message=message[:2000], restore=vm.status == "destroying"
    )


async def delete_vm(db: AsyncSession, vm: UserVM) -> None:
    """Remove the row of a VM whose destroy has completed."""
    if vm.status != "destroying":
        raise InvalidTransitionError(vm.status, "deleted")
    vm_id = str(vm.id)
    await db.delete(vm)
    await db.flush()
    logger.info("VM record deleted", vm_id=vm_id)


async def touch_activity(db: AsyncSession, vm_id: uuid.UUID | str) -> None:
    """Refresh last_activity_at, read by the idle reaper."""
    if isinstance(vm_id, str):
        vm_id = uuid.UUID(vm_id)
    await db.execute(
        update(UserVM).where(UserVM.id == vm_id).values(last_activity_at=utc_now())
    )
