"""Job submission: the only way callers create lifecycle work.

Each submission takes the VM's generation lock before enqueueing, so a
second start/stop/destroy for a VM with a job still in flight is rejected
with VMBusyError instead of racing the first. The worker releases the lock
once the job has reached its final outcome.
"""

import secrets
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from vmplane.db.models import UserVM
from vmplane.errors import InvalidTransitionError, VMBusyError, VMNotFoundError
from vmplane.logging_config import get_logger
from vmplane.services import vm_lock, vm_service
from vmplane.services.job_queue import Job, JobKind, get_queue, queue_name_for

logger = get_logger(__name__)

# Status a VM must be in for a control job to be accepted, and the status
# the job moves it into.
_ACCEPTS: dict[JobKind, tuple[frozenset[str], str]] = {
    JobKind.START: (frozenset({"stopped"}), "starting"),
    JobKind.STOP: (frozenset({"running"}), "stopping"),
    JobKind.DESTROY: (frozenset({"running", "stopped", "error"}), "destroying"),
}


def _new_lock_token(job_id: str) -> str:
    return f"{job_id}:{secrets.token_hex(4)}"


async def _enqueue_locked(job: Job) -> Job:
    """Take the VM's lock for job and enqueue it, releasing the lock if enqueue fails."""
    job.lock_token = _new_lock_token(job.id)
    if not await vm_lock.acquire(job.vm_id, job.lock_token):
        raise VMBusyError(job.vm_id)

    try:
        enqueued = await get_queue(queue_name_for(job.kind)).enqueue(job)
    except Exception:
        await vm_lock.release(job.vm_id, job.lock_token)
        raise

    if not enqueued:
        await vm_lock.release(job.vm_id, job.lock_token)
        raise VMBusyError(job.vm_id)
    return job


async def submit_provision(
    db: AsyncSession,
    user_id: str,
    tier: str | None = None,
    vcpus: int | None = None,
    memory_mb: int | None = None,
    disk_gb: int | None = None,
    environment_vars: dict[str, Any] | None = None,
) -> tuple[UserVM, Job]:
    """Create the user's VM row and queue its provisioning.

    The row is committed before the job is queued so the worker always
    finds it.
    """
    vm = await vm_service.create_vm_record(
        db,
        user_id,
        tier=tier,
        vcpus=vcpus,
        memory_mb=memory_mb,
        disk_gb=disk_gb,
        environment_vars=environment_vars,
    )
    await db.commit()

    job = Job.create(JobKind.PROVISION, str(vm.id), user_id)
    await _enqueue_locked(job)
    logger.info("Provision submitted", vm_id=str(vm.id), user_id=user_id, job_id=job.id)
    return vm, job


async def _submit_control(db: AsyncSession, vm_id: uuid.UUID | str, kind: JobKind) -> Job:
    vm = await vm_service.get_vm(db, vm_id)
    if vm is None:
        raise VMNotFoundError(str(vm_id))

    accepted, target = _ACCEPTS[kind]
    if vm.status not in accepted:
        raise InvalidTransitionError(vm.status, target)

    job = Job.create(kind, str(vm.id), vm.user_id, payload={"prior_status": vm.status})
    await _enqueue_locked(job)
    logger.info(
        "Control job submitted",
        vm_id=str(vm.id),
        kind=str(kind),
        job_id=job.id,
        status=vm.status,
    )
    return job


async def submit_start(db: AsyncSession, vm_id: uuid.UUID | str) -> Job:
    return await _submit_control(db, vm_id, JobKind.START)


async def submit_stop(db: AsyncSession, vm_id: uuid.UUID | str) -> Job:
    return await _submit_control(db, vm_id, JobKind.STOP)


async def submit_destroy(db: AsyncSession, vm_id: uuid.UUID | str) -> Job:
    return await _submit_control(db, vm_id, JobKind.DESTROY)
