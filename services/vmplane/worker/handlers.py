"""Job handlers: drive one VM through one lifecycle action.

Every handler reads the persisted status first and is safe to re-run:

- a job whose target state is already reached is a no-op success
- a job redelivered while its VM is still in the transitional state it
  set (e.g. 'stopping') calls the provisioner again and finishes
- a status that does not fit the action raises InvalidTransitionError
  without touching the row

The transitional status is committed before the provisioner is called, so
a crash mid-call leaves a VM the reconciler can find. Provisioner and
protocol errors propagate after the row has been updated so the queue's
retry bookkeeping sees them. A failed start or stop leaves the VM in
'error', which no redelivery can act on, so those errors are marked final.
"""

from collections.abc import Awaitable, Callable

from vmplane.config import settings
from vmplane.db.session import get_db_session
from vmplane.errors import (
    InvalidTransitionError,
    PreconditionError,
    VMNotFoundError,
    mark_final,
)
from vmplane.logging_config import get_logger
from vmplane.provisioning import VMSpec, get_provisioner
from vmplane.services import vm_service
from vmplane.services.job_queue import Job, JobKind
from vmplane.services.provision_log import ProvisionLogger

logger = get_logger(__name__)


def vm_name(vm_id: str) -> str:
    """Provider-side name for a VM."""
    return f"{settings.provisioner.name_prefix}-{vm_id.replace('-', '')[:12]}"


async def _record_failure(vm_id: str, expected_status: str, error: Exception) -> None:
    """Move a VM still in expected_status to 'error' with the failure message."""
    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, vm_id)
        if vm is not None and vm.status == expected_status:
            await vm_service.mark_error(db, vm, f"{type(error).__name__}: {error}")


# --- Provision ---


async def handle_provision(job: Job) -> None:
    plog = ProvisionLogger(job.user_id, job_id=job.id, vm_id=job.vm_id)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            logger.info("VM no longer exists, nothing to provision", vm_id=job.vm_id)
            return
        if vm.status == "running" and vm.instance_id:
            logger.info("VM already provisioned", vm_id=job.vm_id, instance_id=vm.instance_id)
            return

        if vm.status == "error" and job.attempts > 1:
            await vm_service.transition_vm(db, vm, "provisioning", retry=True)
            await plog.info(f"Retrying provisioning (attempt {job.attempts})...")
        elif vm.status != "provisioning":
            raise InvalidTransitionError(vm.status, "provisioning")
        elif job.attempts <= 1:
            await plog.clear()

        spec = VMSpec(
            name=vm_name(job.vm_id),
            vcpus=vm.vcpus,
            memory_mb=vm.memory_mb,
            disk_gb=vm.disk_gb,
            env_vars={k: str(v) for k, v in (vm.environment_vars or {}).items()},
        )

    await plog.info(
        f"Creating VM with {spec.vcpus} vCPUs, {spec.memory_mb}MB RAM, {spec.disk_gb}GB disk..."
    )
    provisioner = get_provisioner()
    try:
        details = await provisioner.create_vm(spec)
    except Exception as e:
        await _record_failure(job.vm_id, "provisioning", e)
        await plog.error(f"Provisioning failed: {e}")
        raise

    await plog.info(f"VM created: {details.instance_id}")
    await plog.info(f"IP: {details.ip_address}, SSH port: {details.ssh_port}")

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            orphan = details.instance_id
        else:
            orphan = None
            await vm_service.mark_provisioned(db, vm, details, settings.ssh.default_username)

    if orphan is not None:
        # The row went away while the machine was being created.
        logger.warning("VM record vanished during provisioning, destroying", instance_id=orphan)
        await provisioner.destroy_vm(orphan)
        return

    await plog.success("Provisioning complete! Your VM is ready and running.")


# --- Start ---


async def handle_start(job: Job) -> None:
    plog = ProvisionLogger(job.user_id, job_id=job.id, vm_id=job.vm_id)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            raise VMNotFoundError(job.vm_id)
        if vm.status == "running":
            logger.info("VM already running", vm_id=job.vm_id)
            return
        if vm.status == "stopped":
            await vm_service.transition_vm(db, vm, "starting")
        elif vm.status != "starting":
            raise InvalidTransitionError(vm.status, "starting")
        instance_id = vm.instance_id

    await plog.info("Starting VM...")
    try:
        if not instance_id:
            raise PreconditionError("VM has no instance to start")
        await get_provisioner().start_vm(instance_id)
    except Exception as e:
        await _record_failure(job.vm_id, "starting", e)
        await plog.error(f"Start failed: {e}")
        # The VM is in 'error' now; a redelivery has nothing to start.
        raise mark_final(e)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            raise VMNotFoundError(job.vm_id)
        await vm_service.mark_started(db, vm)

    await plog.success("VM is running.")


# --- Stop ---


async def handle_stop(job: Job) -> None:
    plog = ProvisionLogger(job.user_id, job_id=job.id, vm_id=job.vm_id)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            raise VMNotFoundError(job.vm_id)
        if vm.status == "stopped":
            logger.info("VM already stopped", vm_id=job.vm_id)
            return
        if vm.status == "running":
            await vm_service.transition_vm(db, vm, "stopping")
        elif vm.status != "stopping":
            raise InvalidTransitionError(vm.status, "stopping")
        instance_id = vm.instance_id

    await plog.info("Stopping VM...")
    try:
        if not instance_id:
            raise PreconditionError("VM has no instance to stop")
        await get_provisioner().stop_vm(instance_id)
    except Exception as e:
        await _record_failure(job.vm_id, "stopping", e)
        await plog.error(f"Stop failed: {e}")
        raise mark_final(e)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            raise VMNotFoundError(job.vm_id)
        minutes = await vm_service.mark_stopped(db, vm)

    await plog.success(f"VM stopped after {minutes} minutes of runtime.")


# --- Destroy ---


async def handle_destroy(job: Job) -> None:
    plog = ProvisionLogger(job.user_id, job_id=job.id, vm_id=job.vm_id)

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is None:
            logger.info("VM already destroyed", vm_id=job.vm_id)
            return
        if vm.status in ("running", "stopped", "error"):
            prior_status = vm.status
            await vm_service.transition_vm(db, vm, "destroying")
        elif vm.status == "destroying":
            # Redelivery: fall back to the status seen at submission.
            prior_status = job.payload.get("prior_status", "error")
            if not vm_service.can_transition("destroying", prior_status, restore=True):
                prior_status = "error"
        else:
            raise InvalidTransitionError(vm.status, "destroying")
        instance_id = vm.instance_id

    await plog.info("Destroying VM...")
    try:
        if instance_id:
            await get_provisioner().destroy_vm(instance_id)
    except Exception as e:
        async with get_db_session() as db:
            vm = await vm_service.get_vm(db, job.vm_id)
            if vm is not None and vm.status == "destroying":
                await vm_service.transition_vm(
                    db,
                    vm,
                    prior_status,
                    status_message=f"Destroy failed: {type(e).__name__}: {e}",
                    restore=True,
                )
        await plog.error(f"Destroy failed: {e}")
        raise

    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, job.vm_id)
        if vm is not None:
            await vm_service.delete_vm(db, vm)

    await plog.success("VM destroyed.")


HANDLERS: dict[JobKind, Callable[[Job], Awaitable[None]]] = {
    JobKind.PROVISION: handle_provision,
    JobKind.START: handle_start,
    JobKind.STOP: handle_stop,
    JobKind.DESTROY: handle_destroy,
}


async def handle_job(job: Job) -> None:
    """Dispatch a job to its handler by kind."""
    await HANDLERS[job.kind](job)
