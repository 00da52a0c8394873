"""Reconciler: background task that recovers VMs stuck mid-transition.

A worker that crashes during a handler leaves its VM in provisioning,
starting, stopping or destroying. Queue redelivery normally finishes the
job; when it does not (retries exhausted, job lost with the worker's Redis
state), the VM would otherwise sit in the transitional state forever.

Each sweep looks for VMs whose transitional status is older than
``stuck_after_minutes`` and whose generation lock is free (no job is
working on them) and forces them to 'error' for operator review.
"""

import asyncio
from datetime import timedelta

from vmplane.config import settings
from vmplane.db.session import get_db_session
from vmplane.logging_config import get_logger
from vmplane.services import vm_lock, vm_service
from vmplane.services.provision_log import ProvisionLogger

logger = get_logger(__name__)


async def reconcile_once() -> int:
    """Run one sweep. Returns the number of VMs forced to error."""
    threshold = timedelta(minutes=settings.reconciler.stuck_after_minutes)
    forced = 0

    async with get_db_session() as db:
        stuck = await vm_service.find_stuck_vms(db, threshold)
        for vm in stuck:
            vm_id = str(vm.id)
            if await vm_lock.is_locked(vm_id):
                logger.debug("Stuck VM has a job in flight, skipping", vm_id=vm_id, status=vm.status)
                continue

            previous = vm.status
            message = (
                f"Stuck in '{previous}' since {vm.updated_at.isoformat()}; "
                "marked error by reconciler"
            )
            await vm_service.mark_error(db, vm, message)
            forced += 1
            logger.warning("Stuck VM marked error", vm_id=vm_id, from_status=previous)
            await ProvisionLogger(vm.user_id, vm_id=vm_id).error(
                f"VM was stuck in '{previous}' and has been marked as failed"
            )

    return forced


async def run_reconciler() -> None:
    """Main reconciler loop, run as an async background task in the worker."""
    interval = settings.reconciler.interval_seconds
    logger.info(
        "Reconciler started",
        interval_seconds=interval,
        stuck_after_minutes=settings.reconciler.stuck_after_minutes,
    )

    while True:
        try:
            forced = await reconcile_once()
            if forced:
                logger.info("Reconciler sweep complete", forced=forced)
        except Exception as e:
            logger.error("Reconciler sweep failed", error=str(e), exc_info=e)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Reconciler stopping")
            return
