"""Worker process main loop.

Entrypoint: python -m vmplane.worker

The worker:
1. Initializes the database, Redis and the provisioning backend
2. Hands jobs orphaned by dead workers back to their queues
3. Runs the provision pool (concurrency 2) and the control pool (concurrency 5)
4. Refreshes its liveness key and the locks of running jobs on a heartbeat
5. Runs the stuck-VM reconciler
6. On SIGTERM/SIGINT stops reserving, drains in-flight jobs and exits
"""

import asyncio
import contextlib
import signal
import socket
import uuid

from vmplane.config import settings
from vmplane.logging_config import configure_logging, get_logger
from vmplane.services.job_queue import (
    CONTROL_QUEUE,
    PROVISION_QUEUE,
    clear_heartbeat,
    get_queue,
    heartbeat,
    live_worker_ids,
)
from vmplane.worker.handlers import handle_job
from vmplane.worker.pool import WorkerPool

logger = get_logger(__name__)

DRAIN_TIMEOUT_SECONDS = 120

# Shutdown flag
_shutdown = asyncio.Event()


class VMWorker:
    """Runs both worker pools and their housekeeping loops."""

    def __init__(self, worker_id: str | None = None) -> None:
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        cfg = settings.queue
        self.pools = [
            WorkerPool(
                get_queue(PROVISION_QUEUE),
                cfg.provision_concurrency,
                self.worker_id,
                handle_job,
                reserve_timeout=cfg.reserve_timeout_seconds,
                bookkeeping_attempts=cfg.bookkeeping_attempts,
                bookkeeping_backoff=cfg.bookkeeping_backoff_seconds,
            ),
            WorkerPool(
                get_queue(CONTROL_QUEUE),
                cfg.control_concurrency,
                self.worker_id,
                handle_job,
                reserve_timeout=cfg.reserve_timeout_seconds,
                bookkeeping_attempts=cfg.bookkeeping_attempts,
                bookkeeping_backoff=cfg.bookkeeping_backoff_seconds,
            ),
        ]

    async def start(self) -> None:
        """Main entry point: initialize and start loops."""
        from vmplane.db.session import close_db, init_db
        from vmplane.provisioning import close_provisioner, init_provisioner
        from vmplane.redis.client import close_redis, init_redis
        from vmplane.services.reconciler import run_reconciler

        await init_db(pool_size=5, max_overflow=5)
        await init_redis()
        init_provisioner()

        reconciler_task: asyncio.Task | None = None
        try:
            await heartbeat(self.worker_id, settings.queue.heartbeat_ttl_seconds)
            logger.info("Worker started", worker_id=self.worker_id)

            await self.recover_orphaned_jobs()

            if settings.reconciler.enabled:
                reconciler_task = asyncio.create_task(run_reconciler())

            await asyncio.gather(
                self._heartbeat_loop(),
                *(pool.run(_shutdown) for pool in self.pools),
                self._shutdown_waiter(),
            )
        finally:
            if reconciler_task is not None:
                reconciler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reconciler_task
            with contextlib.suppress(Exception):
                await clear_heartbeat(self.worker_id)
            await close_provisioner()
            await close_redis()
            await close_db()

    async def recover_orphaned_jobs(self) -> int:
        """Requeue jobs held by workers whose heartbeat has expired."""
        live = await live_worker_ids()
        live.add(self.worker_id)
        recovered = 0
        for pool in self.pools:
            recovered += await pool.queue.recover_orphaned(live)
        if recovered:
            logger.warning("Recovered orphaned jobs", count=recovered)
        return recovered

    async def _shutdown_waiter(self) -> None:
        """Wait for shutdown signal, then drain in-flight jobs."""
        await _shutdown.wait()
        logger.info("Shutdown signal received, draining active jobs...")
        await asyncio.gather(*(pool.drain(DRAIN_TIMEOUT_SECONDS) for pool in self.pools))

    async def _heartbeat_loop(self) -> None:
        """Refresh liveness, job locks and orphan recovery every heartbeat interval."""
        interval = settings.queue.heartbeat_interval_seconds
        while not _shutdown.is_set():
            try:
                await heartbeat(self.worker_id, settings.queue.heartbeat_ttl_seconds)
                for pool in self.pools:
                    await pool.extend_locks()
                await self.recover_orphaned_jobs()
            except Exception as e:
                logger.error("Heartbeat failed", error=str(e))

            try:
                await asyncio.wait_for(_shutdown.wait(), timeout=interval)
                return  # Shutdown signaled
            except TimeoutError:
                pass


def _handle_signals(loop: asyncio.AbstractEventLoop) -> None:
    """Register signal handlers for graceful shutdown."""
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown.set)


def main() -> None:
    """Main entry point for the worker."""
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, component="worker"
    )
    logger.info(
        "Starting vmplane worker",
        backend=str(settings.provisioner.backend),
        provision_concurrency=settings.queue.provision_concurrency,
        control_concurrency=settings.queue.control_concurrency,
    )

    worker = VMWorker()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    _handle_signals(loop)

    try:
        loop.run_until_complete(worker.start())
    except KeyboardInterrupt:
        _shutdown.set()
    finally:
        loop.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
