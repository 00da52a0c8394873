"""Bounded-concurrency consumer for one job queue.

Each reserved job runs as its own asyncio task. On success the job is
acked; on failure the queue records the attempt and decides whether to
retry. The VM's generation lock is released once no retry is pending.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from vmplane.logging_config import get_logger
from vmplane.services import vm_lock
from vmplane.services.job_queue import Job, RedisJobQueue

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


class WorkerPool:
    """Consumes one queue with at most ``concurrency`` jobs in flight."""

    def __init__(
        self,
        queue: RedisJobQueue,
        concurrency: int,
        worker_id: str,
        handler: JobHandler,
        reserve_timeout: float = 5.0,
        bookkeeping_attempts: int = 5,
        bookkeeping_backoff: float = 0.5,
    ) -> None:
        self.queue = queue
        self.concurrency = concurrency
        self.worker_id = worker_id
        self._handler = handler
        self._reserve_timeout = reserve_timeout
        self._bookkeeping_attempts = max(bookkeeping_attempts, 1)
        self._bookkeeping_backoff = bookkeeping_backoff
        self.active_tasks: dict[str, asyncio.Task] = {}  # job_id → task
        self.active_jobs: dict[str, Job] = {}

    async def run(self, shutdown: asyncio.Event) -> None:
        """Reserve and dispatch jobs until shutdown is set."""
        logger.info(
            "Worker pool started",
            queue=self.queue.name,
            concurrency=self.concurrency,
            worker_id=self.worker_id,
        )
        while not shutdown.is_set():
            self._reap()

            if len(self.active_tasks) >= self.concurrency:
                await asyncio.wait(
                    list(self.active_tasks.values()),
                    timeout=self._reserve_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue

            try:
                job = await self.queue.reserve(self.worker_id, self._reserve_timeout)
            except Exception as e:
                logger.error("Reserve failed", queue=self.queue.name, error=str(e))
                try:
                    await asyncio.wait_for(shutdown.wait(), timeout=self._reserve_timeout)
                except TimeoutError:
                    pass
                continue

            if job is None:
                continue
            self.dispatch(job)

        logger.info("Worker pool stopped reserving", queue=self.queue.name)

    def dispatch(self, job: Job) -> asyncio.Task:
        task = asyncio.create_task(self.process(job), name=f"job-{job.id}")
        self.active_tasks[job.id] = task
        self.active_jobs[job.id] = job
        return task

    async def process(self, job: Job) -> None:
        """Run one job to its outcome and record it.

        Recording the outcome is retried. If it still fails the job is
        discarded so its id and the VM lock do not outlive this attempt.
        """
        with structlog.contextvars.bound_contextvars(
            job_id=job.id, vm_id=job.vm_id, kind=str(job.kind), attempt=job.attempts
        ):
            logger.info("Job started", queue=self.queue.name)
            try:
                if job.lock_token:
                    await vm_lock.extend(job.vm_id, job.lock_token)
                await self._handler(job)
            except Exception as e:
                logger.warning("Job failed", error=str(e), error_type=type(e).__name__)
                try:
                    retry_scheduled = await self._record("fail", self.queue.fail, job, self.worker_id, e)
                except Exception:
                    await self._discard(job)
                    return
                if not retry_scheduled:
                    await self._release_lock(job)
                return

            try:
                await self._record("ack", self.queue.ack, job, self.worker_id)
            except Exception:
                await self._discard(job)
                return
            await self._release_lock(job)
            logger.info("Job completed", queue=self.queue.name)

    async def _record(
        self, name: str, action: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        """Call a queue bookkeeping method, retrying with backoff."""
        for attempt in range(1, self._bookkeeping_attempts + 1):
            try:
                return await action(*args)
            except Exception as e:
                logger.warning(
                    "Queue bookkeeping failed",
                    action=name,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt == self._bookkeeping_attempts:
                    raise
                await asyncio.sleep(self._bookkeeping_backoff * 2 ** (attempt - 1))

    async def _discard(self, job: Job) -> None:
        try:
            await self.queue.discard(job, self.worker_id)
        except Exception as e:
            # Stays in the active list until this worker restarts and recovers it.
            logger.error("Failed to discard job", error=str(e))
        await self._release_lock(job)

    async def _release_lock(self, job: Job) -> None:
        if not job.lock_token:
            return
        try:
            await vm_lock.release(job.vm_id, job.lock_token)
        except Exception as e:
            logger.warning("VM lock release failed, left to expire", error=str(e))

    async def extend_locks(self) -> None:
        """Keep the generation locks of running jobs alive."""
        for job in list(self.active_jobs.values()):
            if job.lock_token:
                await vm_lock.extend(job.vm_id, job.lock_token)

    def _reap(self) -> None:
        """Drop finished tasks, logging any that died with an unexpected exception."""
        finished = [jid for jid, task in self.active_tasks.items() if task.done()]
        for jid in finished:
            task = self.active_tasks.pop(jid)
            self.active_jobs.pop(jid, None)
            if not task.cancelled() and task.exception():
                logger.error(
                    "Job task crashed",
                    job_id=jid,
                    error=str(task.exception()),
                )

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight jobs, cancelling any still running after timeout.

        A cancelled job stays in this worker's active list and is redelivered
        once the worker's heartbeat has expired.
        """
        if not self.active_tasks:
            return
        logger.info("Draining worker pool", queue=self.queue.name, active=len(self.active_tasks))
        _, pending = await asyncio.wait(list(self.active_tasks.values()), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._reap()
