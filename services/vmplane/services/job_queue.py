"""Durable at-least-once job queue on Redis.

Layout per queue (prefix ``{key_prefix}:{name}``):

    :job:{id}         JSON envelope, present while the job is in flight
    :waiting          list of job ids ready to run (LPUSH in, pop from the right)
    :active:{worker}  list of job ids reserved by one worker (BLMOVE target)
    :delayed          zset of job ids waiting out a retry backoff, scored by ready time
    :completed        bounded list of finished envelopes
    :failed           bounded list of envelopes that exhausted their retries

A job's id is ``{kind}-{vm_id}``, so enqueueing the same operation for the
same VM while a previous one is in flight is a no-op. A worker that dies
leaves its ids in its active list; ``recover_orphaned`` hands them back to
``waiting`` once the worker's heartbeat has expired.
"""

import time
from datetime import datetime
from enum import StrEnum
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from vmplane.config import RetryPolicy, settings
from vmplane.db.models import utc_now
from vmplane.logging_config import get_logger
from vmplane.redis.client import get_redis_client

logger = get_logger(__name__)

PROVISION_QUEUE = "provision"
CONTROL_QUEUE = "control"

# KEYS: job key, waiting list. ARGV: envelope, job id.
_ENQUEUE_SCRIPT = """
if redis.call('SET', KEYS[1], ARGV[1], 'NX') then
    redis.call('LPUSH', KEYS[2], ARGV[2])
    return 1
end
return 0
"""

# KEYS: delayed zset, waiting list. ARGV: now.
_PROMOTE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""


class JobKind(StrEnum):
    PROVISION = "provision"
    START = "start"
    STOP = "stop"
    DESTROY = "destroy"


class Job(BaseModel):
    """Queue envelope."""

    id: str
    kind: JobKind
    vm_id: str
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=utc_now)
    last_error: str = ""
    lock_token: str = ""

    @classmethod
    def create(
        cls, kind: JobKind, vm_id: str, user_id: str, payload: dict[str, Any] | None = None
    ) -> "Job":
        return cls(
            id=f"{kind}-{vm_id}",
            kind=kind,
            vm_id=vm_id,
            user_id=user_id,
            payload=payload or {},
        )


def queue_name_for(kind: JobKind) -> str:
    return PROVISION_QUEUE if kind == JobKind.PROVISION else CONTROL_QUEUE


def retry_policy_for(queue_name: str) -> RetryPolicy:
    if queue_name == PROVISION_QUEUE:
        return settings.queue.provision_retry
    return settings.queue.control_retry


class RedisJobQueue:
    """One named queue with its retry and retention policy."""

    def __init__(
        self,
        name: str,
        policy: RetryPolicy | None = None,
        redis: aioredis.Redis | None = None,
        key_prefix: str | None = None,
    ) -> None:
        self.name = name
        self.policy = policy or retry_policy_for(name)
        self._client = redis
        self._prefix = f"{key_prefix or settings.queue.key_prefix}:{name}"

    @property
    def _redis(self) -> aioredis.Redis:
        return self._client if self._client is not None else get_redis_client()

    # --- Keys ---

    def job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def active_key(self, worker_id: str) -> str:
        return f"{self._prefix}:active:{worker_id}"

    @property
    def waiting_key(self) -> str:
        return f"{self._prefix}:waiting"

    @property
    def delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    @property
    def completed_key(self) -> str:
        return f"{self._prefix}:completed"

    @property
    def failed_key(self) -> str:
        return f"{self._prefix}:failed"

    # --- Producer ---

    async def enqueue(self, job: Job) -> bool:
        """Queue a job. Returns False if a job with the same id is already in flight."""
        created = await self._redis.eval(
            _ENQUEUE_SCRIPT, 2, self.job_key(job.id), self.waiting_key,
            job.model_dump_json(), job.id,
        )
        if not created:
            logger.info("Job already in flight", queue=self.name, job_id=job.id)
            return False
        logger.info("Job enqueued", queue=self.name, job_id=job.id, kind=str(job.kind))
        return True

    # --- Consumer ---

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        moved = await self._redis.eval(
            _PROMOTE_SCRIPT, 2, self.delayed_key, self.waiting_key, time.time()
        )
        if moved:
            logger.debug("Promoted delayed jobs", queue=self.name, count=moved)
        return int(moved or 0)

    async def reserve(self, worker_id: str, timeout: float) -> Job | None:
        """Block up to timeout seconds for the next job and claim it for worker_id."""
        await self.promote_delayed()
        active = self.active_key(worker_id)
        job_id = await self._redis.blmove(self.waiting_key, active, timeout, "RIGHT", "LEFT")
        if job_id is None:
            return None

        raw = await self._redis.get(self.job_key(job_id))
        if raw is None:
            logger.warning("Reserved job has no envelope, dropping", queue=self.name, job_id=job_id)
            await self._redis.lrem(active, 1, job_id)
            return None

        job = Job.model_validate_json(raw)
        job.attempts += 1
        await self._redis.set(self.job_key(job.id), job.model_dump_json())
        return job

    async def ack(self, job: Job, worker_id: str) -> None:
        """Mark a reserved job completed."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key(worker_id), 1, job.id)
            pipe.delete(self.job_key(job.id))
            pipe.lpush(self.completed_key, job.model_dump_json())
            pipe.ltrim(self.completed_key, 0, max(self.policy.keep_completed - 1, 0))
            await pipe.execute()

    async def fail(self, job: Job, worker_id: str, exc: BaseException) -> bool:
        """Record a failed attempt. Returns True if a retry was scheduled."""
        job.last_error = f"{type(exc).__name__}: {exc}"
        retryable = getattr(exc, "retryable", True)

        if retryable and job.attempts < self.policy.attempts:
            delay = self.policy.delay_for(job.attempts)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self.job_key(job.id), job.model_dump_json())
                pipe.lrem(self.active_key(worker_id), 1, job.id)
                pipe.zadd(self.delayed_key, {job.id: time.time() + delay})
                await pipe.execute()
            logger.warning(
                "Job failed, retry scheduled",
                queue=self.name,
                job_id=job.id,
                attempt=job.attempts,
                max_attempts=self.policy.attempts,
                delay_seconds=delay,
                error=job.last_error,
            )
            return True

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key(worker_id), 1, job.id)
            pipe.delete(self.job_key(job.id))
            pipe.lpush(self.failed_key, job.model_dump_json())
            pipe.ltrim(self.failed_key, 0, max(self.policy.keep_failed - 1, 0))
            await pipe.execute()
        logger.error(
            "Job failed permanently",
            queue=self.name,
            job_id=job.id,
            attempts=job.attempts,
            retryable=retryable,
            error=job.last_error,
        )
        return False

    async def discard(self, job: Job, worker_id: str) -> None:
        """Drop a reserved job without recording an outcome, freeing its id for resubmission."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key(worker_id), 1, job.id)
            pipe.delete(self.job_key(job.id))
            await pipe.execute()
        logger.warning("Job discarded", queue=self.name, job_id=job.id, worker_id=worker_id)

    async def recover_orphaned(self, live_worker_ids: set[str]) -> int:
        """Return jobs held by workers that are no longer alive to waiting."""
        recovered = 0
        marker = f"{self._prefix}:active:"
        async for key in self._redis.scan_iter(match=f"{marker}*"):
            worker_id = key[len(marker):]
            if worker_id in live_worker_ids:
                continue
            while True:
                job_id = await self._redis.lmove(key, self.waiting_key, "RIGHT", "LEFT")
                if job_id is None:
                    break
                recovered += 1
                logger.warning(
                    "Recovered orphaned job",
                    queue=self.name,
                    job_id=job_id,
                    dead_worker=worker_id,
                )
        return recovered


# --- Worker liveness ---


def _worker_key(worker_id: str) -> str:
    return f"{settings.queue.key_prefix}:workers:{worker_id}"


async def heartbeat(worker_id: str, ttl_seconds: int) -> None:
    """Refresh a worker's liveness key."""
    redis = get_redis_client()
    await redis.set(_worker_key(worker_id), str(time.time()), ex=ttl_seconds)


async def clear_heartbeat(worker_id: str) -> None:
    redis = get_redis_client()
    await redis.delete(_worker_key(worker_id))


async def live_worker_ids() -> set[str]:
    redis = get_redis_client()
    marker = f"{settings.queue.key_prefix}:workers:"
    return {key[len(marker):] async for key in redis.scan_iter(match=f"{marker}*")}


# --- Module-level queues ---

_queues: dict[str, RedisJobQueue] = {}


def get_queue(name: str) -> RedisJobQueue:
    """Return the shared queue instance for name."""
    if name not in _queues:
        _queues[name] = RedisJobQueue(name)
    return _queues[name]
