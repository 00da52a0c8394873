"""Per-VM generation lock.

At most one lifecycle job per VM is in flight. The lock is taken when a job
is submitted, with a token derived from the job id, and released by the
worker once the job has reached its final outcome (success or no retry
left). Release is compare-and-delete so a holder whose TTL expired cannot
free a lock that somebody else now owns. The TTL bounds how long a crashed
holder blocks the VM.
"""

import redis.asyncio as aioredis

from vmplane.config import settings
from vmplane.logging_config import get_logger
from vmplane.redis.client import get_redis_client

logger = get_logger(__name__)

# KEYS: lock key. ARGV: token.
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def lock_key(vm_id: str) -> str:
    return f"{settings.lock.key_prefix}:vm:{vm_id}"


def _redis(redis: aioredis.Redis | None) -> aioredis.Redis:
    return redis if redis is not None else get_redis_client()


async def acquire(vm_id: str, token: str, redis: aioredis.Redis | None = None) -> bool:
    """Take the VM's lock for token. Returns False if someone else holds it."""
    acquired = await _redis(redis).set(
        lock_key(vm_id), token, nx=True, ex=settings.lock.ttl_seconds
    )
    if acquired:
        logger.debug("VM lock acquired", vm_id=vm_id, token=token)
        return True
    return False


async def release(vm_id: str, token: str, redis: aioredis.Redis | None = None) -> bool:
    """Release the VM's lock if token still owns it."""
    released = await _redis(redis).eval(_RELEASE_SCRIPT, 1, lock_key(vm_id), token)
    if released:
        logger.debug("VM lock released", vm_id=vm_id, token=token)
        return True
    logger.warning("VM lock not held by token at release", vm_id=vm_id, token=token)
    return False


async def is_locked(vm_id: str, redis: aioredis.Redis | None = None) -> bool:
    return bool(await _redis(redis).exists(lock_key(vm_id)))


# KEYS: lock key. ARGV: token, ttl seconds.
_EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""


async def extend(vm_id: str, token: str, redis: aioredis.Redis | None = None) -> bool:
    """Reset the TTL of a lock token still owns. Called while its job is running."""
    extended = await _redis(redis).eval(
        _EXTEND_SCRIPT, 1, lock_key(vm_id), token, settings.lock.ttl_seconds
    )
    return bool(extended)
