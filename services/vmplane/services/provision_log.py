"""Per-user provisioning progress log.

Short human-readable lines written by the worker while it drives a VM
through its lifecycle, kept in a capped Redis list that expires an hour
after the last write. The UI polls it to render live progress.
"""

import json
from dataclasses import asdict, dataclass
from enum import StrEnum

from redis.exceptions import RedisError

from vmplane.config import settings
from vmplane.db.models import utc_now
from vmplane.logging_config import get_logger
from vmplane.redis.client import get_redis_client

logger = get_logger(__name__)


class LogLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    DEBUG = "debug"


@dataclass
class ProvisionLogEntry:
    timestamp: str
    message: str
    level: str


def _key(user_id: str) -> str:
    return f"{settings.provision_log.key_prefix}:{user_id}"


async def add_log(user_id: str, message: str, level: LogLevel = LogLevel.INFO) -> None:
    """Append one line to the user's log, trimming and refreshing its TTL."""
    cfg = settings.provision_log
    entry = ProvisionLogEntry(
        timestamp=utc_now().isoformat(), message=message, level=str(level)
    )
    key = _key(user_id)

    redis = get_redis_client()
    async with redis.pipeline(transaction=True) as pipe:
        pipe.rpush(key, json.dumps(asdict(entry)))
        pipe.ltrim(key, -cfg.max_entries, -1)
        pipe.expire(key, cfg.ttl_seconds)
        await pipe.execute()


async def get_logs(user_id: str) -> list[ProvisionLogEntry]:
    redis = get_redis_client()
    raw = await redis.lrange(_key(user_id), 0, -1)
    return [ProvisionLogEntry(**json.loads(item)) for item in raw]


async def clear_logs(user_id: str) -> None:
    redis = get_redis_client()
    await redis.delete(_key(user_id))


class ProvisionLogger:
    """Writes progress lines for one user.

    Mirrors each line to the structured log. A Redis failure while writing a
    progress line is logged and does not interrupt the job.
    """

    def __init__(self, user_id: str, **context: str) -> None:
        self.user_id = user_id
        self._log = logger.bind(user_id=user_id, **context)

    async def _write(self, message: str, level: LogLevel) -> None:
        if level == LogLevel.ERROR:
            self._log.error(message)
        elif level == LogLevel.DEBUG:
            self._log.debug(message)
        else:
            self._log.info(message)
        try:
            await add_log(self.user_id, message, level)
        except RedisError as e:
            self._log.warning("Failed to write provision log", error=str(e))

    async def clear(self) -> None:
        """Drop lines left from the user's previous VM."""
        try:
            await clear_logs(self.user_id)
        except RedisError as e:
            self._log.warning("Failed to clear provision log", error=str(e))

    async def info(self, message: str) -> None:
        await self._write(message, LogLevel.INFO)

    async def success(self, message: str) -> None:
        await self._write(message, LogLevel.SUCCESS)

    async def error(self, message: str) -> None:
        await self._write(message, LogLevel.ERROR)

    async def debug(self, message: str) -> None:
        await self._write(message, LogLevel.DEBUG)
