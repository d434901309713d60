"""
Redis client wrapper.

Responsibilities:
  • Recompute lock  — STRING keyed by stats:recompute:lock
                      SET NX EX; value = owner token, so only the holder
                      can release it. Keeps the stats cache single-writer
                      across the API and the worker.
                      Renewed every ttl/3 while the holder runs, so a batch
                      longer than the TTL keeps its lock.
  • Last report     — STRING (JSON) keyed by stats:recompute:last

The client is constructed by the process entry point and passed to the
components that need it; there is no module-level connection.
"""
import asyncio
import contextlib
import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis

from storystats.config import settings
from storystats.schemas import RecomputeReport

logger = logging.getLogger(__name__)

LOCK_KEY = "stats:recompute:lock"
LAST_REPORT_KEY = "stats:recompute:last"

# Delete the lock only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Push the expiry out only if we still own the lock
_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisClient:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self._redis: Optional[aioredis.Redis] = None

    async def start(self) -> None:
        self._redis = aioredis.Redis(
            host=self.host,
            port=self.port,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info("Redis connected at %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Redis not started — call start() at startup")
        return self._redis

    # ─────────────────────── Last recompute report ────────────────────────

    async def get_last_report(self) -> Optional[RecomputeReport]:
        raw = await self.redis.get(LAST_REPORT_KEY)
        if raw:
            return RecomputeReport.model_validate_json(raw)
        return None


class RedisRecomputeCoordinator:
    """Cross-process lock + report store used by the recompute engine."""

    def __init__(self, client: RedisClient, ttl: Optional[int] = None) -> None:
        self._client = client
        self.ttl = ttl or settings.recompute_lock_ttl
        self.renew_interval = self.ttl / 3
        self._token: Optional[str] = None
        self._renewal: Optional[asyncio.Task] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._client.redis.set(LOCK_KEY, token, nx=True, ex=self.ttl)
        if acquired:
            self._token = token
            logger.debug("Recompute lock acquired (%s)", token)
            self._renewal = asyncio.create_task(self._keep_alive())
        return bool(acquired)

    async def release(self) -> None:
        if self._renewal is not None:
            self._renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._renewal
            self._renewal = None
        if self._token is None:
            return
        try:
            await self._client.redis.eval(_RELEASE_SCRIPT, 1, LOCK_KEY, self._token)
        except Exception as exc:
            # The TTL frees the lock eventually
            logger.warning("Could not release recompute lock: %s", exc)
        finally:
            self._token = None

    async def extend(self) -> bool:
        """Reset the lock TTL. False once the lock is no longer ours."""
        if self._token is None:
            return False
        renewed = await self._client.redis.eval(
            _EXTEND_SCRIPT, 1, LOCK_KEY, self._token, self.ttl
        )
        return bool(renewed)

    async def _keep_alive(self) -> None:
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                if not await self.extend():
                    logger.warning("Recompute lock lost before the batch finished")
                    return
            except Exception as exc:
                logger.warning("Could not renew recompute lock: %s", exc)

    async def save_report(self, report: RecomputeReport) -> None:
        try:
            await self._client.redis.set(
                LAST_REPORT_KEY, report.model_dump_json(), ex=settings.last_report_ttl
            )
        except Exception as exc:
            logger.warning("Could not store recompute report: %s", exc)
