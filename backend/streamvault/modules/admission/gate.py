"""Admission gate bounding in-flight transcodes per user.

Each user owns one Redis hash ``<prefix>:<user_id>`` whose fields are the
storage keys of admitted assets and whose values are enqueue timestamps in
milliseconds. The hash length is the user's live-entry count.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from streamvault.core.metrics import ADMISSION_DECISIONS_TOTAL, ADMISSION_ENTRIES_SWEPT_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_ADMISSION_CEILING = 5

# KEYS[1] = user hash, ARGV = storage key, timestamp ms, ceiling.
# Returns 1 when the entry was recorded, 0 when the user is at the ceiling.
ADMIT_SCRIPT = """
if redis.call('HLEN', KEYS[1]) < tonumber(ARGV[3]) then
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    return 1
end
return 0
"""


class AdmissionDenied(Exception):
    """Raised when a user's transcode queue is full or cannot be checked."""


class AdmissionGate:
    """Bounded, shared, per-user concurrency limiter."""

    def __init__(
        self,
        client: redis.Redis,
        ceiling: int = DEFAULT_ADMISSION_CEILING,
        key_prefix: str = "admission",
    ):
        if ceiling < 1:
            raise ValueError("Admission ceiling must be at least 1")
        self.client = client
        self.ceiling = ceiling
        self.key_prefix = key_prefix
        self._admit = client.register_script(ADMIT_SCRIPT)

    def user_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    async def try_admit(self, user_id: str, resource_key: str) -> bool:
        """Record ``resource_key`` for ``user_id`` if the user has room.

        Check and insert run as one Lua script, so concurrent callers in any
        process cannot push a user past the ceiling. Re-admitting a key that
        is already held refreshes its timestamp when the user has room. If
        Redis is unreachable the request is denied.
        """
        now_ms = int(time.time() * 1000)
        try:
            admitted = await self._admit(
                keys=[self.user_key(user_id)],
                args=[resource_key, now_ms, self.ceiling],
            )
        except RedisError as e:
            logger.error(f"Admission store unavailable, denying {resource_key}: {e}")
            ADMISSION_DECISIONS_TOTAL.labels(decision="unavailable").inc()
            return False

        if int(admitted) == 1:
            ADMISSION_DECISIONS_TOTAL.labels(decision="admitted").inc()
            return True

        logger.info(f"Admission queue full for user {user_id}, denying {resource_key}")
        ADMISSION_DECISIONS_TOTAL.labels(decision="denied").inc()
        return False

    async def release(self, user_id: str, resource_key: str) -> bool:
        """Remove an entry. Removing an absent entry is a no-op.

        Returns:
            True if an entry was removed
        """
        removed = await self.client.hdel(self.user_key(user_id), resource_key)
        return int(removed) > 0

    async def queue_size(self, user_id: str) -> int:
        """Number of live entries held by a user.

        Raises:
            AdmissionDenied: If the admission store is unreachable
        """
        try:
            return int(await self.client.hlen(self.user_key(user_id)))
        except RedisError as e:
            raise AdmissionDenied("Admission queue unavailable") from e

    async def has_capacity(self, user_id: str) -> bool:
        """Advisory check used before issuing upload URLs; never records anything."""
        try:
            return await self.queue_size(user_id) < self.ceiling
        except AdmissionDenied:
            return False

    async def sweep_expired(self, max_age_seconds: int, now_ms: Optional[int] = None) -> int:
        """Remove entries older than ``max_age_seconds`` across all users.

        Runs that were abandoned by the scheduler never release their entry;
        this reconciles them.

        Returns:
            Number of entries removed
        """
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now_ms - max_age_seconds * 1000
        removed = 0

        async for key in self.client.scan_iter(match=f"{self.key_prefix}:*"):
            entries = await self.client.hgetall(key)
            stale = [field for field, ts in entries.items() if int(ts) < cutoff]
            if stale:
                removed += int(await self.client.hdel(key, *stale))
                logger.warning(f"Swept {len(stale)} stale admission entries from {key}")

        if removed:
            ADMISSION_ENTRIES_SWEPT_TOTAL.inc(removed)
        return removed
