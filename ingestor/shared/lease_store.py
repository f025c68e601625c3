from typing import Optional

from loguru import logger

from ingestor.schemas import ChannelCapacityHint


# Atomically extend: only set new TTL (seconds) if value==owner
_RENEW_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
else
    return 0
end
"""

# Atomically release: only delete if value==owner
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class LeaseStore:
    """Channel ownership leases on Redis (async).

    Keys:
        lock:{channel_id}  owner id, TTL-bearing
        meta:{channel_id}  capacity hash, no TTL
    """

    def __init__(
        self,
        redis_client,
        lock_prefix: str = "lock",
        meta_prefix: str = "meta",
        scan_count: int = 500,
    ):
        """
        Args:
            redis_client: Async Redis client instance (decode_responses=True)
            lock_prefix: Prefix for ownership keys
            meta_prefix: Prefix for channel metadata hashes
            scan_count: COUNT hint for candidate enumeration
        """
        self.redis_client = redis_client
        self.lock_prefix = lock_prefix
        self.meta_prefix = meta_prefix
        self.scan_count = scan_count

    def lock_key(self, channel_id: str) -> str:
        return f"{self.lock_prefix}:{channel_id}"

    def meta_key(self, channel_id: str) -> str:
        return f"{self.meta_prefix}:{channel_id}"

    async def _eval(self, script: str, keys: list[str], args: list) -> int:
        return await self.redis_client.eval(script, len(keys), *keys, *args)

    async def acquire(self, channel_id: str, owner_id: str, ttl: int) -> bool:
        """
        Set-if-absent with TTL. False when anyone holds the lease, the caller
        included; an owner keeps its lease through `renew`.
        """
        acquired = await self.redis_client.set(self.lock_key(channel_id), owner_id, nx=True, ex=int(ttl))
        if acquired:
            logger.debug("Acquired lease: channel={} owner={} ttl={}", channel_id, owner_id, ttl)
        return bool(acquired)

    async def renew(self, channel_id: str, owner_id: str, ttl: int) -> bool:
        """
        Extend the TTL only while `owner_id` is still the recorded owner.

        Returns False when the lease is gone or owned by someone else.
        Store errors propagate so the caller can fail safe.
        """
        res = await self._eval(_RENEW_LUA, [self.lock_key(channel_id)], [owner_id, int(ttl)])
        if res == 1:
            return True
        logger.debug("Renew failed (not owner or missing): channel={} owner={}", channel_id, owner_id)
        return False

    async def release(self, channel_id: str, owner_id: str) -> bool:
        """Best-effort atomic check-and-delete; never raises."""
        try:
            res = await self._eval(_RELEASE_LUA, [self.lock_key(channel_id)], [owner_id])
        except Exception as e:
            logger.error("Error releasing lease: channel={} owner={} error={}", channel_id, owner_id, str(e))
            return False

        if res == 1:
            logger.debug("Released lease: channel={} owner={}", channel_id, owner_id)
            return True
        return False

    async def is_held(self, channel_id: str) -> bool:
        return bool(await self.redis_client.exists(self.lock_key(channel_id)))

    async def get_owner(self, channel_id: str) -> Optional[str]:
        return await self.redis_client.get(self.lock_key(channel_id))

    async def list_candidates(self, prefix: Optional[str] = None) -> list[str]:
        """Channel ids with a metadata entry, in SCAN order, regardless of lock state."""
        prefix = prefix or self.meta_prefix
        seen: set[str] = set()
        candidates: list[str] = []
        async for key in self.redis_client.scan_iter(match=f"{prefix}:*", count=self.scan_count):
            channel_id = key[len(prefix) + 1:]
            if channel_id and channel_id not in seen:
                seen.add(channel_id)
                candidates.append(channel_id)
        return candidates

    async def get_capacity_hint(self, channel_id: str) -> Optional[ChannelCapacityHint]:
        """Read `meta:{channel_id}`. Missing or malformed entries yield None."""
        data = await self.redis_client.hgetall(self.meta_key(channel_id))
        if not data:
            return None
        try:
            return ChannelCapacityHint.from_mapping(channel_id, data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed channel metadata: channel={} data={} error={}", channel_id, data, e)
            return None

    async def put_capacity_hint(self, hint: ChannelCapacityHint) -> None:
        await self.redis_client.hset(self.meta_key(hint.channel_id), mapping=hint.to_mapping())
