import time
from typing import Any

import orjson
from loguru import logger


class WorkerHealth:
    """Per-worker heartbeat hash in Redis.

    Layout:
        {service}:worker_data:$list      set of live worker data keys
        {service}:worker_data:{owner}    hash with health_at, tick_count and the latest snapshot
    """

    def __init__(self, redis_client: Any, service_code: str, owner_id: str, ttl: int = 60):
        self._redis = redis_client
        self.service_code = service_code
        self.owner_id = owner_id
        self.ttl = ttl

    @property
    def list_key(self) -> str:
        return f'{self.service_code}:worker_data:$list'

    @property
    def data_key(self) -> str:
        return f'{self.service_code}:worker_data:{self.owner_id}'

    @staticmethod
    def decode_key(key: Any) -> str:
        return key.decode() if isinstance(key, bytes) else str(key)

    @staticmethod
    def decode_value(value: Any) -> Any:
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def publish(self, snapshot: dict) -> None:
        now_ms = int(time.time() * 1000)
        mapping = {
            'owner_id': self.owner_id,
            'health_at': now_ms,
            'status': snapshot.get('status', 'ok'),
            'owned_count': snapshot.get('owned_count', 0),
            'aggregate_load': snapshot.get('aggregate_load', 0),
            'snapshot': orjson.dumps(snapshot).decode(),
        }

        pipe = self._redis.pipeline(transaction=False)
        pipe.hset(self.data_key, mapping=mapping)
        pipe.hincrby(self.data_key, 'tick_count', 1)
        pipe.expire(self.data_key, self.ttl)
        pipe.sadd(self.list_key, self.data_key)
        await pipe.execute()
        logger.debug('Published worker health: key={} status={}', self.data_key, mapping['status'])

    async def get_list(self) -> list[str]:
        return sorted(self.decode_key(key) for key in await self._redis.smembers(self.list_key))

    async def get_all(self, data_key: str | None = None) -> dict[str, Any]:
        values = await self._redis.hgetall(data_key or self.data_key)
        return {self.decode_key(k): self.decode_value(v) for k, v in values.items()}

    async def is_healthy(self, data_key: str | None = None, max_age_seconds: float | None = None) -> bool:
        key = data_key or self.data_key
        health_at = self.decode_value(await self._redis.hget(key, 'health_at'))
        if health_at is None:
            if await self._redis.srem(self.list_key, key):
                logger.debug('Worker data not found, removed from list: {}', key)
            return False

        max_age_ms = (max_age_seconds or self.ttl) * 1000
        return int(health_at) > int(time.time() * 1000) - max_age_ms

    async def clear(self) -> None:
        pipe = self._redis.pipeline(transaction=False)
        pipe.delete(self.data_key)
        pipe.srem(self.list_key, self.data_key)
        await pipe.execute()
