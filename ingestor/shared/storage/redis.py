"""
Simple Redis client manager that creates and tracks clients.
"""

import threading
from typing import Dict

from loguru import logger
from redis.asyncio import Redis

from ..config import config


class RedisManager:
    """
    Simple Redis client manager.

    Features:
    - Creates and tracks one async client per label
    - Loads connection strings from REDIS_URL / REDIS_URL_<LABEL>
    - Supports both standalone and cluster modes (`?mode=cluster`)
    - Thread-safe singleton pattern
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, '_initialized'):
            return

        self._clients: Dict[str, Redis] = {}
        self._connection_strings: Dict[str, str] = {}
        self._lock = threading.Lock()

        self._load_connection_strings()
        self._initialized = True

    def _load_connection_strings(self):
        for key, value in config.items():
            if not key.startswith('REDIS_URL_') or not value:
                continue
            label = key[len('REDIS_URL_'):].lower()
            self._connection_strings[label] = value
            logger.info("Loaded Redis connection string for label '{}': {}",
                        label, self._hide_password(value))

        if 'default' not in self._connection_strings:
            default_url = config.get_redis_url()
            self._connection_strings['default'] = default_url
            logger.info("Using default Redis connection string: {}", self._hide_password(default_url))

    @staticmethod
    def _extract_mode(connection_string: str) -> str:
        if 'mode=cluster' in connection_string:
            return 'cluster'
        return 'standalone'

    @staticmethod
    def _clean_connection_string(connection_string: str) -> str:
        if '?' not in connection_string:
            return connection_string
        base_url, query = connection_string.split('?', 1)
        params = [param for param in query.split('&') if not param.startswith('mode=')]
        return f"{base_url}?{'&'.join(params)}" if params else base_url

    @staticmethod
    def _hide_password(connection_string: str) -> str:
        if '@' not in connection_string or '://' not in connection_string:
            return connection_string
        protocol, rest = connection_string.split('://', 1)
        auth, host = rest.rsplit('@', 1)
        if ':' in auth:
            username, password = auth.split(':', 1)
            if password:
                return f"{protocol}://{username}:***@{host}"
        return connection_string

    def get_client(self, label: str = 'default', url: str | None = None) -> Redis:
        """
        Get Redis client by label. Clients decode responses to `str`.

        An explicit `url` replaces the environment connection string for the
        label; it only takes effect before the label's client is opened.

        Raises:
            ValueError: If label not found
        """
        with self._lock:
            if label not in self._clients:
                if url:
                    self._connection_strings[label] = url
                if label not in self._connection_strings:
                    raise ValueError(f"No Redis connection string found for label '{label}'")

                connection_string = self._connection_strings[label]
                mode = self._extract_mode(connection_string)
                clean_url = self._clean_connection_string(connection_string)

                logger.info("Open Redis client for label '{}' (mode: {})", label, mode)
                if mode == 'cluster':
                    from redis.asyncio.cluster import RedisCluster
                    self._clients[label] = RedisCluster.from_url(clean_url, decode_responses=True)
                else:
                    self._clients[label] = Redis.from_url(clean_url, decode_responses=True)

            return self._clients[label]

    async def close_all(self):
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()

        for label, client in clients:
            try:
                await client.aclose()
                logger.info("Closed Redis client for label '{}'", label)
            except Exception as e:
                logger.warning("Error closing Redis client '{}': {}", label, e)


def get_redis_manager() -> RedisManager:
    return RedisManager()


def get_redis_client(label: str = 'default', url: str | None = None) -> Redis:
    return get_redis_manager().get_client(label, url)
