from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from loguru import logger
from redis.asyncio import Redis

from ingestor.app_config import SchedulerConfig
from ingestor.services.integrations.aws_session import init_aws_session
from ingestor.shared.storage.redis import get_redis_client, get_redis_manager
from ingestor.shared.utils import init_logger
from ingestor.shared.worker import WorkerHealth


@dataclass
class WorkerContext:
    """Shared clients for one ingestor worker process."""

    settings: SchedulerConfig
    redis: Redis
    health: WorkerHealth


@asynccontextmanager
async def base_lifespan(settings: SchedulerConfig, redis_label: str = "default") -> AsyncIterator[WorkerContext]:
    """Base lifespan context manager for workers."""
    init_logger(settings.DEBUG)
    logger.info("Startup worker: owner={}", settings.WORKER_OWNER_ID)

    redis = get_redis_client(redis_label, settings.REDIS_URL if redis_label == "default" else None)
    init_aws_session(settings.AWS_REGION, settings.AWS_ACCESS_KEY_ID, settings.AWS_SECRET_ACCESS_KEY)
    health = WorkerHealth(redis, settings.SERVICE_CODE, settings.WORKER_OWNER_ID, ttl=settings.HEALTH_TTL_SECONDS)

    try:
        yield WorkerContext(settings=settings, redis=redis, health=health)
    finally:
        logger.info("Shutdown worker")
        try:
            await health.clear()
        except Exception as e:
            logger.warning("Failed to clear worker health data: {}", e)
        await get_redis_manager().close_all()
