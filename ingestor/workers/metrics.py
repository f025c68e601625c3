"""Scaling metrics for capture workers.

Each worker publishes a short-lived hash to Redis describing how much of its
channel and load budget is in use, so an autoscaler can add workers when the
pool runs out of headroom.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from ingestor.domain.dispatch.dispatcher import Dispatcher
    from ingestor.domain.scheduler.channel_scheduler import ChannelScheduler, TickReport

METRICS_TTL_SECONDS = 60


@dataclass(frozen=True, slots=True)
class WorkerMetrics:
    """Snapshot of one worker's capacity usage."""

    worker_id: str
    owned_channels: int
    max_channels: int
    aggregate_load: int
    load_cap: int
    idle_slots: int
    admitted: int = 0
    lost: int = 0
    dispatched: int = 0
    dispatch_failed: int = 0
    timestamp: float = field(default_factory=time.time)


def build_worker_metrics_key(service_code: str, worker_id: str) -> str:
    return f"{service_code}:metrics:{worker_id}"


def collect_worker_metrics(
    scheduler: ChannelScheduler,
    report: TickReport | None = None,
    dispatchers: list[Dispatcher] | None = None,
) -> WorkerMetrics:
    """Collect current metrics from a scheduler and its dispatchers."""
    snapshot = scheduler.health_snapshot()
    max_channels = snapshot["max_channels"]

    dispatched = failed = 0
    for dispatcher in dispatchers or []:
        stats = dispatcher.stats()
        dispatched += stats.get("sent", 0)
        failed += stats.get("failed", 0) + stats.get("rejected", 0)

    return WorkerMetrics(
        worker_id=scheduler.owner_id,
        owned_channels=snapshot["owned_count"],
        max_channels=max_channels,
        aggregate_load=snapshot["aggregate_load"],
        load_cap=snapshot["load_cap"],
        idle_slots=max(0, max_channels - snapshot["owned_count"]),
        admitted=len(report.admitted) if report else 0,
        lost=len(report.lost) if report else 0,
        dispatched=dispatched,
        dispatch_failed=failed,
    )


async def publish_worker_metrics(
    redis: Any,
    service_code: str,
    metrics: WorkerMetrics,
    ttl: int = METRICS_TTL_SECONDS,
) -> None:
    """Publish worker metrics to Redis."""
    worker_key = build_worker_metrics_key(service_code, metrics.worker_id)

    worker_data: dict[str, str] = {
        "worker_id": metrics.worker_id,
        "owned_channels": str(metrics.owned_channels),
        "max_channels": str(metrics.max_channels),
        "idle_slots": str(metrics.idle_slots),
        "aggregate_load": str(metrics.aggregate_load),
        "load_cap": str(metrics.load_cap),
        "admitted": str(metrics.admitted),
        "lost": str(metrics.lost),
        "dispatched": str(metrics.dispatched),
        "dispatch_failed": str(metrics.dispatch_failed),
        "timestamp": str(metrics.timestamp),
    }

    pipe = redis.pipeline(transaction=False)
    pipe.hset(worker_key, mapping=worker_data)  # type: ignore[arg-type]
    pipe.expire(worker_key, ttl)
    await pipe.execute()

    logger.debug(
        "Published worker metrics: worker={} channels={}/{} load={}/{}",
        metrics.worker_id,
        metrics.owned_channels,
        metrics.max_channels,
        metrics.aggregate_load,
        metrics.load_cap,
    )


async def collect_and_publish_metrics(
    scheduler: ChannelScheduler,
    redis: Any,
    service_code: str,
    report: TickReport | None = None,
    dispatchers: list[Dispatcher] | None = None,
    ttl: int = METRICS_TTL_SECONDS,
) -> WorkerMetrics:
    """Collect and publish worker metrics in one call."""
    metrics = collect_worker_metrics(scheduler, report, dispatchers)
    await publish_worker_metrics(redis, service_code, metrics, ttl)
    return metrics
