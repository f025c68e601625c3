"""Process entry point: wires config, store, capture and dispatch, then runs the scheduler."""

from __future__ import annotations

import asyncio
import signal
import sys
from dataclasses import dataclass

from loguru import logger
from pydantic import ValidationError

from ingestor.app_config import ChatSinkKind, SchedulerConfig, SegmentSinkKind
from ingestor.domain.capture.supervisor import CaptureSupervisor, ChannelMetadataSource
from ingestor.domain.chat.relay import ChatProtocol, ChatRelay
from ingestor.domain.dispatch.dispatcher import Dispatcher, Sink
from ingestor.domain.scheduler.channel_scheduler import ChannelScheduler, TickReport
from ingestor.domain.segments.watcher import SegmentWatcher
from ingestor.services.channel_meta.client import ChannelApiClient
from ingestor.services.integrations.s3_storage import S3SegmentSink
from ingestor.services.integrations.stream_sinks import KinesisSink, LogSink, SqsFifoSink
from ingestor.shared.lease_store import LeaseStore
from ingestor.shared.utils import format_error, init_logger
from ingestor.workers.base import WorkerContext, base_lifespan
from ingestor.workers.metrics import collect_and_publish_metrics


@dataclass
class Ingestor:
    settings: SchedulerConfig
    store: LeaseStore
    watcher: SegmentWatcher
    supervisor: CaptureSupervisor
    scheduler: ChannelScheduler
    chat_dispatcher: Dispatcher
    segment_dispatcher: Dispatcher

    @property
    def dispatchers(self) -> list[Dispatcher]:
        return [self.chat_dispatcher, self.segment_dispatcher]


def build_chat_sink(settings: SchedulerConfig) -> Sink:
    if settings.CHAT_SINK is ChatSinkKind.KINESIS:
        return KinesisSink(settings.KINESIS_STREAM_NAME, settings.AWS_REGION)
    if settings.CHAT_SINK is ChatSinkKind.SQS:
        return SqsFifoSink(settings.SQS_QUEUE_URL, settings.AWS_REGION)
    return LogSink("chat")


def build_segment_sink(settings: SchedulerConfig) -> Sink:
    if settings.SEGMENT_SINK is SegmentSinkKind.S3:
        return S3SegmentSink(settings.S3_SEGMENT_BUCKET, settings.AWS_REGION)
    return LogSink("segments")


def build_ingestor(
    ctx: WorkerContext,
    metadata: ChannelMetadataSource,
    chat_protocol: ChatProtocol | None = None,
) -> Ingestor:
    settings = ctx.settings

    store = LeaseStore(ctx.redis, lock_prefix=settings.LOCK_KEY_PREFIX, meta_prefix=settings.META_KEY_PREFIX)
    chat_dispatcher = Dispatcher(build_chat_sink(settings), concurrency=settings.DISPATCH_CONCURRENCY, name="chat")
    segment_dispatcher = Dispatcher(
        build_segment_sink(settings),
        concurrency=settings.MAX_CONCURRENT_DISPATCHES,
        name="segments",
    )

    watcher = SegmentWatcher(
        segment_dispatcher,
        poll_interval=settings.SEGMENT_POLL_SECONDS,
        stability_window=settings.SEGMENT_STABILITY_SECONDS,
        max_in_flight=settings.MAX_CONCURRENT_DISPATCHES,
        delete_after_dispatch=settings.DELETE_DISPATCHED_SEGMENTS,
        max_age_seconds=settings.RECORDING_MAX_AGE_SECONDS,
        max_total_bytes=settings.RECORDING_MAX_BYTES,
    )

    chat_relay = None
    if chat_protocol is not None:
        chat_relay = ChatRelay(chat_protocol, chat_dispatcher, poll_interval=settings.CHAT_POLL_SECONDS)
    else:
        logger.warning("No chat protocol configured, chat collection is disabled")

    supervisor = CaptureSupervisor(metadata, settings, watcher=watcher, chat_relay=chat_relay)

    async def on_tick(report: TickReport) -> None:
        try:
            await ctx.health.publish(scheduler.health_snapshot())
            await collect_and_publish_metrics(
                scheduler,
                ctx.redis,
                settings.SERVICE_CODE,
                report=report,
                dispatchers=[chat_dispatcher, segment_dispatcher],
                ttl=settings.HEALTH_TTL_SECONDS,
            )
        except Exception as e:
            logger.warning("Failed to publish worker health: {}", e)

    scheduler = ChannelScheduler(store, supervisor, settings, on_tick=on_tick)

    return Ingestor(
        settings=settings,
        store=store,
        watcher=watcher,
        supervisor=supervisor,
        scheduler=scheduler,
        chat_dispatcher=chat_dispatcher,
        segment_dispatcher=segment_dispatcher,
    )


async def housekeeping(ingestor: Ingestor) -> None:
    """Periodically sweep stale recordings and evict idle capture entries."""
    settings = ingestor.settings
    while True:
        await asyncio.sleep(settings.HOUSEKEEPING_SECONDS)
        try:
            ingestor.watcher.sweep_stale(settings.RECORDINGS_DIR)
            ingestor.supervisor.evict_idle()
        except Exception as e:
            logger.error("Housekeeping failed: {}", e)


def install_signal_handlers(scheduler: ChannelScheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
        except NotImplementedError:
            logger.warning("Signal handlers are not supported on this platform")
            return


async def run(settings: SchedulerConfig, chat_protocol: ChatProtocol | None = None) -> int:
    if not settings.CHANNEL_API_BASE_URL:
        logger.error("CHANNEL_API_BASE_URL is required")
        return 1

    async with base_lifespan(settings) as ctx:
        metadata = ChannelApiClient(
            settings.CHANNEL_API_BASE_URL,
            api_key=settings.CHANNEL_API_KEY,
            timeout=settings.CHANNEL_API_TIMEOUT_SECONDS,
        )
        ingestor = build_ingestor(ctx, metadata, chat_protocol)
        if not ingestor.supervisor.initialize():
            return 1

        settings.RECORDINGS_DIR.mkdir(parents=True, exist_ok=True)
        install_signal_handlers(ingestor.scheduler)

        housekeeping_task = asyncio.create_task(housekeeping(ingestor), name="housekeeping")
        try:
            await ingestor.scheduler.run()
        finally:
            housekeeping_task.cancel()
            await asyncio.gather(housekeeping_task, return_exceptions=True)
            logger.info(
                "Dispatch totals: chat={} segments={}",
                ingestor.chat_dispatcher.stats(),
                ingestor.segment_dispatcher.stats(),
            )
    return 0


def cli() -> None:
    init_logger()
    try:
        settings = SchedulerConfig.from_environ()
    except ValidationError as e:
        logger.error("Invalid configuration: {}", e)
        sys.exit(2)

    try:
        exit_code = asyncio.run(run(settings))
    except Exception as e:
        logger.error("Ingestor crashed: {}", format_error(e))
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
