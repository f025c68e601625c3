"""Distributed channel-ownership scheduler.

Every tick the worker first renews the leases it holds (relock), then, while
under its channel cap, claims new channels from the shared enumeration
(admission). Admission is first-fit in enumeration order: a candidate is
taken when its load fits under the global cap, with no priority weighting.
Capture starts run as background tasks so a slow join never delays relock
for the channels already owned.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from ingestor.schemas import ChannelCapacityHint, ChannelLease
from ingestor.utils.app_errors import CaptureError

if TYPE_CHECKING:
    from ingestor.app_config import SchedulerConfig
    from ingestor.domain.capture.supervisor import ChannelCapture


class LeaseStoreLike(Protocol):
    async def acquire(self, channel_id: str, owner_id: str, ttl: int) -> bool: ...

    async def renew(self, channel_id: str, owner_id: str, ttl: int) -> bool: ...

    async def release(self, channel_id: str, owner_id: str) -> bool: ...

    async def is_held(self, channel_id: str) -> bool: ...

    async def list_candidates(self, prefix: str | None = None) -> list[str]: ...

    async def get_capacity_hint(self, channel_id: str) -> ChannelCapacityHint | None: ...


class SupervisorLike(Protocol):
    async def start(self, channel_id: str) -> ChannelCapture: ...

    async def stop(self, channel_id: str) -> None: ...

    async def stop_all(self) -> None: ...


@dataclass
class OwnedChannelState:
    channel_id: str
    lease: ChannelLease
    mapped_capacity: int
    capture_handle: ChannelCapture | None = None

    @property
    def poll_task(self) -> asyncio.Task | None:
        return self.capture_handle.poll_task if self.capture_handle else None


@dataclass
class TickReport:
    renewed: list[str] = field(default_factory=list)
    lost: list[str] = field(default_factory=list)
    admitted: list[str] = field(default_factory=list)
    start_failed: list[str] = field(default_factory=list)
    skipped_held: list[str] = field(default_factory=list)
    skipped_race: list[str] = field(default_factory=list)
    skipped_capacity: list[str] = field(default_factory=list)
    skipped_no_metadata: list[str] = field(default_factory=list)
    store_errors: int = 0
    aggregate_load: int = 0
    owned_count: int = 0


TickHook = Callable[[TickReport], Awaitable[None]]


class ChannelScheduler:
    def __init__(
        self,
        store: LeaseStoreLike,
        supervisor: SupervisorLike,
        settings: SchedulerConfig,
        *,
        owner_id: str | None = None,
        on_tick: TickHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._settings = settings
        self.owner_id = owner_id or settings.WORKER_OWNER_ID
        self._on_tick = on_tick
        self._clock = clock

        self._owned: dict[str, OwnedChannelState] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._start_grace = settings.SCHEDULER_TICK_SECONDS / 2
        self._stop_event = asyncio.Event()
        self._consecutive_store_failures = 0
        self._last_tick_at: float | None = None

    @property
    def owned(self) -> dict[str, OwnedChannelState]:
        return dict(self._owned)

    @property
    def starting(self) -> list[str]:
        return list(self._starting)

    @property
    def aggregate_load(self) -> int:
        return sum(state.mapped_capacity for state in self._owned.values())

    @property
    def store_available(self) -> bool:
        return self._consecutive_store_failures < self._settings.STORE_FAILURE_ALERT_THRESHOLD

    async def tick(self) -> TickReport:
        report = TickReport()
        await self._relock(report)
        launched = False
        if not self._stop_event.is_set():
            launched = await self._admit(report)
        await self._collect_starts(report, timeout=self._start_grace if launched else 0)

        report.aggregate_load = self.aggregate_load
        report.owned_count = len(self._owned)
        self._record_store_health(report)
        self._last_tick_at = self._clock()

        if report.lost or report.admitted or report.start_failed:
            logger.info(
                "Tick: owned={} load={}/{} renewed={} lost={} admitted={} start_failed={}",
                report.owned_count,
                report.aggregate_load,
                self._settings.GLOBAL_LOAD_CAP,
                len(report.renewed),
                report.lost,
                report.admitted,
                report.start_failed,
            )
        return report

    async def _relock(self, report: TickReport) -> None:
        if not self._owned:
            return

        ttl = self._settings.LEASE_TTL_SECONDS
        states = list(self._owned.values())
        results = await asyncio.gather(
            *(self._store.renew(state.channel_id, self.owner_id, ttl) for state in states),
            return_exceptions=True,
        )

        lost: list[OwnedChannelState] = []
        now = self._clock()
        for state, result in zip(states, results):
            if result is True:
                state.lease = state.lease.extended(ttl, now)
                report.renewed.append(state.channel_id)
                continue

            if isinstance(result, BaseException):
                report.store_errors += 1
                logger.warning(
                    "Lease renew errored, treating as lost: channel={} owner={} error={}",
                    state.channel_id,
                    self.owner_id,
                    result,
                )
            else:
                logger.warning("Lease lost: channel={} owner={}", state.channel_id, self.owner_id)
            lost.append(state)

        if lost:
            await asyncio.gather(*(self._drop(state) for state in lost))
            report.lost.extend(state.channel_id for state in lost)

    async def _drop(self, state: OwnedChannelState) -> None:
        """Stop capture, forget the channel, then best-effort release."""
        task = self._starting.pop(state.channel_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await self._supervisor.stop(state.channel_id)
        except Exception as e:
            logger.error("Failed to stop capture for channel {}: {}", state.channel_id, e)
        self._owned.pop(state.channel_id, None)
        await self._store.release(state.channel_id, self.owner_id)

    async def _admit(self, report: TickReport) -> bool:
        """Lease what fits and launch its capture start; True when anything was launched."""
        max_channels = self._settings.MAX_CHANNELS_PER_WORKER
        load_cap = self._settings.GLOBAL_LOAD_CAP
        if len(self._owned) >= max_channels:
            return False

        try:
            candidates = await self._store.list_candidates()
        except Exception as e:
            report.store_errors += 1
            logger.warning("Candidate enumeration failed, skipping admission this tick: {}", e)
            return False

        aggregate = self.aggregate_load
        admitted: list[OwnedChannelState] = []
        for channel_id in candidates:
            if len(self._owned) >= max_channels or aggregate >= load_cap:
                break
            if channel_id in self._owned:
                continue

            try:
                state = await self._try_admit(channel_id, aggregate, report)
            except Exception as e:
                report.store_errors += 1
                logger.warning("Lease store error during admission, stopping growth this tick: {}", e)
                break

            if state is not None:
                self._owned[channel_id] = state
                aggregate += state.mapped_capacity
                admitted.append(state)

        for state in admitted:
            self._starting[state.channel_id] = asyncio.create_task(
                self._supervisor.start(state.channel_id), name=f"capture-start:{state.channel_id}"
            )
        return bool(admitted)

    async def _try_admit(self, channel_id: str, aggregate: int, report: TickReport) -> OwnedChannelState | None:
        hint = await self._store.get_capacity_hint(channel_id)
        if hint is None:
            report.skipped_no_metadata.append(channel_id)
            return None

        if hint.current_load + aggregate > self._settings.GLOBAL_LOAD_CAP:
            logger.debug(
                "Skip channel {}: load {} + {} exceeds cap {}",
                channel_id,
                hint.current_load,
                aggregate,
                self._settings.GLOBAL_LOAD_CAP,
            )
            report.skipped_capacity.append(channel_id)
            return None

        if await self._store.is_held(channel_id):
            report.skipped_held.append(channel_id)
            return None

        ttl = self._settings.LEASE_TTL_SECONDS
        if not await self._store.acquire(channel_id, self.owner_id, ttl):
            logger.debug("Lost acquire race: channel={} owner={}", channel_id, self.owner_id)
            report.skipped_race.append(channel_id)
            return None

        return OwnedChannelState(
            channel_id=channel_id,
            lease=ChannelLease.issue(channel_id, self.owner_id, ttl, self._clock()),
            mapped_capacity=hint.current_load,
        )

    async def _collect_starts(self, report: TickReport, timeout: float = 0) -> None:
        """Settle finished capture starts; slower ones stay pending for a later tick.

        Pending channels keep their lease and are renewed by relock meanwhile.
        """
        if not self._starting:
            return
        if timeout > 0:
            await asyncio.wait(list(self._starting.values()), timeout=timeout)

        failed: list[OwnedChannelState] = []
        for channel_id, task in list(self._starting.items()):
            if not task.done():
                continue
            del self._starting[channel_id]
            state = self._owned[channel_id]

            error = None if task.cancelled() else task.exception()
            if not task.cancelled() and error is None:
                state.capture_handle = task.result()
                report.admitted.append(channel_id)
                continue

            if isinstance(error, CaptureError) and error.is_expected:
                logger.debug("Channel {}: {}", channel_id, error)
            else:
                logger.warning("Failed to start capture for channel {}: {}", channel_id, error or "cancelled")
            failed.append(state)

        if failed:
            await asyncio.gather(*(self._drop(state) for state in failed))
            report.start_failed.extend(state.channel_id for state in failed)

    def _record_store_health(self, report: TickReport) -> None:
        if report.store_errors == 0:
            if self._consecutive_store_failures >= self._settings.STORE_FAILURE_ALERT_THRESHOLD:
                logger.info("Lease store reachable again")
            self._consecutive_store_failures = 0
            return

        self._consecutive_store_failures += 1
        if self._consecutive_store_failures >= self._settings.STORE_FAILURE_ALERT_THRESHOLD:
            logger.error(
                "Lease store unavailable for {} consecutive ticks; no channels can be managed safely",
                self._consecutive_store_failures,
            )

    def health_snapshot(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "status": "ok" if self.store_available else "store_unavailable",
            "owned_channels": sorted(self._owned),
            "owned_count": len(self._owned),
            "starting_channels": sorted(self._starting),
            "aggregate_load": self.aggregate_load,
            "load_cap": self._settings.GLOBAL_LOAD_CAP,
            "max_channels": self._settings.MAX_CHANNELS_PER_WORKER,
            "store_failures": self._consecutive_store_failures,
            "last_tick_at": self._last_tick_at,
        }

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Scheduler stop requested")
            self._stop_event.set()

    async def run(self) -> None:
        """Tick at a fixed interval until `request_stop`, then shut down."""
        interval = self._settings.SCHEDULER_TICK_SECONDS
        logger.info(
            "Scheduler started: owner={} tick={}s max_channels={} load_cap={}",
            self.owner_id,
            interval,
            self._settings.MAX_CHANNELS_PER_WORKER,
            self._settings.GLOBAL_LOAD_CAP,
        )
        loop = asyncio.get_running_loop()
        try:
            while not self._stop_event.is_set():
                started = loop.time()
                try:
                    report = await self.tick()
                    if self._on_tick is not None:
                        await self._on_tick(report)
                except Exception:
                    logger.exception("Scheduler tick failed")

                remaining = max(0.0, interval - (loop.time() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop every owned channel's capture and release its lease."""
        states = list(self._owned.values())
        if states:
            logger.info("Releasing {} owned channels", len(states))
            await asyncio.gather(*(self._drop(state) for state in states))
        await self._supervisor.stop_all()
        logger.info("Scheduler shut down: owner={}", self.owner_id)
