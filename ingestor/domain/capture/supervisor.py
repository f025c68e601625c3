"""Lifecycle of the external capture pipeline, one entry per channel.

A channel's pipeline is one source process (streamlink, the "join") whose
stdout is fanned out to one encoder process (ffmpeg) per enabled media kind,
plus an optional chat relay task and the segment poll task.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import time
from asyncio.subprocess import PIPE, DEVNULL, Process
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from ingestor.domain.capture.commands import CaptureCommands
from ingestor.domain.capture.state_machine import CaptureStateMachine
from ingestor.schemas import CaptureState, ChannelInfo, MediaKind
from ingestor.utils.app_errors import CaptureError, CaptureErrorCode

if TYPE_CHECKING:
    from ingestor.app_config import SchedulerConfig
    from ingestor.domain.chat.relay import ChatRelay
    from ingestor.domain.segments.watcher import SegmentWatcher

PUMP_CHUNK_SIZE = 64 * 1024
SOURCE_LABEL = "source"


class ChannelMetadataSource(Protocol):
    async def fetch(self, channel_id: str) -> ChannelInfo | None: ...


@dataclass
class ChannelCapture:
    """Process handles and tasks of one channel. Empty slots mean "not running"."""

    channel_id: str
    state: CaptureState = CaptureState.IDLE
    live_id: str | None = None
    channel_dir: Path | None = None
    source: Process | None = None
    encoders: dict[MediaKind, Process] = field(default_factory=dict)
    requested_media: frozenset[MediaKind] = frozenset()
    poll_task: asyncio.Task | None = None
    chat_task: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    exit_codes: dict[str, int] = field(default_factory=dict)
    started_at: float | None = None

    def has_live_process(self) -> bool:
        return self.source is not None or bool(self.encoders)

    def is_idle(self) -> bool:
        return (
            self.state is CaptureState.IDLE
            and not self.has_live_process()
            and (self.poll_task is None or self.poll_task.done())
            and (self.chat_task is None or self.chat_task.done())
        )

    def is_degraded(self) -> bool:
        """Capturing, but a subprocess it started has exited on its own."""
        if self.state is not CaptureState.CAPTURING:
            return False
        if self.requested_media and self.source is None:
            return True
        return any(kind not in self.encoders for kind in self.requested_media)


class CaptureSupervisor:
    def __init__(
        self,
        metadata: ChannelMetadataSource,
        settings: SchedulerConfig,
        *,
        commands: CaptureCommands | None = None,
        watcher: SegmentWatcher | None = None,
        chat_relay: ChatRelay | None = None,
    ) -> None:
        self._metadata = metadata
        self._settings = settings
        self._commands = commands or CaptureCommands(
            origin=settings.STREAM_ORIGIN,
            segment_seconds=settings.SEGMENT_DURATION_SECONDS,
            image_interval_seconds=settings.IMAGE_INTERVAL_SECONDS,
        )
        self._watcher = watcher
        self._chat_relay = chat_relay
        self._captures: dict[str, ChannelCapture] = {}
        self._commands_available: dict[str, bool] = {}
        self._initialized = False

    @property
    def captures(self) -> dict[str, ChannelCapture]:
        return dict(self._captures)

    def get(self, channel_id: str) -> ChannelCapture | None:
        return self._captures.get(channel_id)

    def state_of(self, channel_id: str) -> CaptureState:
        capture = self._captures.get(channel_id)
        return capture.state if capture else CaptureState.IDLE

    def _check_command_exists(self, command: str) -> bool:
        if command not in self._commands_available:
            path = shutil.which(command)
            if path:
                logger.info("Command {} is available at: {}", command, path)
            else:
                logger.warning("Command {} not found", command)
            self._commands_available[command] = path is not None
        return self._commands_available[command]

    def initialize(self) -> bool:
        """Check the capture binaries. The source binary is required, ffmpeg is optional."""
        if not self._check_command_exists(self._commands.streamlink_bin):
            logger.error("{} is not installed. This is a required dependency.", self._commands.streamlink_bin)
            return False
        if not self._check_command_exists(self._commands.ffmpeg_bin):
            logger.warning("{} is not installed. Media encoders will be disabled.", self._commands.ffmpeg_bin)

        self._initialized = True
        logger.info("CaptureSupervisor initialized")
        return True

    def _transition(self, capture: ChannelCapture, new: CaptureState) -> None:
        if not CaptureStateMachine.can_transition(capture.state, new):
            raise RuntimeError(f"Invalid capture transition for {capture.channel_id}: {capture.state} -> {new}")
        logger.debug("Capture state: channel={} {} -> {}", capture.channel_id, capture.state, new)
        capture.state = new

    def _get_capture(self, channel_id: str) -> ChannelCapture:
        if channel_id not in self._captures:
            self._captures[channel_id] = ChannelCapture(channel_id=channel_id)
        return self._captures[channel_id]

    @staticmethod
    def _ensure_joining(capture: ChannelCapture) -> None:
        if capture.state is not CaptureState.JOINING:
            raise CaptureError(
                CaptureErrorCode.JOIN_FAILED, "capture stopped while joining", channel_id=capture.channel_id
            )

    async def start(self, channel_id: str) -> ChannelCapture:
        """Start the capture pipeline for a channel.

        Raises:
            CaptureError: ALREADY_RUNNING when joining/capturing (or still stopping);
                metadata, join and spawn failures after returning the channel to idle.
        """
        if not self._initialized:
            raise CaptureError(CaptureErrorCode.NOT_INITIALIZED, channel_id=channel_id)

        self.evict_idle()

        capture = self._get_capture(channel_id)
        if capture.state is not CaptureState.IDLE:
            raise CaptureError(
                CaptureErrorCode.ALREADY_RUNNING,
                f"capture is {capture.state} for channel {channel_id}",
                channel_id=channel_id,
            )

        self._transition(capture, CaptureState.JOINING)
        capture.exit_codes.clear()
        try:
            await self._join(capture)
        except BaseException as exc:
            await self._teardown(capture)
            if capture.state is CaptureState.JOINING:
                self._transition(capture, CaptureState.IDLE)
            if isinstance(exc, CaptureError) or not isinstance(exc, Exception):
                raise
            raise CaptureError(CaptureErrorCode.JOIN_FAILED, str(exc), channel_id=channel_id) from exc

        self._transition(capture, CaptureState.CAPTURING)
        capture.started_at = time.time()
        logger.info(
            "Capture started: channel={} live_id={} media={} chat={}",
            channel_id,
            capture.live_id,
            sorted(kind.value for kind in capture.encoders),
            capture.chat_task is not None,
        )
        return capture

    async def _join(self, capture: ChannelCapture) -> None:
        channel_id = capture.channel_id
        info = await self._fetch_info(channel_id)
        self._ensure_joining(capture)

        if not info.open_live:
            raise CaptureError(CaptureErrorCode.CHANNEL_NOT_LIVE, channel_id=channel_id)

        flags = info.collect_flags
        media = [
            kind
            for kind, enabled in (
                (MediaKind.AUDIO, flags.audio),
                (MediaKind.IMAGE, flags.image),
                (MediaKind.VIDEO, flags.video),
            )
            if enabled
        ]
        chat_enabled = flags.chat and self._chat_relay is not None
        if not media and not chat_enabled:
            raise CaptureError(CaptureErrorCode.NO_COLLECTION_ENABLED, channel_id=channel_id)
        if media and not info.stream_url:
            raise CaptureError(CaptureErrorCode.HLS_NOT_FOUND, channel_id=channel_id)

        capture.live_id = str(int(time.time() * 1000))
        capture.channel_dir = Path(self._settings.RECORDINGS_DIR) / channel_id / capture.live_id
        capture.requested_media = frozenset()

        if media:
            assert info.stream_url is not None
            await self._start_source(capture, info.stream_url)
            self._ensure_joining(capture)
            for kind in media:
                await self._start_encoder(capture, kind)
            capture.requested_media = frozenset(capture.encoders)
            self._start_pump(capture)

        if chat_enabled:
            assert self._chat_relay is not None
            capture.chat_task = await self._chat_relay.start(channel_id)
            self._ensure_joining(capture)

        if capture.encoders and self._watcher is not None:
            capture.poll_task = asyncio.create_task(
                self._watcher.run_channel(channel_id, capture.live_id, capture.channel_dir),
                name=f"segment-poll:{channel_id}",
            )

    async def _fetch_info(self, channel_id: str) -> ChannelInfo:
        try:
            info = await self._metadata.fetch(channel_id)
        except Exception as e:
            raise CaptureError(
                CaptureErrorCode.CHANNEL_NOT_FOUND, f"metadata fetch failed: {e}", channel_id=channel_id
            ) from e
        if info is None:
            raise CaptureError(CaptureErrorCode.CHANNEL_NOT_FOUND, channel_id=channel_id)
        return info

    async def _start_source(self, capture: ChannelCapture, stream_url: str) -> None:
        if capture.source is not None and capture.source.returncode is None:
            raise CaptureError(CaptureErrorCode.ALREADY_RUNNING, channel_id=capture.channel_id)

        logger.info("Starting source process for channel {}", capture.channel_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._commands.source(stream_url),
                stdin=DEVNULL,
                stdout=PIPE,
                stderr=PIPE,
            )
        except OSError as e:
            raise CaptureError(
                CaptureErrorCode.JOIN_FAILED, f"failed to spawn source: {e}", channel_id=capture.channel_id
            ) from e

        capture.source = proc
        self._track(capture, self._watch_exit(capture, SOURCE_LABEL, proc), "exit:source")
        self._track(capture, self._drain_stderr(capture.channel_id, SOURCE_LABEL, proc), "stderr:source")

    async def _start_encoder(self, capture: ChannelCapture, kind: MediaKind) -> None:
        if capture.source is None:
            raise CaptureError(CaptureErrorCode.STREAMLINK_NOT_RUNNING, channel_id=capture.channel_id)
        if not self._commands_available.get(self._commands.ffmpeg_bin, False):
            logger.warning("ffmpeg not available, {} capture disabled for channel {}", kind, capture.channel_id)
            return

        assert capture.channel_dir is not None
        media_dir = capture.channel_dir / kind.value
        media_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Starting {} capture for channel {}", kind, capture.channel_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._commands.encoder(kind, media_dir),
                stdin=PIPE,
                stdout=DEVNULL,
                stderr=PIPE,
            )
        except OSError as e:
            logger.error("Failed to start {} capture for channel {}: {}", kind, capture.channel_id, e)
            return

        capture.encoders[kind] = proc
        self._track(capture, self._watch_exit(capture, kind.value, proc), f"exit:{kind}")
        self._track(capture, self._drain_stderr(capture.channel_id, kind.value, proc), f"stderr:{kind}")

    def _start_pump(self, capture: ChannelCapture) -> None:
        if capture.source is None or not capture.encoders:
            return
        self._track(capture, self._pump(capture, capture.source), "pump")

    def _track(self, capture: ChannelCapture, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=f"{name}:{capture.channel_id}")
        capture.tasks.add(task)
        task.add_done_callback(capture.tasks.discard)

    async def _pump(self, capture: ChannelCapture, source: Process) -> None:
        """Copy source stdout into every live encoder's stdin until EOF."""
        assert source.stdout is not None
        try:
            while True:
                chunk = await source.stdout.read(PUMP_CHUNK_SIZE)
                if not chunk:
                    break
                for kind, proc in list(capture.encoders.items()):
                    stdin = proc.stdin
                    if stdin is None or stdin.is_closing():
                        continue
                    try:
                        stdin.write(chunk)
                        await stdin.drain()
                    except (BrokenPipeError, ConnectionResetError):
                        logger.debug("Encoder stdin closed: channel={} kind={}", capture.channel_id, kind)
                        stdin.close()
        finally:
            for proc in list(capture.encoders.values()):
                if proc.stdin is not None and not proc.stdin.is_closing():
                    proc.stdin.close()

    async def _drain_stderr(self, channel_id: str, label: str, proc: Process) -> None:
        if proc.stderr is None:
            return
        # ffmpeg progress lines end with \r, so read in chunks rather than lines
        while True:
            chunk = await proc.stderr.read(4096)
            if not chunk:
                break
            logger.debug("{} stderr [{}]: {}", label, channel_id, chunk.decode(errors="replace").rstrip())

    async def _watch_exit(self, capture: ChannelCapture, label: str, proc: Process) -> None:
        code = await proc.wait()
        if label == SOURCE_LABEL:
            if capture.source is proc:
                capture.source = None
        else:
            kind = MediaKind(label)
            if capture.encoders.get(kind) is proc:
                del capture.encoders[kind]
        capture.exit_codes[label] = code

        if capture.state is CaptureState.STOPPING:
            logger.debug("{} process for channel {} exited with code {}", label, capture.channel_id, code)
        elif code != 0:
            logger.warning(
                "{} process for channel {} exited with code {}; channel left degraded",
                label,
                capture.channel_id,
                code,
            )
        else:
            logger.info("{} process for channel {} exited with code {}", label, capture.channel_id, code)

    async def stop(self, channel_id: str) -> None:
        """Terminate everything for a channel. Idempotent; safe on unknown channels."""
        capture = self._captures.get(channel_id)
        if capture is None or capture.state is CaptureState.STOPPING:
            return

        self._transition(capture, CaptureState.STOPPING)
        try:
            await self._teardown(capture)
        finally:
            self._transition(capture, CaptureState.IDLE)
            if self._captures.get(channel_id) is capture:
                del self._captures[channel_id]
        logger.info("Capture stopped: channel={}", channel_id)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(channel_id) for channel_id in list(self._captures)))

    async def _teardown(self, capture: ChannelCapture) -> None:
        for attr in ("poll_task", "chat_task"):
            task = getattr(capture, attr)
            setattr(capture, attr, None)
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

        procs = list(capture.encoders.values())
        if capture.source is not None:
            procs.append(capture.source)
        for proc in procs:
            await self._terminate(capture.channel_id, proc)
        capture.encoders.clear()
        capture.source = None

        pending = list(capture.tasks)
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        capture.tasks.clear()

    async def _terminate(self, channel_id: str, proc: Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._settings.PROCESS_STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Process {} for channel {} did not terminate, killing", proc.pid, channel_id)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    def evict_idle(self) -> int:
        """Drop fully idle entries once the tracked map outgrows its ceiling."""
        if len(self._captures) <= self._settings.MAX_TRACKED_CHANNELS:
            return 0

        evicted = 0
        for channel_id, capture in list(self._captures.items()):
            if evicted >= self._settings.EVICTION_BATCH:
                break
            if capture.is_idle():
                del self._captures[channel_id]
                evicted += 1
        if evicted:
            logger.info("Evicted {} idle capture entries ({} tracked)", evicted, len(self._captures))
        return evicted
