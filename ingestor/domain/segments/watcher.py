"""Completed-segment detection and hand-off.

The capture binaries give no "segment closed" signal, so a file counts as
complete once it is non-empty and has not been modified for a stability
window.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

from loguru import logger

from ingestor.domain.dispatch.dispatcher import Dispatcher
from ingestor.domain.dispatch.keys import build_segment_record
from ingestor.schemas import MediaKind, SegmentFile


class SegmentWatcher:
    """Polls channel working directories and dispatches completed segments.

    One instance is shared by all channels so the in-flight cap is global.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        poll_interval: float = 10.0,
        stability_window: float = 10.0,
        max_in_flight: int = 3,
        delete_after_dispatch: bool = False,
        max_age_seconds: float = 24 * 60 * 60,
        max_total_bytes: int = 10 * 1024 * 1024 * 1024,
    ) -> None:
        self._dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.stability_window = stability_window
        self.max_in_flight = max_in_flight
        self.delete_after_dispatch = delete_after_dispatch
        self.max_age_seconds = max_age_seconds
        self.max_total_bytes = max_total_bytes

        self._in_flight: set[Path] = set()
        self._classified: set[Path] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def is_complete(self, path: Path, now: float | None = None) -> bool:
        try:
            stat = path.stat()
        except OSError:
            return False
        now = time.time() if now is None else now
        return self._is_stable(stat.st_size, stat.st_mtime, now)

    def _is_stable(self, size: int, mtime: float, now: float) -> bool:
        return size > 0 and now - mtime > self.stability_window

    def collect_completed(self, channel_dir: Path, now: float | None = None) -> list[SegmentFile]:
        """Newly completed segments under `channel_dir`, oldest first.

        Each file is returned at most once until `unmark` is called for it.
        """
        if not channel_dir.exists():
            return []

        now = time.time() if now is None else now
        completed: list[SegmentFile] = []
        for kind in MediaKind:
            media_dir = channel_dir / kind.value
            if not media_dir.is_dir():
                continue
            for entry in os.scandir(media_dir):
                if not entry.is_file() or MediaKind.from_filename(entry.name) is not kind:
                    continue
                path = Path(entry.path)
                if path in self._classified or path in self._in_flight:
                    continue
                try:
                    stat = entry.stat()
                except OSError:
                    continue
                if self._is_stable(stat.st_size, stat.st_mtime, now):
                    self._classified.add(path)
                    completed.append(
                        SegmentFile(path=path, media_kind=kind, created_at=stat.st_mtime, size_bytes=stat.st_size)
                    )

        completed.sort(key=lambda segment: (segment.created_at, segment.name))
        return completed

    def unmark(self, path: Path) -> None:
        self._classified.discard(path)

    async def poll_once(self, channel_id: str, live_id: str, channel_dir: Path) -> list[SegmentFile]:
        """Dispatch what fits under the in-flight cap; the rest waits for the next poll."""
        completed = self.collect_completed(channel_dir)
        if not completed:
            return []

        free_slots = self.max_in_flight - len(self._in_flight)
        if free_slots <= 0:
            logger.info(
                "Max concurrent dispatches reached ({}/{}), deferring {} segments for channel {}",
                len(self._in_flight),
                self.max_in_flight,
                len(completed),
                channel_id,
            )
            for segment in completed:
                self.unmark(segment.path)
            return []

        batch, deferred = completed[:free_slots], completed[free_slots:]
        for segment in deferred:
            self.unmark(segment.path)

        # Slots are reserved before the first await so concurrent polls see them.
        self._in_flight.update(segment.path for segment in batch)
        results = await asyncio.gather(*(self._dispatch(channel_id, live_id, segment) for segment in batch))
        return [segment for segment, ok in zip(batch, results) if ok]

    async def _dispatch(self, channel_id: str, live_id: str, segment: SegmentFile) -> bool:
        try:
            result = await self._dispatcher.send(build_segment_record(channel_id, live_id, segment))
        finally:
            self._in_flight.discard(segment.path)

        if not result.ok:
            self.unmark(segment.path)
            return False

        logger.info("Dispatched {} segment: channel={} file={}", segment.media_kind, channel_id, segment.name)
        if self.delete_after_dispatch:
            try:
                segment.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to delete dispatched segment {}: {}", segment.path, e)
            self._classified.discard(segment.path)
        return True

    async def run_channel(self, channel_id: str, live_id: str, channel_dir: Path) -> None:
        """Poll loop for one channel; runs until cancelled."""
        logger.debug("Segment polling started: channel={} dir={}", channel_id, channel_dir)
        try:
            while True:
                await asyncio.sleep(self.poll_interval)
                try:
                    await self.poll_once(channel_id, live_id, channel_dir)
                except Exception as e:
                    logger.error("Error polling segments for channel {}: {}", channel_id, e)
        finally:
            self.forget(channel_dir)
            logger.debug("Segment polling stopped: channel={}", channel_id)

    def forget(self, channel_dir: Path) -> None:
        """Drop classification entries under a directory that is no longer polled."""
        self._classified = {path for path in self._classified if channel_dir not in path.parents}

    def sweep_stale(self, root: Path, now: float | None = None) -> int:
        """Delete recordings older than the max age, then oldest-first while over the size cap."""
        if not root.exists():
            return 0

        now = time.time() if now is None else now
        files: list[tuple[float, int, Path]] = []
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                path = Path(dirpath) / filename
                try:
                    stat = path.stat()
                except OSError:
                    continue
                files.append((stat.st_mtime, stat.st_size, path))

        files.sort()
        total = sum(size for _, size, _ in files)
        removed = 0
        for mtime, size, path in files:
            if now - mtime <= self.max_age_seconds and total <= self.max_total_bytes:
                continue
            if path in self._in_flight:
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.error("Error cleaning up file {}: {}", path, e)
                continue
            total -= size
            removed += 1
            self._classified.discard(path)

        self._classified = {path for path in self._classified if path.exists()}
        if removed:
            logger.info("Cleaned up {} recording files under {}", removed, root)
        return removed

