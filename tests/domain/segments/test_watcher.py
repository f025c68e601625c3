"""Tests for SegmentWatcher completeness detection and dispatch."""

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from ingestor.domain.segments.watcher import SegmentWatcher
from ingestor.schemas import DispatchResult, MediaKind


def write_segment(path: Path, size: int = 128, age: float = 60.0, now: float | None = None) -> Path:
    """Create a segment file whose mtime is `age` seconds in the past."""
    now = time.time() if now is None else now
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    os.utime(path, (now - age, now - age))
    return path


@pytest.fixture
def dispatcher() -> AsyncMock:
    mock = AsyncMock()
    mock.send.side_effect = lambda record: DispatchResult(ok=True, dedup_key=record.dedup_key)
    return mock


@pytest.fixture
def watcher(dispatcher) -> SegmentWatcher:
    return SegmentWatcher(dispatcher, poll_interval=0.01, stability_window=10, max_in_flight=3)


class TestCompleteness:
    def test_stable_file_is_complete(self, watcher, tmp_path):
        """Test a non-empty file untouched past the window is complete."""
        path = write_segment(tmp_path / "audio_1_000.aac", age=11)

        assert watcher.is_complete(path)

    def test_recent_file_is_not_complete(self, watcher, tmp_path):
        """Test a file modified inside the window is still being written."""
        path = write_segment(tmp_path / "audio_1_000.aac", age=2)

        assert not watcher.is_complete(path)

    def test_empty_file_is_not_complete(self, watcher, tmp_path):
        path = write_segment(tmp_path / "audio_1_000.aac", size=0, age=60)

        assert not watcher.is_complete(path)

    def test_missing_file_is_not_complete(self, watcher, tmp_path):
        assert not watcher.is_complete(tmp_path / "gone.aac")

    def test_collect_returns_each_segment_once(self, watcher, tmp_path):
        """Test a completed segment is classified exactly once."""
        write_segment(tmp_path / "audio" / "audio_1_000.aac")

        first = watcher.collect_completed(tmp_path)
        second = watcher.collect_completed(tmp_path)

        assert [segment.name for segment in first] == ["audio_1_000.aac"]
        assert first[0].media_kind == MediaKind.AUDIO
        assert second == []

    def test_appended_file_never_complete(self, watcher, tmp_path):
        """Test a file still being appended to is never classified."""
        path = write_segment(tmp_path / "video" / "video_1_000.ts", age=0)

        for _ in range(3):
            with path.open("ab") as fh:
                fh.write(b"more")
            assert watcher.collect_completed(tmp_path) == []

    def test_collect_orders_oldest_first_and_filters_kinds(self, watcher, tmp_path):
        """Test segments are returned oldest first and foreign files ignored."""
        now = time.time()
        write_segment(tmp_path / "video" / "video_1_001.ts", age=20, now=now)
        write_segment(tmp_path / "audio" / "audio_1_000.aac", age=40, now=now)
        write_segment(tmp_path / "image" / "capture_1_000.jpg", age=30, now=now)
        write_segment(tmp_path / "audio" / "notes.txt", age=50, now=now)
        write_segment(tmp_path / "audio" / "video_1_002.ts", age=50, now=now)

        names = [segment.name for segment in watcher.collect_completed(tmp_path, now=now)]

        assert names == ["audio_1_000.aac", "capture_1_000.jpg", "video_1_001.ts"]

    def test_collect_missing_directory(self, watcher, tmp_path):
        assert watcher.collect_completed(tmp_path / "nope") == []


class TestPollOnce:
    async def test_dispatches_completed_segments(self, watcher, dispatcher, tmp_path):
        """Test completed segments are dispatched with their object key."""
        write_segment(tmp_path / "audio" / "audio_1_000.aac")

        sent = await watcher.poll_once("ch1", "live9", tmp_path)

        assert [segment.name for segment in sent] == ["audio_1_000.aac"]
        record = dispatcher.send.call_args.args[0]
        assert record.partition_key == "ch1"
        assert record.dedup_key == "channels/ch1/lives/live9/audios/audio_1_000.aac"
        assert record.file_path == tmp_path / "audio" / "audio_1_000.aac"
        assert (tmp_path / "audio" / "audio_1_000.aac").exists()

    async def test_deletes_after_dispatch_when_enabled(self, dispatcher, tmp_path):
        """Test opt-in deletion removes dispatched files."""
        watcher = SegmentWatcher(dispatcher, stability_window=10, delete_after_dispatch=True)
        path = write_segment(tmp_path / "image" / "capture_1_000.jpg")

        await watcher.poll_once("ch1", "live9", tmp_path)

        assert not path.exists()

    async def test_failed_dispatch_is_retried_later(self, watcher, dispatcher, tmp_path):
        """Test a failed dispatch leaves the file for the next poll."""
        path = write_segment(tmp_path / "audio" / "audio_1_000.aac")
        dispatcher.send.side_effect = lambda record: DispatchResult(ok=False, dedup_key=record.dedup_key)

        assert await watcher.poll_once("ch1", "live9", tmp_path) == []

        dispatcher.send.side_effect = lambda record: DispatchResult(ok=True, dedup_key=record.dedup_key)
        sent = await watcher.poll_once("ch1", "live9", tmp_path)

        assert [segment.path for segment in sent] == [path]

    async def test_in_flight_cap_defers_extra_segments(self, dispatcher, tmp_path):
        """Test at most max_in_flight dispatches run at once; the rest wait for later polls."""
        now = time.time()
        for index in range(5):
            write_segment(tmp_path / "audio" / f"audio_1_{index:03d}.aac", age=60 - index, now=now)

        release = asyncio.Event()
        peak = 0
        watcher = SegmentWatcher(dispatcher, stability_window=10, max_in_flight=2)

        async def slow_send(record):
            nonlocal peak
            peak = max(peak, watcher.in_flight)
            await release.wait()
            return DispatchResult(ok=True, dedup_key=record.dedup_key)

        dispatcher.send.side_effect = slow_send

        first = asyncio.create_task(watcher.poll_once("ch1", "live9", tmp_path))
        await asyncio.sleep(0.05)
        assert watcher.in_flight == 2
        assert await watcher.poll_once("ch1", "live9", tmp_path) == []

        release.set()
        sent_first = await first
        sent_second = await watcher.poll_once("ch1", "live9", tmp_path)
        sent_third = await watcher.poll_once("ch1", "live9", tmp_path)

        assert peak == 2
        assert [segment.name for segment in sent_first] == ["audio_1_000.aac", "audio_1_001.aac"]
        assert [segment.name for segment in sent_second] == ["audio_1_002.aac", "audio_1_003.aac"]
        assert [segment.name for segment in sent_third] == ["audio_1_004.aac"]

    async def test_in_flight_cap_shared_across_concurrent_channels(self, dispatcher, tmp_path):
        """Test channels polling at the same moment together stay within the global cap."""
        # Arrange
        for channel_id in ("ch1", "ch2"):
            for index in range(3):
                write_segment(tmp_path / channel_id / "audio" / f"audio_1_{index:03d}.aac")

        release = asyncio.Event()
        active = 0
        peak = 0
        watcher = SegmentWatcher(dispatcher, stability_window=10, max_in_flight=3)

        async def slow_send(record):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1
            return DispatchResult(ok=True, dedup_key=record.dedup_key)

        dispatcher.send.side_effect = slow_send

        # Act
        polls = [
            asyncio.create_task(watcher.poll_once(channel_id, "live9", tmp_path / channel_id))
            for channel_id in ("ch1", "ch2")
        ]
        await asyncio.sleep(0.05)
        in_flight = watcher.in_flight
        release.set()
        sent = await asyncio.gather(*polls)

        # Assert
        assert in_flight == 3
        assert peak == 3
        assert [len(batch) for batch in sent] == [3, 0]
        assert watcher.in_flight == 0

    async def test_run_channel_polls_until_cancelled(self, watcher, dispatcher, tmp_path):
        """Test the poll loop dispatches and stops cleanly on cancellation."""
        write_segment(tmp_path / "audio" / "audio_1_000.aac")

        task = asyncio.create_task(watcher.run_channel("ch1", "live9", tmp_path))
        for _ in range(100):
            if dispatcher.send.await_count:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert dispatcher.send.await_count == 1


class TestSweepStale:
    def test_removes_files_past_max_age(self, dispatcher, tmp_path):
        """Test recordings older than the max age are deleted."""
        watcher = SegmentWatcher(dispatcher, max_age_seconds=3600)
        now = time.time()
        old = write_segment(tmp_path / "ch1" / "1" / "audio" / "audio_1_000.aac", age=7200, now=now)
        fresh = write_segment(tmp_path / "ch1" / "1" / "audio" / "audio_1_001.aac", age=60, now=now)

        assert watcher.sweep_stale(tmp_path, now=now) == 1

        assert not old.exists()
        assert fresh.exists()

    def test_removes_oldest_while_over_size_cap(self, dispatcher, tmp_path):
        """Test oldest files go first until the total fits under the byte cap."""
        watcher = SegmentWatcher(dispatcher, max_total_bytes=250)
        now = time.time()
        paths = [
            write_segment(tmp_path / "ch1" / "1" / "video" / f"video_1_{i:03d}.ts", size=100, age=300 - i, now=now)
            for i in range(4)
        ]

        assert watcher.sweep_stale(tmp_path, now=now) == 2

        assert [path.exists() for path in paths] == [False, False, True, True]

    def test_missing_root(self, watcher, tmp_path):
        assert watcher.sweep_stale(tmp_path / "missing") == 0
