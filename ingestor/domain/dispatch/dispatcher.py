from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Protocol

from loguru import logger

from ingestor.schemas import DispatchRecord, DispatchResult
from ingestor.utils.app_errors import CaptureErrorCode

ERROR_LOG_INTERVAL_SECONDS = 60.0


class Sink(Protocol):
    name: str

    async def put(self, record: DispatchRecord) -> None: ...


@dataclass
class DispatcherStats:
    sent: int = 0
    failed: int = 0
    rejected: int = 0
    in_flight: int = 0


class Dispatcher:
    """Forwards records to one sink with bounded concurrency.

    `send` never raises: failures are logged (at most once per interval),
    counted and dropped. There is no retry queue.
    """

    def __init__(self, sink: Sink, *, concurrency: int = 16, name: str | None = None) -> None:
        self._sink = sink
        self._semaphore = asyncio.Semaphore(concurrency)
        self.name = name or sink.name
        self._stats = DispatcherStats()
        self._last_error_log: float | None = None

    async def send(self, record: DispatchRecord) -> DispatchResult:
        if not record.partition_key:
            self._stats.rejected += 1
            logger.warning("Dispatch rejected, empty partition key: dispatcher={} dedup={}", self.name, record.dedup_key)
            return DispatchResult(
                ok=False,
                dedup_key=record.dedup_key,
                error_code=CaptureErrorCode.INVALID_PARTITION_KEY.value,
            )

        async with self._semaphore:
            self._stats.in_flight += 1
            try:
                await self._sink.put(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.failed += 1
                self._log_failure(record, e)
                return DispatchResult(
                    ok=False,
                    dedup_key=record.dedup_key,
                    error_code=CaptureErrorCode.SINK_UNAVAILABLE.value,
                    error=str(e),
                )
            finally:
                self._stats.in_flight -= 1

        self._stats.sent += 1
        return DispatchResult(ok=True, dedup_key=record.dedup_key)

    def _log_failure(self, record: DispatchRecord, error: Exception) -> None:
        now = time.monotonic()
        if self._last_error_log is None or now - self._last_error_log > ERROR_LOG_INTERVAL_SECONDS:
            logger.error(
                "Dispatch failed: dispatcher={} partition={} dedup={} failed_total={} error={}",
                self.name,
                record.partition_key,
                record.dedup_key,
                self._stats.failed,
                error,
            )
            self._last_error_log = now

    def stats(self) -> dict[str, int]:
        return asdict(self._stats)
