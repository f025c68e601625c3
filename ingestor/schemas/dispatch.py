"""Records handed to downstream sinks."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class DispatchRecord:
    """One event or file reference bound for a sink.

    `partition_key` groups records for ordering (channel identity);
    `dedup_key` lets the sink drop redeliveries (event time + stable id).
    """

    partition_key: str
    dedup_key: str
    payload: dict[str, Any] = field(default_factory=dict)
    file_path: Path | None = None


@dataclass(frozen=True, slots=True)
class DispatchResult:
    ok: bool
    dedup_key: str
    error_code: str | None = None
    error: str | None = None
