from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .capture_state import MediaKind


@dataclass(frozen=True, slots=True)
class SegmentFile:
    path: Path
    media_kind: MediaKind
    created_at: float
    size_bytes: int

    @property
    def name(self) -> str:
        return self.path.name

    def object_key(self, channel_id: str, live_id: str) -> str:
        return f"channels/{channel_id}/lives/{live_id}/{self.media_kind.value}s/{self.name}"
