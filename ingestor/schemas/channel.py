"""Channel ownership and metadata models."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


@dataclass(frozen=True, slots=True)
class ChannelLease:
    """Local copy of a `lock:{channel_id}` lease held in the shared store."""

    channel_id: str
    owner_id: str
    expires_at: float

    @classmethod
    def issue(cls, channel_id: str, owner_id: str, ttl: int, now: float | None = None) -> ChannelLease:
        now = time.time() if now is None else now
        return cls(channel_id=channel_id, owner_id=owner_id, expires_at=now + ttl)

    def extended(self, ttl: int, now: float | None = None) -> ChannelLease:
        now = time.time() if now is None else now
        return replace(self, expires_at=now + ttl)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class ChannelCapacityHint:
    """Capacity info read from `meta:{channel_id}`; never written by the scheduler."""

    channel_id: str
    current_load: int
    display_name: str = ""
    stable_numeric_id: int | None = None

    def to_mapping(self) -> dict[str, str]:
        data = {
            "current_load": str(self.current_load),
            "display_name": self.display_name,
        }
        if self.stable_numeric_id is not None:
            data["stable_numeric_id"] = str(self.stable_numeric_id)
        return data

    @classmethod
    def from_mapping(cls, channel_id: str, data: dict[str, str]) -> ChannelCapacityHint:
        """Build from a Redis hash. Raises ValueError/KeyError on malformed blobs."""
        load = int(data["current_load"])
        if load < 0:
            raise ValueError(f"current_load must be >= 0 (got {load})")
        numeric_id = data.get("stable_numeric_id")
        return cls(
            channel_id=channel_id,
            current_load=load,
            display_name=data.get("display_name", ""),
            stable_numeric_id=int(numeric_id) if numeric_id else None,
        )


class CollectFlags(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    chat: bool = Field(default=False, alias="isChatCollected")
    audio: bool = Field(default=False, alias="isAudioCollected")
    image: bool = Field(default=False, alias="isCaptureCollected")
    video: bool = Field(default=False, alias="isVideoCollected")

    def any_media(self) -> bool:
        return self.audio or self.image or self.video

    def any(self) -> bool:
        return self.chat or self.any_media()


class ChannelInfo(BaseModel):
    """Channel as returned by the external metadata source."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(alias="uuid")
    display_name: str = Field(default="", alias="channelName")
    open_live: bool = Field(default=False, alias="openLive")
    collect_flags: CollectFlags = Field(default_factory=CollectFlags, alias="collectFlags")
    current_load: int = Field(default=0, ge=0, alias="currentLoad")
    stream_url: str | None = Field(default=None, alias="streamUrl")

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_flags(cls, data: Any) -> Any:
        # Channel rows carry the collect flags as top-level columns
        if isinstance(data, dict) and "collectFlags" not in data and "collect_flags" not in data:
            flat = {key: data[key] for key in _FLAT_FLAG_KEYS if key in data}
            if flat:
                data = {**data, "collectFlags": flat}
        return data


_FLAT_FLAG_KEYS = ("isChatCollected", "isAudioCollected", "isCaptureCollected", "isVideoCollected")
