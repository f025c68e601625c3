from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChatEvent(BaseModel):
    """Decoded chat message as delivered by the chat-protocol client.

    Unknown keys are kept so downstream consumers see the full message.
    """

    model_config = ConfigDict(extra="allow")

    cid: str | None = None
    ctime: int | None = None
    uid: str | None = None
    msg: str = ""
    extras: dict[str, Any] = Field(default_factory=dict)
    profile: dict[str, Any] | None = None

    @property
    def streaming_channel_id(self) -> str | None:
        return self.extras.get("streamingChannelId")
