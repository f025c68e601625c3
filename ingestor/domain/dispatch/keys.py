"""Partition and deduplication keys for sink records."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from ingestor.schemas import ChatEvent, DispatchRecord, SegmentFile


def partition_key_for_event(channel_id: str, event: dict[str, Any]) -> str:
    """Channel identity: the event's own streaming channel id, else the owned channel id."""
    extras = event.get("extras") or {}
    streaming_channel_id = extras.get("streamingChannelId") if isinstance(extras, dict) else None
    return str(streaming_channel_id or channel_id or "")


def dedup_key_for_event(event: dict[str, Any]) -> str:
    """`{ctime}_{uid}` when both are present, else a random key."""
    ctime = event.get("ctime")
    uid = event.get("uid")
    if ctime and uid:
        return f"{ctime}_{uid}"
    return uuid4().hex


def build_chat_record(channel_id: str, event: dict[str, Any] | ChatEvent) -> DispatchRecord:
    if isinstance(event, ChatEvent):
        event = event.model_dump(exclude_none=True)
    return DispatchRecord(
        partition_key=partition_key_for_event(channel_id, event),
        dedup_key=dedup_key_for_event(event),
        payload=event,
    )


def build_segment_record(channel_id: str, live_id: str, segment: SegmentFile) -> DispatchRecord:
    object_key = segment.object_key(channel_id, live_id)
    return DispatchRecord(
        partition_key=channel_id,
        dedup_key=object_key,
        payload={
            "channel_id": channel_id,
            "live_id": live_id,
            "media_kind": segment.media_kind.value,
            "object_key": object_key,
            "file_name": segment.name,
            "size_bytes": segment.size_bytes,
            "created_at": segment.created_at,
        },
        file_path=segment.path,
    )
