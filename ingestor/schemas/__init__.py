"""Data models shared by the scheduler, supervisor and dispatchers."""

from .capture_state import CaptureState, MediaKind
from .chat import ChatEvent
from .channel import ChannelCapacityHint, ChannelInfo, ChannelLease, CollectFlags
from .dispatch import DispatchRecord, DispatchResult
from .segment import SegmentFile

__all__ = [
    "CaptureState",
    "ChannelCapacityHint",
    "ChannelInfo",
    "ChannelLease",
    "ChatEvent",
    "CollectFlags",
    "DispatchRecord",
    "DispatchResult",
    "MediaKind",
    "SegmentFile",
]
