"""Common enums used across schemas."""

from enum import Enum


class CaptureState(str, Enum):
    """Per-channel capture lifecycle states.

    State Transition Flow:

    IDLE → JOINING → CAPTURING → STOPPING → IDLE
              ↓                      ↑
             IDLE (join failed)      |
              └─────── STOPPING ─────┘

    State Descriptions:
    - IDLE: No subprocess is tracked for the channel.
    - JOINING: Metadata fetched, source (join) process being started.
    - CAPTURING: Source and encoder processes started. Stays CAPTURING even when
      a subprocess exits on its own (degraded), until an explicit stop.
    - STOPPING: Subprocesses are being terminated.
    """

    IDLE = "idle"
    JOINING = "joining"
    CAPTURING = "capturing"
    STOPPING = "stopping"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def running_states(cls) -> list["CaptureState"]:
        """States in which a new start must be rejected."""
        return [CaptureState.JOINING, CaptureState.CAPTURING]


class MediaKind(str, Enum):
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"

    def __str__(self) -> str:
        return self.value

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @classmethod
    def from_filename(cls, filename: str) -> "MediaKind | None":
        for kind, ext in _EXTENSIONS.items():
            if filename.endswith(ext):
                return kind
        return None


_EXTENSIONS = {
    MediaKind.AUDIO: ".aac",
    MediaKind.IMAGE: ".jpg",
    MediaKind.VIDEO: ".ts",
}


__all__ = ["CaptureState", "MediaKind"]
