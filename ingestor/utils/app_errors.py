"""Typed errors for the capture pipeline.

Callers branch on `CaptureError.code`, never on the message text.
"""

from enum import Enum


class CaptureErrorCode(str, Enum):
    CHANNEL_NOT_FOUND = "CHANNEL_NOT_FOUND"
    CHANNEL_NOT_LIVE = "CHANNEL_NOT_LIVE"
    NO_COLLECTION_ENABLED = "NO_COLLECTION_ENABLED"
    HLS_NOT_FOUND = "HLS_NOT_FOUND"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    UPLOAD_ERROR = "UPLOAD_ERROR"
    ALREADY_RUNNING = "PROCESS_ALREADY_RUNNING"
    STREAMLINK_NOT_RUNNING = "STREAMLINK_NOT_RUNNING"
    JOIN_FAILED = "JOIN_FAILED"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INVALID_PARTITION_KEY = "INVALID_PARTITION_KEY"
    SINK_UNAVAILABLE = "SINK_UNAVAILABLE"

    def __str__(self) -> str:
        return self.value


_DEFAULT_MESSAGES = {
    CaptureErrorCode.CHANNEL_NOT_FOUND: "Channel not found",
    CaptureErrorCode.CHANNEL_NOT_LIVE: "Channel is not live",
    CaptureErrorCode.NO_COLLECTION_ENABLED: "No collection is enabled for the channel",
    CaptureErrorCode.HLS_NOT_FOUND: "Stream URL not found",
    CaptureErrorCode.FILE_NOT_FOUND: "File not found",
    CaptureErrorCode.UPLOAD_ERROR: "Failed to upload file",
    CaptureErrorCode.ALREADY_RUNNING: "Capture is already running",
    CaptureErrorCode.STREAMLINK_NOT_RUNNING: "Source process is not running",
    CaptureErrorCode.JOIN_FAILED: "Failed to join channel",
    CaptureErrorCode.NOT_INITIALIZED: "Supervisor not initialized",
    CaptureErrorCode.INVALID_PARTITION_KEY: "Partition key is empty",
    CaptureErrorCode.SINK_UNAVAILABLE: "Sink is unavailable",
}


class CaptureError(Exception):
    def __init__(self, code: CaptureErrorCode, message: str | None = None, *, channel_id: str | None = None):
        self.code = code
        self.message = message or _DEFAULT_MESSAGES.get(code, code.value)
        self.channel_id = channel_id
        super().__init__(f"{code.value}: {self.message}")

    @property
    def is_expected(self) -> bool:
        """Outcomes that are part of normal scheduling and not worth an error log."""
        return self.code in (CaptureErrorCode.ALREADY_RUNNING, CaptureErrorCode.CHANNEL_NOT_LIVE)
