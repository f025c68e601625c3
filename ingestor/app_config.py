from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ingestor.shared.config import EnvironConfig, config
from ingestor.shared.utils import default_owner_id


class ChatSinkKind(str, Enum):
    LOG = "log"
    KINESIS = "kinesis"
    SQS = "sqs"


class SegmentSinkKind(str, Enum):
    LOG = "log"
    S3 = "s3"


class SchedulerConfig(BaseModel):
    """Settings built once at startup and passed explicitly to each component."""

    model_config = ConfigDict(frozen=True)

    DEBUG: bool = False
    SERVICE_CODE: str = "channel-ingestor"
    REDIS_URL: str = "redis://localhost:6379"
    WORKER_OWNER_ID: str = Field(default_factory=default_owner_id)

    # Leases
    LEASE_TTL_SECONDS: int = Field(default=30, gt=0)
    SCHEDULER_TICK_SECONDS: float = Field(default=10.0, gt=0)
    LOCK_KEY_PREFIX: str = "lock"
    META_KEY_PREFIX: str = "meta"
    STORE_FAILURE_ALERT_THRESHOLD: int = Field(default=3, ge=1)

    # Admission control
    MAX_CHANNELS_PER_WORKER: int = Field(default=20, ge=0)
    GLOBAL_LOAD_CAP: int = Field(default=100_000, ge=0)

    # Capture
    RECORDINGS_DIR: Path = Path("recordings")
    MAX_TRACKED_CHANNELS: int = Field(default=50, ge=1)
    EVICTION_BATCH: int = Field(default=10, ge=1)
    PROCESS_STOP_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    SEGMENT_DURATION_SECONDS: int = Field(default=10, gt=0)
    IMAGE_INTERVAL_SECONDS: int = Field(default=30, gt=0)
    STREAM_ORIGIN: str = "https://chzzk.naver.com"

    # Segment watcher
    SEGMENT_POLL_SECONDS: float = Field(default=10.0, gt=0)
    SEGMENT_STABILITY_SECONDS: float = Field(default=10.0, ge=0)
    MAX_CONCURRENT_DISPATCHES: int = Field(default=3, ge=1)
    DELETE_DISPATCHED_SEGMENTS: bool = False
    HOUSEKEEPING_SECONDS: float = Field(default=3600.0, gt=0)
    RECORDING_MAX_AGE_SECONDS: float = Field(default=24 * 60 * 60, gt=0)
    RECORDING_MAX_BYTES: int = Field(default=10 * 1024 * 1024 * 1024, gt=0)

    # Chat + dispatch
    CHAT_POLL_SECONDS: float = Field(default=1.0, gt=0)
    DISPATCH_CONCURRENCY: int = Field(default=16, ge=1)
    CHAT_SINK: ChatSinkKind = ChatSinkKind.LOG
    SEGMENT_SINK: SegmentSinkKind = SegmentSinkKind.LOG
    KINESIS_STREAM_NAME: str | None = None
    SQS_QUEUE_URL: str | None = None
    S3_SEGMENT_BUCKET: str | None = None
    AWS_REGION: str = "ap-northeast-2"
    AWS_ACCESS_KEY_ID: str | None = None
    AWS_SECRET_ACCESS_KEY: str | None = None

    # Channel metadata API
    CHANNEL_API_BASE_URL: str | None = None
    CHANNEL_API_KEY: str | None = None
    CHANNEL_API_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Metrics / health
    HEALTH_TTL_SECONDS: int = Field(default=60, gt=0)

    @model_validator(mode="after")
    def _check_sinks(self) -> "SchedulerConfig":
        if self.CHAT_SINK is ChatSinkKind.KINESIS and not self.KINESIS_STREAM_NAME:
            raise ValueError("KINESIS_STREAM_NAME is required when CHAT_SINK=kinesis")
        if self.CHAT_SINK is ChatSinkKind.SQS and not self.SQS_QUEUE_URL:
            raise ValueError("SQS_QUEUE_URL is required when CHAT_SINK=sqs")
        if self.SEGMENT_SINK is SegmentSinkKind.S3 and not self.S3_SEGMENT_BUCKET:
            raise ValueError("S3_SEGMENT_BUCKET is required when SEGMENT_SINK=s3")
        if self.SCHEDULER_TICK_SECONDS >= self.LEASE_TTL_SECONDS:
            raise ValueError("SCHEDULER_TICK_SECONDS must be shorter than LEASE_TTL_SECONDS")
        return self

    @classmethod
    def from_environ(cls, environ: EnvironConfig | Mapping[str, str] | None = None) -> "SchedulerConfig":
        """Validate the environment into a config; unknown keys are ignored."""
        environ = config if environ is None else environ
        values = {}
        for name in cls.model_fields:
            value = environ.get(name)
            if value is not None:
                values[name] = value.strip() if isinstance(value, str) else value
        redis_url = environ.get("REDIS_URL_DEFAULT") or environ.get("REDIS_URL")
        if redis_url:
            values["REDIS_URL"] = redis_url
        return cls.model_validate(values)
