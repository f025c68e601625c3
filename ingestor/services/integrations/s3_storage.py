"""S3 segment sink.

Uploads completed capture segments under
`channels/{channel_id}/lives/{live_id}/{kind}s/{file}`.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from botocore.exceptions import ClientError
from loguru import logger

from ingestor.schemas import DispatchRecord
from ingestor.services.integrations.aws_session import get_aws_session
from ingestor.utils.app_errors import CaptureError, CaptureErrorCode

_CONTENT_TYPES = {
    "audio": "audio/aac",
    "image": "image/jpeg",
    "video": "video/mp2t",
}


class S3SegmentSink:
    name = "s3"

    def __init__(self, bucket: str, region: str, client=None) -> None:
        self._bucket = bucket
        self._region = region
        self._client = client

    @asynccontextmanager
    async def _get_client(self) -> AsyncIterator:  # type: ignore[misc]
        if self._client is not None:
            yield self._client
            return
        async with get_aws_session(self._region).client("s3") as client:  # type: ignore[attr-defined]
            yield client

    async def put(self, record: DispatchRecord) -> None:
        path = record.file_path
        if path is None or not path.exists():
            raise CaptureError(CaptureErrorCode.FILE_NOT_FOUND, f"segment file missing: {path}")

        key = record.payload.get("object_key") or record.dedup_key
        content_type = _CONTENT_TYPES.get(record.payload.get("media_kind", ""), "application/octet-stream")

        try:
            async with self._get_client() as client:
                with path.open("rb") as fh:
                    await client.upload_fileobj(
                        fh,
                        self._bucket,
                        key,
                        ExtraArgs={
                            "ContentType": content_type,
                            "Metadata": {"channel-id": record.partition_key},
                        },
                    )
        except ClientError as e:
            raise CaptureError(CaptureErrorCode.UPLOAD_ERROR, f"upload of {key} failed: {e}") from e

        logger.info("Uploaded segment: s3://{}/{}", self._bucket, key)
