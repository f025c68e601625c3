"""Chat event sinks: Kinesis stream, SQS FIFO queue, and a log-only sink."""

from __future__ import annotations

import orjson
from loguru import logger

from ingestor.schemas import DispatchRecord
from ingestor.services.integrations.aws_session import get_aws_session


class LogSink:
    """Logs records instead of forwarding them."""

    def __init__(self, name: str = "log") -> None:
        self.name = name

    async def put(self, record: DispatchRecord) -> None:
        target = record.file_path if record.file_path is not None else record.payload
        logger.info(
            "Dispatched to {}: partition={} dedup={} target={}",
            self.name,
            record.partition_key,
            record.dedup_key,
            target,
        )


class KinesisSink:
    """PutRecord per event; the partition key orders a channel's events on one shard."""

    name = "kinesis"

    def __init__(self, stream_name: str, region: str, client=None) -> None:
        self._stream_name = stream_name
        self._region = region
        self._client = client

    async def put(self, record: DispatchRecord) -> None:
        body = orjson.dumps({**record.payload, "_dedup_key": record.dedup_key})
        if self._client is not None:
            await self._client.put_record(
                StreamName=self._stream_name,
                PartitionKey=record.partition_key,
                Data=body,
            )
            return

        async with get_aws_session(self._region).client("kinesis") as client:  # type: ignore[attr-defined]
            await client.put_record(
                StreamName=self._stream_name,
                PartitionKey=record.partition_key,
                Data=body,
            )


class SqsFifoSink:
    """SendMessage to a FIFO queue: group = partition key, deduplication = dedup key."""

    name = "sqs"

    def __init__(self, queue_url: str, region: str, client=None) -> None:
        self._queue_url = queue_url
        self._region = region
        self._client = client

    def _params(self, record: DispatchRecord) -> dict:
        return {
            "QueueUrl": self._queue_url,
            "MessageBody": orjson.dumps(record.payload).decode(),
            "MessageGroupId": record.partition_key,
            "MessageDeduplicationId": record.dedup_key,
        }

    async def put(self, record: DispatchRecord) -> None:
        if self._client is not None:
            await self._client.send_message(**self._params(record))
            return

        async with get_aws_session(self._region).client("sqs") as client:  # type: ignore[attr-defined]
            await client.send_message(**self._params(record))
