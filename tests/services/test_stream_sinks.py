"""Tests for the chat event sinks with stub AWS clients."""

from unittest.mock import AsyncMock

import orjson

from ingestor.schemas import DispatchRecord
from ingestor.services.integrations.stream_sinks import KinesisSink, LogSink, SqsFifoSink


def chat_record() -> DispatchRecord:
    return DispatchRecord(partition_key="stream-ch", dedup_key="1700_u1", payload={"msg": "hello", "uid": "u1"})


class TestKinesisSink:
    async def test_put_record_uses_partition_key(self):
        """Test events are written with the channel partition key and dedup key in the body."""
        client = AsyncMock()
        sink = KinesisSink("chat-stream", "ap-northeast-2", client=client)

        await sink.put(chat_record())

        kwargs = client.put_record.call_args.kwargs
        assert kwargs["StreamName"] == "chat-stream"
        assert kwargs["PartitionKey"] == "stream-ch"
        assert orjson.loads(kwargs["Data"]) == {"msg": "hello", "uid": "u1", "_dedup_key": "1700_u1"}


class TestSqsFifoSink:
    async def test_send_message_group_and_dedup(self):
        """Test FIFO ordering uses the partition key and deduplication the dedup key."""
        client = AsyncMock()
        sink = SqsFifoSink("https://sqs.example.com/123/chat.fifo", "ap-northeast-2", client=client)

        await sink.put(chat_record())

        client.send_message.assert_awaited_once_with(
            QueueUrl="https://sqs.example.com/123/chat.fifo",
            MessageBody='{"msg":"hello","uid":"u1"}',
            MessageGroupId="stream-ch",
            MessageDeduplicationId="1700_u1",
        )


class TestLogSink:
    async def test_put_only_logs(self):
        sink = LogSink("chat")

        await sink.put(chat_record())

        assert sink.name == "chat"
