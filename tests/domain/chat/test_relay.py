"""Tests for ChatRelay."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from ingestor.domain.chat.relay import ChatRelay
from ingestor.schemas import DispatchResult
from ingestor.utils.app_errors import CaptureError, CaptureErrorCode


@pytest.fixture
def protocol() -> AsyncMock:
    mock = AsyncMock()
    mock.join.return_value = "handle-1"
    mock.poll_events.return_value = []
    return mock


@pytest.fixture
def dispatcher() -> AsyncMock:
    mock = AsyncMock()
    mock.send.side_effect = lambda record: DispatchResult(ok=record.partition_key != "", dedup_key=record.dedup_key)
    return mock


class TestChatRelay:
    async def test_relay_once_dispatches_events(self, protocol, dispatcher):
        """Test each polled event becomes one chat record."""
        protocol.poll_events.return_value = [
            {"ctime": 1, "uid": "a", "msg": "hi"},
            {"ctime": 2, "uid": "b", "msg": "yo", "extras": {"streamingChannelId": "s1"}},
        ]
        relay = ChatRelay(protocol, dispatcher)

        delivered = await relay.relay_once("ch1", "handle-1")

        assert delivered == 2
        keys = [call.args[0].partition_key for call in dispatcher.send.call_args_list]
        assert keys == ["ch1", "s1"]

    async def test_relay_once_without_events(self, protocol, dispatcher):
        relay = ChatRelay(protocol, dispatcher)

        assert await relay.relay_once("ch1", "handle-1") == 0
        dispatcher.send.assert_not_called()

    async def test_join_failure_raises_join_failed(self, protocol, dispatcher):
        """Test a failed join is reported with JOIN_FAILED."""
        protocol.join.side_effect = ConnectionError("chat server down")
        relay = ChatRelay(protocol, dispatcher)

        with pytest.raises(CaptureError) as exc_info:
            await relay.start("ch1")

        assert exc_info.value.code == CaptureErrorCode.JOIN_FAILED

    async def test_task_survives_poll_errors_and_leaves_on_cancel(self, protocol, dispatcher):
        """Test poll failures are logged and the chat is left when the task is cancelled."""
        protocol.poll_events.side_effect = [RuntimeError("decode error"), [{"ctime": 1, "uid": "a"}]] + [[]] * 1000
        relay = ChatRelay(protocol, dispatcher, poll_interval=0.01)

        task = await relay.start("ch1")
        for _ in range(100):
            if dispatcher.send.await_count:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert dispatcher.send.await_count == 1
        protocol.leave.assert_awaited_once_with("handle-1")

    async def test_leave_failure_is_not_raised(self, protocol, dispatcher):
        """Test a failing leave does not mask the cancellation."""
        protocol.leave.side_effect = ConnectionError("gone")
        relay = ChatRelay(protocol, dispatcher, poll_interval=0.01)

        task = await relay.start("ch1")
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
