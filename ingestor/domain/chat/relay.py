"""Chat relay: drains decoded chat events for an owned channel into the chat dispatcher."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from ingestor.domain.dispatch.dispatcher import Dispatcher
from ingestor.domain.dispatch.keys import build_chat_record
from ingestor.schemas import ChatEvent
from ingestor.utils.app_errors import CaptureError, CaptureErrorCode


class ChatProtocol(Protocol):
    """External chat-protocol client. `poll_events` must not block."""

    async def join(self, channel_id: str) -> Any: ...

    async def poll_events(self, handle: Any) -> list[dict[str, Any] | ChatEvent]: ...

    async def leave(self, handle: Any) -> None: ...


class ChatRelay:
    def __init__(self, protocol: ChatProtocol, dispatcher: Dispatcher, poll_interval: float = 1.0) -> None:
        self._protocol = protocol
        self._dispatcher = dispatcher
        self.poll_interval = poll_interval

    async def start(self, channel_id: str) -> asyncio.Task:
        """Join the channel's chat and return the running relay task.

        Raises:
            CaptureError: JOIN_FAILED when the chat join fails.
        """
        try:
            handle = await self._protocol.join(channel_id)
        except Exception as e:
            raise CaptureError(CaptureErrorCode.JOIN_FAILED, f"chat join failed: {e}", channel_id=channel_id) from e

        logger.info("Joined chat for channel {}", channel_id)
        return asyncio.create_task(self._run(channel_id, handle), name=f"chat-relay:{channel_id}")

    async def relay_once(self, channel_id: str, handle: Any) -> int:
        events = await self._protocol.poll_events(handle)
        if not events:
            return 0
        results = await asyncio.gather(
            *(self._dispatcher.send(build_chat_record(channel_id, event)) for event in events)
        )
        return sum(1 for result in results if result.ok)

    async def _run(self, channel_id: str, handle: Any) -> None:
        try:
            while True:
                try:
                    await self.relay_once(channel_id, handle)
                except Exception as e:
                    logger.warning("Chat poll failed for channel {}: {}", channel_id, e)
                await asyncio.sleep(self.poll_interval)
        finally:
            try:
                await self._protocol.leave(handle)
            except Exception as e:
                logger.warning("Chat leave failed for channel {}: {}", channel_id, e)
            logger.info("Left chat for channel {}", channel_id)
