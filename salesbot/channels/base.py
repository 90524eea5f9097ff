"""Base class for chat channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from loguru import logger

from salesbot.bus.events import InboundMessage, OutboundMessage
from salesbot.bus.queue import MessageBus


class BaseChannel(ABC):
    """A transport that publishes inbound messages and delivers outbound ones."""

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start listening; runs until stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and release its resources."""

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver one outbound message."""

    def is_allowed(self, sender_id: str) -> bool:
        allow_list = getattr(self.config, "allow_from", ())
        if not allow_list:
            return True
        return str(sender_id) in allow_list

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        *,
        message_id: str | None = None,
        timestamp: datetime | None = None,
        from_me: bool = False,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Publish an inbound message unless the sender is not allowed."""
        if not self.is_allowed(sender_id):
            logger.warning(f"{self.name}: sender {sender_id} not allowed, message dropped")
            return False

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            media=media or [],
            metadata=metadata or {},
            message_id=message_id,
            from_me=from_me,
        )
        if timestamp is not None:
            msg.timestamp = timestamp
        await self.bus.publish_inbound(msg)
        return True

    @property
    def is_running(self) -> bool:
        return self._running
