"""Event types carried on the message bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str
    sender_id: str
    chat_id: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    from_me: bool = False

    @property
    def session_key(self) -> str:
        """Conversation session key, overridable through metadata."""
        override = self.metadata.get("session_key") if self.metadata else None
        if isinstance(override, str) and override.strip():
            return override.strip()
        return f"{self.channel}:{self.chat_id}"


@dataclass
class OutboundMessage:
    """Message to deliver back through a chat channel."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
