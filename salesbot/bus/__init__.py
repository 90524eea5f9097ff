"""In-process message bus shared by channels and the conversation router."""

from salesbot.bus.events import InboundMessage, OutboundMessage
from salesbot.bus.queue import MessageBus

__all__ = ["InboundMessage", "MessageBus", "OutboundMessage"]
