"""Chat channels feeding the message bus."""

from salesbot.channels.base import BaseChannel
from salesbot.channels.whatsapp_bridge import WhatsAppBridgeChannel

__all__ = ["BaseChannel", "WhatsAppBridgeChannel"]
