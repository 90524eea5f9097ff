"""Gateway wiring: bridge channel, message bus and conversation router."""

from __future__ import annotations

import asyncio

from loguru import logger

from salesbot.bus.events import InboundMessage
from salesbot.bus.queue import MessageBus
from salesbot.channels.base import BaseChannel
from salesbot.channels.whatsapp_bridge import WhatsAppBridgeChannel
from salesbot.config import BridgeConfig, ConversationQueueConfig
from salesbot.conversation_queue.bootstrap import build_router
from salesbot.conversation_queue.router import MessageHandler


async def dispatch_outbound(bus: MessageBus, channel: BaseChannel) -> None:
    """Deliver outbound replies until cancelled."""
    while True:
        msg = await bus.consume_outbound()
        try:
            await channel.send(msg)
        except Exception as e:
            logger.error(f"Failed to deliver reply to {msg.chat_id}: {e}")


async def echo_handler(msg: InboundMessage) -> str | None:
    """Placeholder pipeline that repeats the customer's text."""
    return msg.content or None


async def run_gateway(
    handler: MessageHandler = echo_handler,
    queue_config: ConversationQueueConfig | None = None,
    bridge_config: BridgeConfig | None = None,
) -> None:
    """Run bridge, router and outbound dispatcher until cancelled."""
    bus = MessageBus()
    channel = WhatsAppBridgeChannel(bridge_config or BridgeConfig.from_env(), bus)
    router = build_router(bus=bus, handler=handler, config=queue_config)
    if router is None:
        logger.error("Conversation queue disabled (SALESBOT_QUEUE_ENABLED), nothing to run")
        return

    tasks = [
        asyncio.create_task(channel.start()),
        asyncio.create_task(router.run()),
        asyncio.create_task(dispatch_outbound(bus, channel)),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        await router.stop()
        await channel.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Gateway stopped")
