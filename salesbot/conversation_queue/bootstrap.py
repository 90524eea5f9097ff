"""Bootstrap helpers for conversation queue mode."""

from __future__ import annotations

from salesbot.bus.queue import MessageBus
from salesbot.config import ConversationQueueConfig
from salesbot.conversation_queue.queue import ConversationQueue
from salesbot.conversation_queue.router import ConversationRouter, MessageHandler


def build_router(
    *,
    bus: MessageBus,
    handler: MessageHandler,
    config: ConversationQueueConfig | None = None,
) -> ConversationRouter | None:
    """Build the queue-backed router when the queue is enabled."""
    cfg = config or ConversationQueueConfig.from_env()
    if not cfg.enabled:
        return None
    return ConversationRouter(
        bus=bus,
        queue=ConversationQueue.from_config(cfg),
        handler=handler,
        config=cfg,
    )
