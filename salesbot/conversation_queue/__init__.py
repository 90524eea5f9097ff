"""Per-chat ordered, debounced message processing."""

from salesbot.conversation_queue.bootstrap import build_router
from salesbot.conversation_queue.keying import build_conversation_key
from salesbot.conversation_queue.queue import (
    CombinedTask,
    ConversationQueue,
    ConversationQueueError,
    QueueClearedError,
    QueuedTask,
    QueueStats,
    TaskOptions,
    TaskTimeoutError,
)
from salesbot.conversation_queue.router import ConversationRouter, MessageHandler

__all__ = [
    "CombinedTask",
    "ConversationQueue",
    "ConversationQueueError",
    "ConversationRouter",
    "MessageHandler",
    "QueueClearedError",
    "QueueStats",
    "QueuedTask",
    "TaskOptions",
    "TaskTimeoutError",
    "build_conversation_key",
    "build_router",
]
