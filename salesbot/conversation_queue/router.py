"""Queue-backed router from inbound chat messages to the reply pipeline."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime

from loguru import logger

from salesbot.bus.events import InboundMessage, OutboundMessage
from salesbot.bus.queue import MessageBus
from salesbot.config import ConversationQueueConfig
from salesbot.conversation_queue.keying import (
    build_conversation_key,
    is_group_chat,
    is_status_broadcast,
)
from salesbot.conversation_queue.queue import (
    ConversationQueue,
    ConversationQueueError,
    QueueClearedError,
    TaskTimeoutError,
)

MessageHandler = Callable[[InboundMessage], Awaitable[str | None]]

DEFAULT_APOLOGY = (
    "Oops! Something went wrong while processing your message. "
    "Please try again in a moment."
)

# Remembered message ids for duplicate suppression.
SEEN_IDS_LIMIT = 2048


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class ConversationRouter:
    """Consumes bus inbound messages and runs them through the conversation queue."""

    def __init__(
        self,
        *,
        bus: MessageBus,
        queue: ConversationQueue,
        handler: MessageHandler,
        config: ConversationQueueConfig,
        apology_text: str = DEFAULT_APOLOGY,
    ):
        self.bus = bus
        self.queue = queue
        self.handler = handler
        self.config = config
        self.apology_text = apology_text
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._last_activity: dict[str, float] = {}
        self._reply_tasks: set[asyncio.Task[None]] = set()
        self._last_sweep = time.monotonic()
        self._running = False

    async def run(self) -> None:
        """Main router loop."""
        self._running = True
        logger.info("Conversation router started")
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                self._maybe_sweep()
                continue

            if not self._running:
                logger.debug("Router stopping, message from {} not queued", msg.chat_id)
                break
            try:
                self.submit(msg)
            except ConversationQueueError as e:
                logger.debug("Message from {} not queued: {}", msg.chat_id, e)
                continue
            self._maybe_sweep()
        logger.info("Conversation router stopped")

    async def stop(self) -> None:
        """Stop routing, cancel queued work and wait for pending replies."""
        self._running = False
        await self.queue.close()
        if self._reply_tasks:
            await asyncio.gather(*list(self._reply_tasks), return_exceptions=True)
        self._reply_tasks.clear()

    def skip_reason(self, msg: InboundMessage) -> str | None:
        """Why ``msg`` should not be answered, or None when it should."""
        if msg.from_me:
            return "own message"
        if is_group_chat(msg.chat_id):
            return "group chat"
        if is_status_broadcast(msg.chat_id):
            return "status broadcast"
        age_s = (datetime.now(msg.timestamp.tzinfo) - msg.timestamp).total_seconds()
        if age_s > self.config.max_message_age_s:
            return f"stale message ({age_s:.0f}s old)"
        if msg.message_id and msg.message_id in self._seen_ids:
            return "duplicate message"
        return None

    def submit(self, msg: InboundMessage) -> asyncio.Future[str | None] | None:
        """Queue ``msg`` for its chat; returns the completion or None if skipped."""
        reason = self.skip_reason(msg)
        if reason:
            logger.debug("Ignoring message from {}: {}", msg.chat_id, reason)
            return None

        if msg.message_id:
            self._remember(msg.message_id)
        key = build_conversation_key(msg)
        self._last_activity[key] = time.monotonic()
        logger.info(f"New message from {msg.chat_id}: {_preview(msg.content)}")

        completion = self.queue.enqueue(key, lambda: self.handler(msg))
        task = asyncio.create_task(self._deliver(msg, completion))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)
        return completion

    def sweep_inactive(self, now: float | None = None) -> list[str]:
        """Clear queues of chats idle longer than the inactivity threshold."""
        now = time.monotonic() if now is None else now
        self._last_sweep = now
        threshold = self.config.inactivity_threshold_s
        stale = [
            key
            for key, ts in self._last_activity.items()
            if now - ts > threshold and not self.queue.is_processing(key)
        ]
        for key in stale:
            self.queue.clear_queue(key)
            self._last_activity.pop(key, None)
        if stale:
            logger.info(f"Cleaned {len(stale)} inactive conversation(s)")
        return stale

    @property
    def active_conversations(self) -> int:
        return len(self._last_activity)

    def _maybe_sweep(self) -> None:
        if time.monotonic() - self._last_sweep >= self.config.sweep_interval_s:
            self.sweep_inactive()

    def _remember(self, message_id: str) -> None:
        self._seen_ids[message_id] = None
        self._seen_ids.move_to_end(message_id)
        while len(self._seen_ids) > SEEN_IDS_LIMIT:
            self._seen_ids.popitem(last=False)

    async def _deliver(
        self,
        msg: InboundMessage,
        completion: asyncio.Future[str | None],
    ) -> None:
        try:
            reply = await completion
        except QueueClearedError:
            logger.debug(f"Message from {msg.chat_id} dropped: queue cleared")
            return
        except TaskTimeoutError as exc:
            logger.warning(f"Reply for {msg.chat_id} timed out: {exc}")
            reply = self.apology_text
        except Exception as exc:
            logger.error(f"Error processing message from {msg.chat_id}: {exc}")
            reply = self.apology_text

        if not reply:
            return
        await self.bus.publish_outbound(
            OutboundMessage(
                channel=msg.channel,
                chat_id=msg.chat_id,
                content=reply,
                reply_to=msg.message_id,
                metadata=msg.metadata,
            )
        )
