"""Per-chat ordered queue with debounce coalescing and a global concurrency guard.

Messages for one chat are buffered until the chat goes quiet for
``wait_time_s``; the buffered tasks then collapse into a single combined
task appended to that chat's ready queue. The scheduler runs at most one
combined task per chat at a time and at most ``concurrency`` chats at once.

Every submitted task owns an ``asyncio.Future`` that is settled exactly once:
with its own action's result or error, with ``TaskTimeoutError`` when its
batch overruns, or with ``QueueClearedError`` when its chat is cleared.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from salesbot.config import ConversationQueueConfig

T = TypeVar("T")


class ConversationQueueError(RuntimeError):
    """Base error for conversation queue failures."""


class QueueClearedError(ConversationQueueError):
    """Raised into pending tasks whose chat queue was cleared."""


class TaskTimeoutError(ConversationQueueError):
    """Raised into tasks whose batch exceeded its timeout."""


@dataclass(frozen=True)
class TaskOptions:
    """Per-task options; ``timeout_s=None`` uses the queue default."""

    priority: int = 0
    timeout_s: float | None = None


@dataclass
class QueuedTask:
    """One submitted action and the future its caller awaits."""

    key: str
    action: Callable[[], Awaitable[Any]]
    priority: int
    timeout_s: float
    completion: asyncio.Future[Any]
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class CombinedTask:
    """Tasks flushed together from one debounce window, run in arrival order."""

    key: str
    tasks: list[QueuedTask]

    @property
    def priority(self) -> int:
        return max(t.priority for t in self.tasks)

    @property
    def timeout_s(self) -> float:
        return max(t.timeout_s for t in self.tasks)

    def pending(self) -> list[QueuedTask]:
        return [t for t in self.tasks if not t.completion.done()]


@dataclass
class _DebounceBuffer:
    tasks: list[QueuedTask] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time snapshot of queue occupancy."""

    buffered: int
    ready: int
    in_flight: int
    buffered_keys: tuple[str, ...]
    ready_keys: tuple[str, ...]
    in_flight_keys: tuple[str, ...]


class ConversationQueue:
    """Serialize work per chat, coalesce bursts, bound cross-chat concurrency."""

    def __init__(
        self,
        concurrency: int = 5,
        task_timeout_s: float = 60.0,
        wait_time_s: float = 3.0,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if task_timeout_s <= 0:
            raise ValueError(f"task_timeout_s must be > 0, got {task_timeout_s}")
        if wait_time_s < 0:
            raise ValueError(f"wait_time_s must be >= 0, got {wait_time_s}")
        self.concurrency = concurrency
        self.task_timeout_s = task_timeout_s
        self.wait_time_s = wait_time_s
        self._buffers: dict[str, _DebounceBuffer] = {}
        self._queues: dict[str, list[CombinedTask]] = {}
        self._in_flight: set[str] = set()
        self._runners: dict[str, asyncio.Task[None]] = {}
        # Batches that outlived their timeout keep running here until they finish.
        self._detached: set[asyncio.Task[None]] = set()
        self._closed = False

    @classmethod
    def from_config(cls, cfg: "ConversationQueueConfig") -> "ConversationQueue":
        return cls(
            concurrency=cfg.concurrency,
            task_timeout_s=cfg.task_timeout_s,
            wait_time_s=cfg.wait_time_s,
        )

    def enqueue(
        self,
        key: str,
        action: Callable[[], Awaitable[T]],
        options: TaskOptions | None = None,
    ) -> asyncio.Future[T]:
        """Buffer ``action`` for ``key`` and return the future of its result.

        Must be called from a running event loop. Never runs ``action``
        inline: each call restarts the chat's quiet-period timer.
        """
        if not isinstance(key, str) or not key:
            raise ValueError("key must be a non-empty string")
        if self._closed:
            raise ConversationQueueError("conversation queue is closed")

        opts = options or TaskOptions()
        timeout_s = self.task_timeout_s if opts.timeout_s is None else opts.timeout_s
        if timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {timeout_s}")

        loop = asyncio.get_running_loop()
        task = QueuedTask(
            key=key,
            action=action,
            priority=opts.priority,
            timeout_s=timeout_s,
            completion=loop.create_future(),
        )

        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = _DebounceBuffer()
            self._buffers[key] = buffer
        elif buffer.timer is not None:
            buffer.timer.cancel()
        buffer.tasks.append(task)
        buffer.timer = loop.call_later(self.wait_time_s, self._flush, key, buffer)

        logger.debug(
            "Queued task for {} (buffered={}, priority={})",
            key,
            len(buffer.tasks),
            task.priority,
        )
        return task.completion

    def clear_queue(self, key: str) -> int:
        """Reject every buffered and ready task of ``key``; in-flight work is kept.

        Returns the number of tasks rejected.
        """
        cleared = 0
        buffer = self._buffers.pop(key, None)
        if buffer is not None:
            if buffer.timer is not None:
                buffer.timer.cancel()
                buffer.timer = None
            for task in buffer.tasks:
                cleared += self._reject(task, QueueClearedError(f"Queue cleared for {key}"))

        for combined in self._queues.pop(key, []):
            for task in combined.tasks:
                cleared += self._reject(task, QueueClearedError(f"Queue cleared for {key}"))

        if cleared:
            logger.info(f"Cleared {cleared} pending task(s) for {key}")
        return cleared

    def clear_all_queues(self) -> int:
        keys = list(dict.fromkeys([*self._buffers, *self._queues]))
        return sum(self.clear_queue(key) for key in keys)

    async def close(self) -> None:
        """Clear all queues and cancel running batches."""
        self._closed = True
        self.clear_all_queues()
        running = [*self._runners.values(), *self._detached]
        for runner in running:
            runner.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._runners.clear()
        self._detached.clear()
        logger.info("Conversation queue closed")

    def get_queue_size(self, key: str) -> int:
        """Ready (flushed, not started) tasks for ``key``; excludes buffered ones."""
        return sum(len(c.tasks) for c in self._queues.get(key, []))

    def get_total_queue_size(self) -> int:
        """Ready tasks across all chats; excludes buffered ones."""
        return sum(self.get_queue_size(key) for key in self._queues)

    def get_buffered_size(self, key: str) -> int:
        buffer = self._buffers.get(key)
        return len(buffer.tasks) if buffer else 0

    def is_processing(self, key: str) -> bool:
        return key in self._in_flight

    def has_pending(self, key: str) -> bool:
        return key in self._buffers or key in self._queues or key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def stats(self) -> QueueStats:
        return QueueStats(
            buffered=sum(len(b.tasks) for b in self._buffers.values()),
            ready=self.get_total_queue_size(),
            in_flight=len(self._in_flight),
            buffered_keys=tuple(self._buffers),
            ready_keys=tuple(k for k, q in self._queues.items() if q),
            in_flight_keys=tuple(self._in_flight),
        )

    def _flush(self, key: str, buffer: _DebounceBuffer) -> None:
        if self._buffers.get(key) is not buffer:
            return
        del self._buffers[key]
        buffer.timer = None

        combined = CombinedTask(key=key, tasks=buffer.tasks)
        queue = self._queues.setdefault(key, [])
        queue.append(combined)
        queue.sort(key=lambda c: -c.priority)
        logger.debug(
            "Flushed {} task(s) for {} (ready batches={})",
            len(combined.tasks),
            key,
            len(queue),
        )
        self._schedule()

    def _schedule(self) -> None:
        if self._closed:
            return
        while len(self._in_flight) < self.concurrency:
            key = next(
                (k for k, q in self._queues.items() if q and k not in self._in_flight),
                None,
            )
            if key is None:
                return
            combined = self._queues[key].pop(0)
            self._in_flight.add(key)
            self._runners[key] = asyncio.create_task(self._execute(combined))
            logger.debug(
                "Dispatched {} task(s) for {} (in flight {}/{})",
                len(combined.tasks),
                key,
                len(self._in_flight),
                self.concurrency,
            )

    async def _execute(self, combined: CombinedTask) -> None:
        key = combined.key
        runner = asyncio.ensure_future(self._run_batch(combined))
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=combined.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Task for {} timed out after {}s; releasing chat",
                key,
                combined.timeout_s,
            )
            for task in combined.pending():
                self._reject(
                    task,
                    TaskTimeoutError(f"Task for {key} timed out after {combined.timeout_s}s"),
                )
            self._detached.add(runner)
            runner.add_done_callback(self._detached.discard)
        except asyncio.CancelledError:
            runner.cancel()
            for task in combined.pending():
                self._reject(task, QueueClearedError(f"Queue closed while running {key}"))
            raise
        finally:
            self._finish(key)

    async def _run_batch(self, combined: CombinedTask) -> None:
        for task in combined.tasks:
            # Settled already: cancelled by its caller or timed out with the batch.
            if task.completion.done():
                continue
            try:
                result = await task.action()
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                # The action cancelled itself; siblings still run.
                logger.warning(f"Task for {task.key} was cancelled by its action")
                task.completion.cancel()
            except Exception as exc:
                self._reject(task, exc)
            else:
                self._resolve(task, result)

    def _finish(self, key: str) -> None:
        self._in_flight.discard(key)
        self._runners.pop(key, None)
        queue = self._queues.get(key)
        if queue is not None and not queue:
            del self._queues[key]
        self._schedule()

    @staticmethod
    def _resolve(task: QueuedTask, result: Any) -> int:
        if task.completion.done():
            return 0
        try:
            task.completion.set_result(result)
        except Exception as exc:
            logger.error(f"Failed to resolve task for {task.key}: {exc}")
            return 0
        return 1

    @staticmethod
    def _reject(task: QueuedTask, error: BaseException) -> int:
        if task.completion.done():
            return 0
        try:
            task.completion.set_exception(error)
        except Exception as exc:
            logger.error(f"Failed to reject task for {task.key}: {exc}")
            return 0
        return 1
