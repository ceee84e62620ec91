from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable

from orchestrator.models import OrchestrationEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[OrchestrationEvent], Awaitable[None] | None]


class EventChannel:
    """Append-only stream of orchestration events with queued delivery.

    ``publish`` never blocks the producer: events go onto an asyncio queue and
    a dispatcher task hands them to listeners in order. A listener that raises
    is logged and the remaining listeners still see the event.
    """

    def __init__(self, *, history_limit: int = 1000) -> None:
        self._listeners: list[EventListener] = []
        self._queue: asyncio.Queue[OrchestrationEvent] | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.history_limit = history_limit
        self.history: list[OrchestrationEvent] = []

    def on(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self.off(listener)

    def off(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: OrchestrationEvent) -> None:
        self.history.append(event)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver_now(event)
            return
        if self._queue is None or self._loop is not loop:
            # Queues bind to the loop that first uses them.
            self._queue = asyncio.Queue()
            self._loop = loop
            self._dispatcher = None
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch())
        self._queue.put_nowait(event)

    def _deliver_now(self, event: OrchestrationEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
            except Exception:
                logger.warning("Event listener failed for %s", event.type, exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                # No loop to run it on; close the coroutine instead of leaking it.
                if inspect.iscoroutine(outcome):
                    outcome.close()
                logger.warning("Dropped async listener for %s outside an event loop", event.type)

    async def _deliver(self, event: OrchestrationEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.warning("Event listener failed for %s", event.type, exc_info=True)

    async def _dispatch(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            finally:
                queue.task_done()

    async def flush(self, timeout_seconds: float = 5.0) -> bool:
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Timed out after %.1fs draining %d queued events",
                timeout_seconds,
                self._queue.qsize(),
            )
            return False
        return True

    async def aclose(self, timeout_seconds: float = 5.0) -> bool:
        drained = await self.flush(timeout_seconds)
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
        self._dispatcher = None
        self._queue = None
        self._loop = None
        return drained
