"""In-process domain event bus.

Domain modules publish, the broadcaster (and any cross-cutting subscriber)
listens. ``publish`` is synchronous: plain handlers run inline and their
exceptions reach the publisher. Coroutine handlers are fire-and-forget with
logged failure: each is scheduled as a task on the event's per-session lane,
so events published in sequence for one session are handled in that
sequence while the publisher never waits on delivery.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List

from .events import DomainEvent, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None] | None]


class EventBus:
    """Dispatcher keyed by :class:`EventType`, constructed by the composition root."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self._lanes: Dict[str, asyncio.Task[None]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        kind = EventType(event_type)
        self._handlers[kind].append(handler)
        logger.debug("Subscribed %s to %s", _handler_name(handler), kind.value)

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        kind = EventType(event_type)
        handlers = self._handlers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)
            logger.debug("Unsubscribed %s from %s", _handler_name(handler), kind.value)

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(EventType(event_type), ()))

    @property
    def pending(self) -> int:
        return len(self._pending)

    def publish(self, event: DomainEvent) -> None:
        """Dispatch ``event`` to its handlers in subscription order."""

        handlers = list(self._handlers.get(event.type, ()))
        if not handlers:
            logger.debug("No handlers for %s", event.type.value)
            return

        logger.debug(
            "Publishing %s for session %s to %d handlers",
            event.type.value,
            event.session_id,
            len(handlers),
        )
        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                self._schedule(event, handler, result)

    async def drain(self) -> None:
        """Wait until every scheduled handler task has finished."""

        while self._pending:
            await asyncio.wait(list(self._pending))

    async def close(self) -> None:
        await self.drain()
        self._handlers.clear()
        logger.debug("Event bus closed")

    def clear(self) -> None:
        self._handlers.clear()

    def _schedule(self, event: DomainEvent, handler: EventHandler, awaitable: Awaitable[None]) -> None:
        lane = event.session_id
        previous = self._lanes.get(lane)
        task = asyncio.get_running_loop().create_task(
            self._run_in_lane(previous, event, handler, awaitable),
            name=f"bus-{event.type.value}-{lane}",
        )
        self._lanes[lane] = task
        self._pending.add(task)
        task.add_done_callback(partial(self._on_task_done, lane))

    async def _run_in_lane(
        self,
        previous: asyncio.Task[None] | None,
        event: DomainEvent,
        handler: EventHandler,
        awaitable: Awaitable[None],
    ) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
        except asyncio.CancelledError:
            _close_awaitable(awaitable)
            raise
        try:
            await awaitable
        except Exception:  # pylint: disable=broad-except
            logger.exception(
                "Handler %s failed for eventType=%s sessionId=%s",
                _handler_name(handler),
                event.type.value,
                event.session_id,
            )

    def _on_task_done(self, lane: str, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if self._lanes.get(lane) is task:
            del self._lanes[lane]


def _handler_name(handler: Any) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


def _close_awaitable(awaitable: Awaitable[None]) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
