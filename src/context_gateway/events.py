"""Event bus used by caches, the orchestrator and the worker pool.

Components publish named events with a dict payload. Subscribers are plain
callables or coroutine functions; a failing subscriber is logged and never
breaks the publishing component.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger()

EventHandler = Callable[[str, dict[str, Any]], Any]

# Published event names, grouped by emitter.
CACHE_EVENTS = frozenset({
    "cache:initialized",
    "cache:set",
    "cache:delete",
    "cache:invalidated",
    "cache:bulk_set",
    "cache:bulk_get",
    "cache:evicted",
    "cache:cleanup",
    "cache:warming_started",
    "cache:warming_error",
    "cache:warming_completed",
    "cache:disposed",
})

ORCHESTRATOR_EVENTS = frozenset({
    "orchestrator:initialized",
    "orchestrator:shutdown",
    "performance:metrics",
    "performance:alert",
    "performance:timeout_warning",
})

PROCESSOR_EVENTS = frozenset({
    "processor:initialized",
    "processor:shutdown",
    "task:submitted",
    "task:started",
    "task:completed",
    "task:failed",
    "batch:completed",
})

KNOWN_EVENTS = CACHE_EVENTS | ORCHESTRATOR_EVENTS | PROCESSOR_EVENTS

WILDCARD = "*"


class EventBus:
    """Synchronous publish/subscribe hub with optional async subscribers."""

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event`` (or ``"*"`` for every event).

        Returns a callable that removes the subscription.
        """
        if event != WILDCARD and event not in KNOWN_EVENTS:
            raise ValueError(f"Unknown event: {event}")

        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        payload = payload or {}
        handlers = [*self._handlers.get(event, []), *self._handlers.get(WILDCARD, [])]

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule(handler(event, payload))
                else:
                    handler(event, payload)
            except Exception as e:
                logger.error("Event handler failed", event_name=event, error=str(e))

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("Async event handler dropped, no running loop")
            return

        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def clear(self) -> None:
        self._handlers.clear()
