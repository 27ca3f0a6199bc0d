"""
EventBus for ledger notifications.

Publish/subscribe fan-out of ledger events (position updates, price
updates, rejections) to portfolio, analytics and UI subscribers.

Key Features:
- Synchronous delivery: publish() returns after every handler ran
- Priority ordering (highest first), insertion order within a priority
- Error isolation (a failing handler is logged, the rest still run)
- Bounded history for inspection and tests
- Safe to publish from the ledger's worker threads
"""

import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Callable, ContextManager, Optional, Protocol, Type, TypeVar, Union, overload

from lotbook.events.events import BaseEvent
from lotbook.system import LoggerFactory

EventT = TypeVar("EventT", bound=BaseEvent)

logger = LoggerFactory.get_logger()


class IEventBus(Protocol):
    """
    Event bus interface used by the ledger service.

    The ledger publishes after every successful mutation, after every
    price-triggered recompute and for every rejected event. Subscribers
    never call back into the ledger synchronously for the same key.

    Usage:
        >>> bus = EventBus()
        >>> bus.subscribe(PositionUpdateEvent, on_position_update)
        >>> ledger = LedgerService(event_bus=bus)
    """

    def publish(self, event: BaseEvent) -> None:
        """Deliver event to every subscriber of its event_type."""
        ...

    def subscribe(
        self,
        event_type: Union[str, Type[BaseEvent]],
        handler: Callable[[Any], None],
        priority: int = 0,
    ) -> "SubscriptionToken":
        """Register handler for an event type (string or event class)."""
        ...

    def unsubscribe(self, event_type: str, handler: Callable[[BaseEvent], None]) -> None:
        """Remove handler; no-op if it was not subscribed."""
        ...

    def get_history(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[BaseEvent]:
        """Published events in publication order, optionally filtered."""
        ...

    def clear_history(self) -> None:
        ...


class SubscriptionToken(ContextManager):
    """Token for context-managed subscription removal."""

    def __init__(self, bus: "EventBus", event_type: str, handler: Callable):
        self.bus = bus
        self.event_type = event_type
        self.handler = handler
        self._active = True

    def unsubscribe(self) -> None:
        if self._active:
            self.bus.unsubscribe(self.event_type, self.handler)
            self._active = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class EventBus:
    """
    Synchronous, thread-safe event bus.

    Subscriber lists and history are guarded by a lock; handlers run outside
    it, on the publishing thread. Two keys processed on different worker
    threads may therefore publish concurrently, while events for one key
    arrive in the order the ledger applied them.

    Example:
        >>> bus = EventBus(max_history=10_000, display_events=["position_update"])
        >>> bus.subscribe("position_update", risk.on_position, priority=100)
        >>> bus.subscribe("position_update", ui.refresh, priority=10)
        >>> bus.publish(event)
        >>> bus.get_history(event_type="position_update", limit=5)
    """

    def __init__(self, max_history: int = 100_000, display_events: Optional[list[str]] = None):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events kept in history (0 = unlimited)
            display_events: Event types echoed to the console through the
                logging system (["*"] for all, None or [] for none)
        """
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[tuple[int, Callable]]] = defaultdict(list)
        self._handler_cache: dict[str, list[tuple[int, Callable]]] = {}
        self._event_history: deque[BaseEvent] = deque(maxlen=max_history if max_history > 0 else None)
        self._on_publish: Optional[Callable[[BaseEvent], BaseEvent]] = None
        self._on_error: Optional[Callable[[BaseEvent, Callable, Exception], None]] = None
        self._display_events = display_events or []
        logger.debug("event_bus.initialized", max_history=max_history, display_events=self._display_events)

    def _should_display_event(self, event: BaseEvent) -> bool:
        if not self._display_events:
            return False
        return "*" in self._display_events or event.event_type in self._display_events

    def _log_event(self, event: BaseEvent) -> None:
        """Hand the event to the console renderer's compact bus formatting."""
        event_logger = LoggerFactory.get_logger(f"lotbook.events.{event.event_type}")
        event_logger.info("event.display", **event.model_dump())

    def _handlers_for(self, event_type: str) -> list[tuple[int, Callable]]:
        with self._lock:
            handlers = self._handler_cache.get(event_type)
            if handlers is None:
                handlers = sorted(self._subscribers.get(event_type, []), key=lambda x: x[0], reverse=True)
                self._handler_cache[event_type] = handlers
            return handlers

    def publish(self, event: BaseEvent) -> None:
        """
        Publish event to all subscribers.

        The pre-publish middleware may replace the event. The event is added to
        history before any handler runs. Handler exceptions are logged, passed
        to the error middleware, and never propagate to the publisher.
        """
        start = time.perf_counter()
        if self._on_publish:
            event = self._on_publish(event)

        with self._lock:
            self._event_history.append(event)

        if self._should_display_event(event):
            self._log_event(event)

        handlers = self._handlers_for(event.event_type)
        errors = 0
        for _, handler in handlers:
            try:
                handler(event)
            except Exception as e:
                errors += 1
                logger.error(
                    "event_bus.handler_error",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    handler=getattr(handler, "__name__", str(handler)),
                    error=str(e),
                )
                if self._on_error:
                    self._on_error(event, handler, e)

        logger.debug(
            "event_bus.published",
            event_type=event.event_type,
            event_id=event.event_id,
            subscriber_count=len(handlers),
            duration=time.perf_counter() - start,
            errors=errors,
        )

    @overload
    def subscribe(
        self, event_type: str, handler: Callable[[BaseEvent], None], priority: int = 0
    ) -> SubscriptionToken: ...
    @overload
    def subscribe(
        self, event_type: Type[EventT], handler: Callable[[EventT], None], priority: int = 0
    ) -> SubscriptionToken: ...

    def subscribe(
        self, event_type: Union[str, Type[BaseEvent]], handler: Callable[[Any], None], priority: int = 0
    ) -> SubscriptionToken:
        """
        Subscribe to an event type given by name or by event class.

        Raises:
            ValueError: If an event class has no string event_type default
        """
        if isinstance(event_type, str):
            event_type_str = event_type
        else:
            field = event_type.model_fields.get("event_type")
            default = field.default if field is not None else None
            if not isinstance(default, str):
                raise ValueError(f"Event class {event_type} missing event_type")
            event_type_str = default

        with self._lock:
            self._subscribers[event_type_str].append((priority, handler))
            self._handler_cache.pop(event_type_str, None)
            total = len(self._subscribers[event_type_str])

        logger.debug(
            "event_bus.subscribed",
            event_type=event_type_str,
            handler=getattr(handler, "__name__", str(handler)),
            priority=priority,
            total_handlers=total,
        )
        return SubscriptionToken(self, event_type_str, handler)

    def unsubscribe(self, event_type: str, handler: Callable[[BaseEvent], None]) -> None:
        with self._lock:
            if event_type not in self._subscribers:
                return
            before = len(self._subscribers[event_type])
            self._subscribers[event_type] = [(p, h) for p, h in self._subscribers[event_type] if h != handler]
            removed = before - len(self._subscribers[event_type])
            self._handler_cache.pop(event_type, None)
        if removed:
            logger.debug(
                "event_bus.unsubscribed",
                event_type=event_type,
                handler=getattr(handler, "__name__", str(handler)),
                removed_count=removed,
            )

    def get_history(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[BaseEvent]:
        """
        Get event history with optional filters.

        Args:
            event_type: Keep only this event type
            since: Keep only events with occurred_at >= since
            limit: Keep only the most recent N events

        Returns:
            Events in publication order
        """
        with self._lock:
            events = list(self._event_history)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if since is not None:
            events = [e for e in events if e.occurred_at >= since]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        with self._lock:
            self._event_history.clear()
        logger.debug("event_bus.history_cleared")

    def get_subscriber_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._subscribers.get(event_type, []))

    def set_middleware(
        self,
        on_publish: Optional[Callable[[BaseEvent], BaseEvent]] = None,
        on_error: Optional[Callable[[BaseEvent, Callable, Exception], None]] = None,
    ) -> None:
        """Set bus middleware hooks."""
        self._on_publish = on_publish
        self._on_error = on_error
        logger.debug(
            "event_bus.middleware_set",
            on_publish=getattr(on_publish, "__name__", None) if on_publish else None,
            on_error=getattr(on_error, "__name__", None) if on_error else None,
        )
