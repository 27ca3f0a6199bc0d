"""
Event infrastructure for lotbook.

- Event classes: Immutable Pydantic events validated against JSON Schema contracts
  - BaseEvent: Envelope fields only
  - ValidatedEvent: Domain events with payload validation
  - ControlEvent: Lifecycle events (no payload validation)
- EventBus: Publish/subscribe distribution to portfolio, analytics and UI consumers
"""

from lotbook.events.event_bus import EventBus, IEventBus, SubscriptionToken
from lotbook.events.events import (
    BaseEvent,
    ControlEvent,
    LedgerReadyEvent,
    LedgerRejectionEvent,
    PositionUpdateEvent,
    PriceUpdateEvent,
    SnapshotCreatedEvent,
    ValidatedEvent,
)

__all__ = [
    # Base classes
    "BaseEvent",
    "ValidatedEvent",
    "ControlEvent",
    # Ledger events
    "PositionUpdateEvent",
    "PriceUpdateEvent",
    "LedgerRejectionEvent",
    "LedgerReadyEvent",
    "SnapshotCreatedEvent",
    # EventBus
    "IEventBus",
    "EventBus",
    "SubscriptionToken",
]
