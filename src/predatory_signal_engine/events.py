"""Typed publish/subscribe event bus.

Producers publish typed events; the engine, reporting sinks and tests
subscribe. Dispatch is synchronous and in subscription order, so the
order in which a subscriber observes events matches publication order.
A failing subscriber is logged and never prevents delivery to the others.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from predatory_signal_engine.errors import StateInvariantError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event types published by the engine."""

    SIGNAL_GENERATED = "signal_generated"
    TRADE_DECISION = "trade_decision"
    LIQUIDITY_ANALYSIS = "liquidity_analysis"
    HIGH_LIQUIDITY_REGIME = "high_liquidity_regime"
    LOW_LIQUIDITY_WARNING = "low_liquidity_warning"
    SPOOFING_DETECTED = "spoofing_detected"
    WASH_TRADING_DETECTED = "wash_trading_detected"
    WHALE_INTENT = "whale_intent"
    WHALE_DUMP = "whale_dump"
    SYSTEM_STATE_CHANGE = "system_state_change"
    STREAM_HEALTH_CHANGED = "stream_health_changed"


@dataclass(frozen=True)
class Event:
    """An immutable published event."""

    event_type: EventType
    payload: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for Redis stream publishing."""
        to_dict = getattr(self.payload, "to_dict", None)
        payload = to_dict() if callable(to_dict) else self.payload
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": payload,
        }


EventHandler = Callable[[Event], None]


@dataclass
class EventBusStats:
    published: int = 0
    delivered: int = 0
    handler_errors: int = 0


class EventBus:
    """Synchronous, thread-safe event bus.

    Example:
        ```python
        bus = EventBus()
        bus.subscribe(EventType.SYSTEM_STATE_CHANGE, lambda e: print(e.payload))
        bus.publish(EventType.SYSTEM_STATE_CHANGE, transition)
        ```
    """

    def __init__(self) -> None:
        self._subscribers: dict[EventType | None, list[EventHandler]] = defaultdict(list)
        self._lock = threading.RLock()
        self._stats = EventBusStats()

    @property
    def stats(self) -> EventBusStats:
        return self._stats

    def subscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Register a handler for one event type, or for all events when None."""
        with self._lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def publish(self, event_type: EventType, payload: Any) -> Event:
        """Publish an event to its typed subscribers, then to catch-all ones."""
        event = Event(event_type=event_type, payload=payload)
        with self._lock:
            handlers = list(self._subscribers.get(event_type, ())) + list(
                self._subscribers.get(None, ())
            )
        self._stats.published += 1

        for handler in handlers:
            try:
                handler(event)
                self._stats.delivered += 1
            except StateInvariantError:
                raise
            except Exception as e:
                self._stats.handler_errors += 1
                logger.error("Event handler failed for %s: %s", event_type.value, e)
        return event
