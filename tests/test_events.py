"""Tests for the event bus."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from predatory_signal_engine.errors import StateInvariantError
from predatory_signal_engine.events import Event, EventBus, EventType


@dataclass
class Payload:
    value: int

    def to_dict(self) -> dict[str, object]:
        return {"value": self.value}


class TestEventBus:
    def test_typed_handlers_run_before_catch_all(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe(None, lambda e: seen.append("all"))
        bus.subscribe(EventType.WHALE_DUMP, lambda e: seen.append("typed-1"))
        bus.subscribe(EventType.WHALE_DUMP, lambda e: seen.append("typed-2"))

        bus.publish(EventType.WHALE_DUMP, Payload(1))

        assert seen == ["typed-1", "typed-2", "all"]

    def test_only_matching_type_is_delivered(self) -> None:
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(EventType.SPOOFING_DETECTED, received.append)

        bus.publish(EventType.WHALE_DUMP, Payload(1))

        assert received == []

    def test_publication_order_is_preserved(self) -> None:
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(None, received.append)

        for i in range(5):
            bus.publish(EventType.SIGNAL_GENERATED, Payload(i))

        assert [e.payload.value for e in received] == [0, 1, 2, 3, 4]

    def test_failing_handler_is_isolated(self) -> None:
        bus = EventBus()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(EventType.WHALE_INTENT, broken)
        bus.subscribe(EventType.WHALE_INTENT, received.append)

        event = bus.publish(EventType.WHALE_INTENT, Payload(7))

        assert received == [event]
        assert bus.stats.published == 1
        assert bus.stats.delivered == 1
        assert bus.stats.handler_errors == 1

    def test_state_invariant_errors_propagate(self) -> None:
        bus = EventBus()

        def reentrant(event: Event) -> None:
            raise StateInvariantError("nested transition")

        bus.subscribe(EventType.SYSTEM_STATE_CHANGE, reentrant)

        with pytest.raises(StateInvariantError):
            bus.publish(EventType.SYSTEM_STATE_CHANGE, Payload(0))

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(EventType.TRADE_DECISION, received.append)

        assert bus.unsubscribe(EventType.TRADE_DECISION, received.append) is True
        assert bus.unsubscribe(EventType.TRADE_DECISION, received.append) is False

        bus.publish(EventType.TRADE_DECISION, Payload(1))
        assert received == []


class TestEvent:
    def test_to_dict_uses_payload_serializer(self) -> None:
        event = Event(event_type=EventType.WHALE_DUMP, payload=Payload(3))
        data = event.to_dict()

        assert data["event_type"] == "whale_dump"
        assert data["payload"] == {"value": 3}
        assert data["event_id"] == event.event_id
        assert data["timestamp"] == event.timestamp.isoformat()

    def test_plain_payload_passes_through(self) -> None:
        event = Event(event_type=EventType.LIQUIDITY_ANALYSIS, payload={"score": 1.5})
        assert event.to_dict()["payload"] == {"score": 1.5}

    def test_events_have_unique_ids(self) -> None:
        first = Event(event_type=EventType.WHALE_DUMP, payload=None)
        second = Event(event_type=EventType.WHALE_DUMP, payload=None)
        assert first.event_id != second.event_id
