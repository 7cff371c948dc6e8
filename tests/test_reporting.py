"""Tests for the Redis stream event publisher."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from predatory_signal_engine.events import Event, EventBus, EventType
from predatory_signal_engine.reporting import RedisEventPublisher
from predatory_signal_engine.state.models import SystemState


@dataclass
class DumpPayload:
    amount: Decimal
    state: SystemState
    at: datetime

    def to_dict(self) -> dict[str, object]:
        return {"amount": self.amount, "state": self.state, "at": self.at}


def make_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.xadd = AsyncMock(return_value=b"1717243200000-0")
    return redis


async def drain(publisher: RedisEventPublisher) -> None:
    await asyncio.wait_for(publisher._queue.join(), timeout=1.0)


class TestPublish:
    @pytest.mark.asyncio
    async def test_writes_json_to_typed_stream(self) -> None:
        redis = make_redis()
        publisher = RedisEventPublisher(redis, event_bus=EventBus(), prefix="psx", maxlen=500)
        payload = DumpPayload(
            amount=Decimal("5000000"),
            state=SystemState.HUNTING,
            at=datetime(2024, 6, 1, tzinfo=UTC),
        )
        event = Event(event_type=EventType.WHALE_DUMP, payload=payload)

        entry_id = await publisher.publish(event)

        assert entry_id == "1717243200000-0"
        key, fields = redis.xadd.await_args.args
        assert key == "psx:whale_dump"
        assert redis.xadd.await_args.kwargs == {"maxlen": 500, "approximate": True}
        data = json.loads(fields["data"])
        assert data["event_type"] == "whale_dump"
        assert data["event_id"] == event.event_id
        assert data["payload"] == {
            "amount": "5000000",
            "state": "HUNTING",
            "at": "2024-06-01T00:00:00+00:00",
        }
        assert publisher.stats.written == 1

    def test_stream_key(self) -> None:
        publisher = RedisEventPublisher(make_redis(), event_bus=EventBus())
        event = Event(event_type=EventType.TRADE_DECISION, payload=None)
        assert publisher.stream_key(event) == "predatory:trade_decision"


class TestMirroring:
    @pytest.mark.asyncio
    async def test_bus_events_are_mirrored(self) -> None:
        redis = make_redis()
        bus = EventBus()
        publisher = RedisEventPublisher(redis, event_bus=bus)

        await publisher.start()
        assert publisher.is_running
        bus.publish(EventType.SIGNAL_GENERATED, {"kind": "CASCADE"})
        bus.publish(EventType.TRADE_DECISION, {"allow": True})
        await drain(publisher)
        await publisher.stop()

        keys = [call.args[0] for call in redis.xadd.await_args_list]
        assert keys == ["predatory:signal_generated", "predatory:trade_decision"]
        assert publisher.stats.queued == 2
        assert publisher.stats.written == 2
        assert publisher.is_running is False

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self) -> None:
        redis = make_redis()
        bus = EventBus()
        publisher = RedisEventPublisher(redis, event_bus=bus)

        await publisher.start()
        await publisher.stop()
        bus.publish(EventType.WHALE_DUMP, {"amount": 1})

        assert publisher.stats.queued == 0

    @pytest.mark.asyncio
    async def test_double_start_raises(self) -> None:
        publisher = RedisEventPublisher(make_redis(), event_bus=EventBus())
        await publisher.start()
        try:
            with pytest.raises(RuntimeError):
                await publisher.start()
        finally:
            await publisher.stop()

    @pytest.mark.asyncio
    async def test_write_errors_do_not_stop_draining(self) -> None:
        redis = make_redis()
        redis.xadd.side_effect = [RedisConnectionError("down"), b"2-0"]
        bus = EventBus()
        publisher = RedisEventPublisher(redis, event_bus=bus)

        await publisher.start()
        bus.publish(EventType.WHALE_DUMP, {"amount": 1})
        bus.publish(EventType.WHALE_DUMP, {"amount": 2})
        await drain(publisher)
        await publisher.stop()

        assert publisher.stats.write_errors == 1
        assert publisher.stats.written == 1

    @pytest.mark.asyncio
    async def test_unserializable_payload_is_counted(self) -> None:
        redis = make_redis()
        bus = EventBus()
        publisher = RedisEventPublisher(redis, event_bus=bus)

        await publisher.start()
        bus.publish(EventType.WHALE_DUMP, {"blob": object()})
        await drain(publisher)
        await publisher.stop()

        assert publisher.stats.write_errors == 1
        redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self) -> None:
        bus = EventBus()
        publisher = RedisEventPublisher(make_redis(), event_bus=bus, queue_size=1)
        bus.subscribe(None, publisher._enqueue)

        bus.publish(EventType.WHALE_DUMP, {"amount": 1})
        bus.publish(EventType.WHALE_DUMP, {"amount": 2})

        assert publisher.stats.queued == 1
        assert publisher.stats.dropped == 1
