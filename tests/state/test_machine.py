"""Tests for the whale gating state machine."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from predatory_signal_engine.detector.models import IntentType
from predatory_signal_engine.errors import StateInvariantError
from predatory_signal_engine.events import Event, EventBus, EventType
from predatory_signal_engine.state.machine import (
    InvalidTransitionError,
    StateMachineConfig,
    WhaleStateMachine,
)
from predatory_signal_engine.state.models import SystemState

from factories import FakeClock, make_intent


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def machine(clock: FakeClock, bus: EventBus) -> WhaleStateMachine:
    return WhaleStateMachine(StateMachineConfig(), event_bus=bus, clock=clock)


def start_hunt(machine: WhaleStateMachine, clock: FakeClock, tx_hash: str = "0xdump1") -> None:
    machine.record_intent(make_intent(tx_hash=tx_hash, timestamp=clock.now))
    assert machine.state == SystemState.HUNTING


class TestHuntTrigger:
    """PATIENT -> HUNTING only on a qualifying exchange deposit."""

    def test_starts_patient(self, machine: WhaleStateMachine) -> None:
        snapshot = machine.snapshot()
        assert snapshot.state == SystemState.PATIENT
        assert snapshot.allow_trading is False
        assert snapshot.hunt_time_remaining == timedelta(0)

    def test_qualifying_deposit_starts_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        state = machine.record_intent(make_intent(timestamp=clock.now))

        assert state == SystemState.HUNTING
        snapshot = machine.snapshot()
        assert snapshot.allow_trading is True
        assert snapshot.hunt_started_at == clock.now
        assert snapshot.hunt_expires_at == clock.now + timedelta(hours=12)
        assert snapshot.valid_dump_count == 1
        assert machine.history[-1].cause == "whale dump 5000000 to BINANCE"

    def test_trigger_threshold_is_inclusive(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        intent = make_intent(token_amount=Decimal("3000000"), timestamp=clock.now)
        assert machine.record_intent(intent) == SystemState.HUNTING

    def test_small_deposit_is_ignored(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        intent = make_intent(token_amount=Decimal("2999999.99"), timestamp=clock.now)
        assert machine.record_intent(intent) == SystemState.PATIENT
        assert machine.dumps == ()

    @pytest.mark.parametrize("intent_type", [IntentType.LARGE_TRANSFER, IntentType.DEX_SWAP])
    def test_other_intents_never_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock, intent_type: IntentType
    ) -> None:
        intent = make_intent(intent_type=intent_type, token_amount=Decimal("50000000"))
        assert machine.record_intent(intent) == SystemState.PATIENT

    def test_stale_dump_does_not_hunt(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        intent = make_intent(timestamp=clock.now - timedelta(hours=7))
        assert machine.record_intent(intent) == SystemState.PATIENT
        assert machine.dumps == ()

    def test_duplicate_hash_is_recorded_once(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        machine.record_intent(make_intent(timestamp=clock.now))
        machine.record_intent(make_intent(timestamp=clock.now))
        assert len(machine.dumps) == 1
        assert machine.stats.whale_dumps == 1

    def test_late_stale_dump_after_fresh_one_does_not_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        machine.record_intent(make_intent(tx_hash="0xrecent", timestamp=clock.now - timedelta(hours=1)))
        machine.enter_defensive("venue halt")
        machine.resolve_defensive()

        late = make_intent(tx_hash="0xbacklog", timestamp=clock.now - timedelta(hours=7))

        assert machine.record_intent(late) == SystemState.PATIENT
        assert [d.tx_hash for d in machine.dumps] == ["0xrecent"]
        assert machine.stats.stale_dumps == 1

    def test_dump_uses_transaction_time(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        intent = replace(
            make_intent(timestamp=clock.now),
            transaction_time=clock.now - timedelta(hours=7),
        )

        assert machine.record_intent(intent) == SystemState.PATIENT
        assert machine.dumps == ()

    def test_future_transaction_time_is_clamped(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        intent = replace(make_intent(timestamp=clock.now), transaction_time=clock.now + timedelta(hours=1))
        machine.record_intent(intent)
        assert machine.dumps[0].timestamp == clock.now


class TestHuntExpiry:
    def test_hunt_expires_on_tick(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        start_hunt(machine, clock)

        clock.advance(hours=11, minutes=59)
        assert machine.tick() == SystemState.HUNTING

        clock.advance(minutes=1)
        assert machine.tick() == SystemState.PATIENT
        assert machine.history[-1].cause == "hunt expired"
        assert machine.stats.hunts_expired == 1
        assert machine.snapshot().hunt_expires_at is None

    def test_dumps_expire_from_validity_window(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        start_hunt(machine, clock)
        clock.advance(hours=6, seconds=1)
        machine.tick()
        assert machine.snapshot().valid_dump_count == 0
        assert machine.dumps == ()

    def test_out_of_order_dumps_are_pruned(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        machine.enter_defensive("maintenance")
        machine.record_intent(make_intent(tx_hash="0xnewer", timestamp=clock.now - timedelta(hours=1)))
        machine.record_intent(make_intent(tx_hash="0xolder", timestamp=clock.now - timedelta(hours=5)))

        clock.advance(hours=2)
        machine.tick()

        assert [d.tx_hash for d in machine.dumps] == ["0xnewer"]
        assert machine.snapshot().valid_dump_count == 1

    def test_consumed_dump_does_not_restart_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        config = StateMachineConfig(hunt_duration=timedelta(hours=1))
        machine = WhaleStateMachine(config, clock=clock)
        start_hunt(machine, clock)

        clock.advance(hours=1)
        assert machine.tick() == SystemState.PATIENT
        clock.advance(minutes=1)
        assert machine.tick() == SystemState.PATIENT

    def test_new_dump_after_expiry_starts_new_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        start_hunt(machine, clock)
        clock.advance(hours=13)
        machine.tick()

        start_hunt(machine, clock, tx_hash="0xdump2")
        assert machine.stats.hunts_triggered == 2


class TestRetriggerPolicy:
    def test_ignore_keeps_window(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        start_hunt(machine, clock)
        expires = machine.snapshot().hunt_expires_at

        clock.advance(hours=2)
        machine.record_intent(make_intent(tx_hash="0xdump2", timestamp=clock.now))

        assert machine.snapshot().hunt_expires_at == expires
        assert len(machine.history) == 1

    def test_extend_restarts_window(self, clock: FakeClock) -> None:
        machine = WhaleStateMachine(StateMachineConfig(retrigger_policy="extend"), clock=clock)
        start_hunt(machine, clock)

        clock.advance(hours=2)
        machine.record_intent(make_intent(tx_hash="0xdump2", timestamp=clock.now))

        snapshot = machine.snapshot()
        assert snapshot.hunt_started_at == clock.now
        assert snapshot.hunt_expires_at == clock.now + timedelta(hours=12)
        last = machine.history[-1]
        assert (last.from_state, last.to_state, last.cause) == (
            SystemState.HUNTING,
            SystemState.HUNTING,
            "hunt extended",
        )
        assert machine.stats.hunts_extended == 1

    def test_dump_seen_during_hunt_does_not_retrigger_later(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        config = StateMachineConfig(hunt_duration=timedelta(hours=1))
        machine = WhaleStateMachine(config, clock=clock)
        start_hunt(machine, clock)
        clock.advance(minutes=30)
        machine.record_intent(make_intent(tx_hash="0xdump2", timestamp=clock.now))

        clock.advance(minutes=31)

        assert machine.tick() == SystemState.PATIENT


class TestDefensive:
    def test_enter_from_hunting_clears_hunt(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        start_hunt(machine, clock)

        machine.enter_defensive("exchange outage")

        snapshot = machine.snapshot()
        assert snapshot.state == SystemState.DEFENSIVE
        assert snapshot.allow_trading is False
        assert snapshot.hunt_expires_at is None
        assert snapshot.defensive_reason == "exchange outage"

    def test_never_exits_on_its_own(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        machine.enter_defensive("manual")
        clock.advance(days=3)
        machine.tick()
        machine.record_intent(make_intent(tx_hash="0xlate", timestamp=clock.now))

        assert machine.state == SystemState.DEFENSIVE

    def test_resolve_returns_to_patient(self, machine: WhaleStateMachine) -> None:
        machine.enter_defensive("manual")
        assert machine.resolve_defensive() == SystemState.PATIENT
        assert machine.snapshot().defensive_reason is None

    def test_reentering_only_updates_reason(self, machine: WhaleStateMachine) -> None:
        machine.enter_defensive("first")
        machine.enter_defensive("second")
        assert machine.snapshot().defensive_reason == "second"
        assert machine.stats.defensive_entries == 1

    def test_resolve_outside_defensive_raises(self, machine: WhaleStateMachine) -> None:
        with pytest.raises(InvalidTransitionError):
            machine.resolve_defensive()


class TestStrike:
    def test_strike_round_trip(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        start_hunt(machine, clock)

        assert machine.begin_strike() == SystemState.STRIKE
        assert machine.snapshot().allow_trading is False
        assert machine.end_strike() == SystemState.HUNTING

    def test_strike_after_window_returns_to_patient(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        start_hunt(machine, clock)
        machine.begin_strike()

        clock.advance(hours=13)
        machine.tick()
        assert machine.state == SystemState.STRIKE

        assert machine.end_strike() == SystemState.PATIENT
        assert machine.history[-1].cause == "execution finished; hunt window closed"

    def test_strike_requires_hunting(self, machine: WhaleStateMachine) -> None:
        with pytest.raises(InvalidTransitionError):
            machine.begin_strike()
        with pytest.raises(InvalidTransitionError):
            machine.end_strike()


class TestEventsAndHistory:
    def test_events_published_in_order(
        self, machine: WhaleStateMachine, clock: FakeClock, bus: EventBus
    ) -> None:
        events: list[Event] = []
        bus.subscribe(None, events.append)

        start_hunt(machine, clock)

        assert [e.event_type for e in events] == [
            EventType.WHALE_DUMP,
            EventType.SYSTEM_STATE_CHANGE,
        ]
        transition = events[1].payload
        assert transition.to_dict()["from"] == "PATIENT"
        assert transition.to_dict()["to"] == "HUNTING"

    def test_events_published_after_lock_release(
        self, machine: WhaleStateMachine, clock: FakeClock, bus: EventBus
    ) -> None:
        observed: list[bool] = []

        def handler(event: Event) -> None:
            observed.append(machine._lock.locked())
            machine.snapshot()

        bus.subscribe(EventType.SYSTEM_STATE_CHANGE, handler)
        start_hunt(machine, clock)

        assert observed == [False]

    def test_history_is_bounded(self, clock: FakeClock) -> None:
        machine = WhaleStateMachine(StateMachineConfig(history_size=3), clock=clock)
        for i in range(3):
            machine.enter_defensive(f"round {i}")
            machine.resolve_defensive()

        assert len(machine.history) == 3
        assert machine.stats.transitions == 6


class TestSingleWriter:
    def test_nested_transition_raises(self, machine: WhaleStateMachine, clock: FakeClock) -> None:
        events: list[Event] = []
        machine._event_bus.subscribe(None, events.append)  # type: ignore[union-attr]

        def reenter(now: object) -> None:
            machine.tick()

        machine._prune_dumps = reenter  # type: ignore[method-assign]

        with pytest.raises(StateInvariantError):
            machine.record_intent(make_intent(timestamp=clock.now))

        assert machine._writer is None
        assert events == []

    def test_mutation_outside_transition_raises(
        self, machine: WhaleStateMachine, clock: FakeClock
    ) -> None:
        with pytest.raises(StateInvariantError):
            machine._set_state(SystemState.HUNTING, "rogue", clock.now, [])
        assert machine.state == SystemState.PATIENT

    def test_concurrent_writers_keep_history_consistent(self, clock: FakeClock) -> None:
        machine = WhaleStateMachine(
            StateMachineConfig(retrigger_policy="extend", history_size=10_000), clock=clock
        )
        errors: list[Exception] = []

        def dumps() -> None:
            try:
                for i in range(200):
                    machine.record_intent(make_intent(tx_hash=f"0x{i}", timestamp=clock.now))
            except Exception as e:
                errors.append(e)

        def ticks() -> None:
            try:
                for _ in range(200):
                    machine.tick()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=dumps), threading.Thread(target=ticks)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        history = machine.history
        for prev, cur in zip(history, history[1:]):
            assert prev.to_state == cur.from_state
        assert machine.state == SystemState.HUNTING
