"""Tests for the engine orchestrator."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from predatory_signal_engine.config import MempoolSettings, Settings, WhaleSettings
from predatory_signal_engine.decision import DecisionReason
from predatory_signal_engine.detector.models import SignalKind
from predatory_signal_engine.engine import EngineState, PredatorySignalEngine
from predatory_signal_engine.events import Event, EventType
from predatory_signal_engine.ingestor.mempool_stream import FeedHealth, MempoolFeed
from predatory_signal_engine.ingestor.models import OrderBookSnapshot, TransactionEvent
from predatory_signal_engine.ingestor.transfers import TokenTransferPoller
from predatory_signal_engine.state.models import SystemState

from factories import BASE_TIME, EXCHANGE, WHALE, FakeClock, make_book, make_trade

CALM_PRICES = [100.0] * 10
CRASH_PRICES = [99.7, 99.4, 99.1, 98.8, 98.5, 98.2, 97.9, 97.6, 97.3, 97.0]


def make_settings(**overrides: object) -> Settings:
    whale = WhaleSettings(
        WHALE_WATCHLIST=WHALE,
        WHALE_EXCHANGE_ADDRESSES=f"{EXCHANGE}:BINANCE",
    )
    return Settings(whale=whale, **overrides)


def thin_book(seconds: float) -> OrderBookSnapshot:
    return make_book(
        100.0,
        bid_qty=20_000,
        ask_qty=20_000,
        half_spread=0.5,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
    )


def crash_book(mid: float, seconds: float) -> OrderBookSnapshot:
    return make_book(
        mid,
        bid_qty=80_000,
        ask_qty=280_000,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
    )


def crash_sequence() -> list[OrderBookSnapshot]:
    """Ten calm snapshots followed by a 3% slide under heavy ask pressure."""
    calm = [thin_book(i) for i in range(len(CALM_PRICES))]
    crash = [crash_book(mid, 10 + i) for i, mid in enumerate(CRASH_PRICES)]
    return calm + crash


def whale_dump(
    tx_hash: str = "0xdump", tokens: int = 5_000_000, age: timedelta = timedelta(0)
) -> TransactionEvent:
    return TransactionEvent(
        hash=tx_hash,
        from_address=WHALE,
        to_address=EXCHANGE,
        value=tokens * 10**18,
        token_decimals=18,
        timestamp=BASE_TIME - age,
    )


def warm_up(engine: PredatorySignalEngine, count: int = 30) -> None:
    for i in range(count):
        assert engine.process_snapshot(thin_book(i - count)) is None


@pytest.fixture
def engine(clock: FakeClock) -> PredatorySignalEngine:
    return PredatorySignalEngine(make_settings(), clock=clock)


class TestCrashScenario:
    """Scripted crash through the whole pipeline."""

    def test_cascade_fires_early_and_is_gated_by_whale_state(
        self, engine: PredatorySignalEngine
    ) -> None:
        decisions: list[Event] = []
        engine.event_bus.subscribe(EventType.TRADE_DECISION, decisions.append)
        warm_up(engine)
        snapshots = crash_sequence()

        kinds: list[SignalKind] = []
        for snapshot in snapshots[:12]:
            engine.process_snapshot(snapshot)
            assert engine.latest_signal is not None
            kinds.append(engine.latest_signal.kind)

        assert kinds[:10] == [SignalKind.NONE] * 10
        first_cascade = kinds.index(SignalKind.CASCADE)
        # 80% of the 3-point slide is reached at 97.6.
        assert CRASH_PRICES[first_cascade - 10] > 97.6
        assert decisions
        assert all(e.payload.reason == DecisionReason.SYSTEM_STATE for e in decisions)

        intent = engine.process_transaction(whale_dump())
        assert intent is not None
        assert engine.state_machine.state == SystemState.HUNTING

        approved = [engine.process_snapshot(s) for s in snapshots[12:]]
        assert all(d is not None and d.allow for d in approved)
        first = approved[0]
        assert first is not None
        assert first.signal.kind == SignalKind.CASCADE
        assert first.reason == DecisionReason.APPROVED
        assert first.liquidity is not None and first.liquidity.valid_for_signal
        assert 0.0 < first.sizing_factor <= 0.5
        assert engine.stats.decisions_approved == len(approved)

    def test_replay_is_deterministic(self, clock: FakeClock) -> None:
        def run() -> list[tuple[str, str | None]]:
            engine = PredatorySignalEngine(make_settings(), clock=FakeClock())
            warm_up(engine)
            out = []
            for i, snapshot in enumerate(crash_sequence()):
                if i == 12:
                    engine.process_transaction(whale_dump())
                decision = engine.process_snapshot(snapshot)
                out.append(
                    (engine.latest_signal.kind.value, decision.reason.value if decision else None)  # type: ignore[union-attr]
                )
            return out

        assert run() == run()


class TestInputHandling:
    def test_malformed_snapshot_is_absorbed(self, engine: PredatorySignalEngine) -> None:
        assert engine.process_snapshot({"bids": [["x", 1]], "asks": []}) is None
        assert engine.stats.invalid_snapshots == 1
        assert engine.stats.snapshots_processed == 0

    def test_raw_mapping_snapshot(self, engine: PredatorySignalEngine) -> None:
        engine.process_snapshot({"bids": [[99.0, 10]], "asks": [[101.0, 10]], "timestamp": 1_700_000_000})
        assert engine.stats.snapshots_processed == 1
        assert engine.price_history.values == (100.0,)

    def test_malformed_trade_and_transaction(self, engine: PredatorySignalEngine) -> None:
        engine.process_trade({"price": "bad", "quantity": 1})
        assert engine.process_transaction({"value": 1}) is None
        assert engine.process_pending_transaction({"from": WHALE}) is None
        assert engine.stats.invalid_trades == 1
        assert engine.stats.invalid_transactions == 2

    def test_pending_transaction_from_rpc_mapping(self, engine: PredatorySignalEngine) -> None:
        intent = engine.process_pending_transaction(
            {"hash": "0xabc", "from": WHALE, "to": EXCHANGE, "value": hex(1000 * 10**18)}
        )
        assert intent is not None
        assert engine.state_machine.state == SystemState.PATIENT
        assert engine.stats.intents_detected == 1

    def test_old_transaction_does_not_start_hunt(self, engine: PredatorySignalEngine) -> None:
        intent = engine.process_transaction(whale_dump(age=timedelta(hours=7)))

        assert intent is not None
        assert intent.transaction_time == BASE_TIME - timedelta(hours=7)
        assert engine.state_machine.state == SystemState.PATIENT
        assert engine.state_machine.stats.stale_dumps == 1

    def test_backlogged_transaction_after_fresh_one(self, engine: PredatorySignalEngine) -> None:
        engine.process_transaction(whale_dump("0xfresh", age=timedelta(hours=1)))
        engine.state_machine.enter_defensive("venue halt")
        engine.state_machine.resolve_defensive()

        engine.process_transaction(whale_dump("0xbacklog", age=timedelta(hours=7)))

        assert engine.state_machine.state == SystemState.PATIENT

    def test_trades_reach_wash_detector(self, engine: PredatorySignalEngine) -> None:
        engine.process_trade({"price": 1.0, "quantity": 5})
        assert engine.wash_detector.trade_count == 1

    def test_wash_veto_clears_once_tape_goes_quiet(
        self, engine: PredatorySignalEngine, clock: FakeClock
    ) -> None:
        for i in range(10):
            at = BASE_TIME + timedelta(milliseconds=10 * i)
            engine.process_trade(make_trade(price=1.0, quantity=1000.0, at=at, trade_id=f"w{i}"))

        clock.advance(seconds=31)
        engine.process_snapshot(thin_book(31))
        assert engine.latest_manipulation is not None
        assert engine.latest_manipulation.wash_trading is True

        clock.advance(seconds=301)
        engine.process_snapshot(thin_book(332))
        assert engine.latest_manipulation.wash_trading is False
        assert engine.wash_detector.trade_count == 0


class TestFeedHealth:
    def test_failed_feed_makes_state_unavailable(self, clock: FakeClock) -> None:
        feed = MagicMock(spec=MempoolFeed)
        feed.health = FeedHealth.FAILED
        engine = PredatorySignalEngine(make_settings(), mempool_feed=feed, clock=clock)
        warm_up(engine)
        engine.process_transaction(whale_dump())

        decision = None
        for snapshot in crash_sequence():
            decision = engine.process_snapshot(snapshot) or decision

        assert decision is not None
        assert decision.reason == DecisionReason.DATA_UNAVAILABLE
        assert engine.feed_health == FeedHealth.FAILED

    def test_failed_transfer_poller_makes_state_unavailable(self, clock: FakeClock) -> None:
        poller = MagicMock(spec=TokenTransferPoller)
        poller.health = FeedHealth.FAILED
        engine = PredatorySignalEngine(make_settings(), transfer_poller=poller, clock=clock)
        warm_up(engine)
        engine.process_transaction(whale_dump())

        decisions = [engine.process_snapshot(s) for s in crash_sequence()]

        assert engine.transfer_health == FeedHealth.FAILED
        assert engine.feed_health is None
        assert any(d is not None for d in decisions)
        assert all(d.reason == DecisionReason.DATA_UNAVAILABLE for d in decisions if d is not None)

    def test_stale_feed_still_decides(self, clock: FakeClock) -> None:
        feed = MagicMock(spec=MempoolFeed)
        feed.health = FeedHealth.STALE
        engine = PredatorySignalEngine(make_settings(), mempool_feed=feed, clock=clock)
        warm_up(engine)
        engine.process_transaction(whale_dump())

        decisions = [engine.process_snapshot(s) for s in crash_sequence()]

        assert any(d is not None and d.allow for d in decisions)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine: PredatorySignalEngine) -> None:
        async with engine:
            assert engine.state == EngineState.RUNNING
            assert engine.is_running
        assert engine.state == EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_double_start_raises(self, engine: PredatorySignalEngine) -> None:
        await engine.start()
        try:
            with pytest.raises(RuntimeError):
                await engine.start()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_restart_starts_cold_but_keeps_state(self, engine: PredatorySignalEngine) -> None:
        await engine.start()
        warm_up(engine, 5)
        engine.process_transaction(whale_dump())
        await engine.stop()

        await engine.start()

        assert engine.liquidity_scorer.sample_count == 0
        assert len(engine.price_history) == 0
        assert engine.latest_signal is None
        assert engine.state_machine.state == SystemState.HUNTING
        await engine.stop()

    @pytest.mark.asyncio
    async def test_restart_with_reset_state(self, engine: PredatorySignalEngine) -> None:
        engine.process_transaction(whale_dump())

        await engine.start(reset_state=True)

        assert engine.state_machine.state == SystemState.PATIENT
        await engine.stop()

    @pytest.mark.asyncio
    async def test_enabled_feed_without_urls_refuses_to_start(self, clock: FakeClock) -> None:
        settings = make_settings(mempool=MempoolSettings(MEMPOOL_ENABLED=True))
        engine = PredatorySignalEngine(settings, clock=clock)

        with pytest.raises(ValueError):
            await engine.start()
        assert engine.state == EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_background_services_are_started_and_stopped(self, clock: FakeClock) -> None:
        feed = MagicMock(spec=MempoolFeed)
        feed.health = FeedHealth.HEALTHY
        redis = AsyncMock()
        engine = PredatorySignalEngine(make_settings(), mempool_feed=feed, redis=redis, clock=clock)

        await engine.start()
        await engine.stop()

        feed.start.assert_awaited_once()
        feed.stop.assert_awaited_once()
        redis.aclose.assert_not_called()
