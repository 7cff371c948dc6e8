"""Shared test factories."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from predatory_signal_engine.detector.models import (
    IntentSource,
    IntentType,
    ThreatLevel,
    WhaleIntentEvent,
)
from predatory_signal_engine.ingestor.models import BookLevel, OrderBookSnapshot, TradeTick

WHALE = "0x1111111111111111111111111111111111111111"
EXCHANGE = "0x2222222222222222222222222222222222222222"
OTHER = "0x3333333333333333333333333333333333333333"

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def make_snapshot(
    bids: list[tuple[float, float]],
    asks: list[tuple[float, float]],
    *,
    timestamp: datetime | None = None,
) -> OrderBookSnapshot:
    return OrderBookSnapshot(
        bids=tuple(BookLevel(price=p, quantity=q) for p, q in bids),
        asks=tuple(BookLevel(price=p, quantity=q) for p, q in asks),
        timestamp=timestamp or BASE_TIME,
    )


def make_book(
    mid: float,
    *,
    bid_qty: float,
    ask_qty: float,
    levels: int = 5,
    half_spread: float = 0.01,
    tick: float = 0.01,
    timestamp: datetime | None = None,
) -> OrderBookSnapshot:
    """Symmetric ladder of ``levels`` levels per side around ``mid``."""
    bids = [(round(mid - half_spread - i * tick, 6), bid_qty) for i in range(levels)]
    asks = [(round(mid + half_spread + i * tick, 6), ask_qty) for i in range(levels)]
    return make_snapshot(bids, asks, timestamp=timestamp)


def make_trade(
    *,
    price: float = 1.0,
    quantity: float = 123.45,
    at: datetime | None = None,
    trade_id: str = "t1",
) -> TradeTick:
    return TradeTick(
        price=price,
        quantity=quantity,
        timestamp=at or datetime.now(UTC),
        trade_id=trade_id,
    )


def make_intent(
    *,
    tx_hash: str = "0xdump1",
    token_amount: Decimal = Decimal("5000000"),
    intent_type: IntentType = IntentType.EXCHANGE_DEPOSIT,
    timestamp: datetime | None = None,
) -> WhaleIntentEvent:
    return WhaleIntentEvent(
        whale_address=WHALE,
        tx_hash=tx_hash,
        intent_type=intent_type,
        estimated_value=token_amount,
        token_amount=token_amount,
        target_exchange="BINANCE" if intent_type == IntentType.EXCHANGE_DEPOSIT else None,
        confidence=0.95,
        detection_latency_ms=12.0,
        threat_level=ThreatLevel.HIGH,
        source=IntentSource.TRANSFER,
        from_address=WHALE,
        to_address=EXCHANGE,
        timestamp=timestamp or BASE_TIME,
    )


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
