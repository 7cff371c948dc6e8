"""Whale intent detection for watched-address transactions.

This module provides the WhaleIntentDetector that classifies pending
(mempool) transactions and confirmed token transfers involving a watched
whale address into intent events:

- EXCHANGE_DEPOSIT: sent to a known exchange deposit address
- DEX_SWAP: a pending contract call carrying payload
- LARGE_TRANSFER: any other movement above the large-transfer threshold

Transactions that touch no watched address are dropped before any value
or payload parsing happens.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from predatory_signal_engine.detector.models import (
    IntentSource,
    IntentType,
    ThreatLevel,
    WhaleIntentEvent,
)
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.models import PendingTransactionEvent, TransactionEvent

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MIN_TRANSFER_USD = Decimal("100000")
DEFAULT_LARGE_TRANSFER_USD = Decimal("1000000")
DEFAULT_NATIVE_PRICE_USD = Decimal("3500")
DEFAULT_TOKEN_PRICE_USD = Decimal("1")
DEFAULT_DEDUP_SIZE = 10_000
DEDUP_TTL_SECONDS = 3600
NATIVE_DECIMALS = 18

DEPOSIT_CONFIDENCE = 0.95
LARGE_TRANSFER_CONFIDENCE = 0.8
DEX_SWAP_CONFIDENCE = 0.7

CRITICAL_DEPOSIT_USD = Decimal("10000000")
HIGH_DEPOSIT_USD = Decimal("1000000")
MEDIUM_TRANSFER_USD = Decimal("5000000")
HIGH_SWAP_USD = Decimal("5000000")
MEDIUM_SWAP_USD = Decimal("1000000")

FAST_DETECTION_MS = 500.0
LATENCY_WINDOW = 10_000


def threat_level_for(intent_type: IntentType, estimated_value: Decimal) -> ThreatLevel:
    """Map an intent and its USD value to a threat level."""
    if intent_type == IntentType.EXCHANGE_DEPOSIT:
        if estimated_value > CRITICAL_DEPOSIT_USD:
            return ThreatLevel.CRITICAL
        if estimated_value > HIGH_DEPOSIT_USD:
            return ThreatLevel.HIGH
        return ThreatLevel.MEDIUM
    if intent_type == IntentType.DEX_SWAP:
        if estimated_value > HIGH_SWAP_USD:
            return ThreatLevel.HIGH
        if estimated_value > MEDIUM_SWAP_USD:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW
    if estimated_value > MEDIUM_TRANSFER_USD:
        return ThreatLevel.MEDIUM
    return ThreatLevel.LOW


@dataclass(frozen=True)
class WhaleConfig:
    watchlist: frozenset[str] = frozenset()
    exchange_addresses: dict[str, str] = field(default_factory=dict)
    min_transfer_usd: Decimal = DEFAULT_MIN_TRANSFER_USD
    large_transfer_usd: Decimal = DEFAULT_LARGE_TRANSFER_USD
    native_price_usd: Decimal = DEFAULT_NATIVE_PRICE_USD
    token_price_usd: Decimal = DEFAULT_TOKEN_PRICE_USD
    dedup_size: int = DEFAULT_DEDUP_SIZE
    dedup_ttl_seconds: int = DEDUP_TTL_SECONDS

    @classmethod
    def create(
        cls,
        *,
        watchlist: Iterable[str],
        exchange_addresses: dict[str, str],
        **kwargs: object,
    ) -> WhaleConfig:
        """Build a config with lower-cased addresses."""
        return cls(
            watchlist=frozenset(a.lower() for a in watchlist),
            exchange_addresses={a.lower(): name for a, name in exchange_addresses.items()},
            **kwargs,  # type: ignore[arg-type]
        )


class ProcessedTransactionCache:
    """Bounded, age-evicted set of processed transaction hashes."""

    def __init__(
        self,
        max_size: int = DEFAULT_DEDUP_SIZE,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, tx_hash: object) -> bool:
        self._evict(self._clock())
        return tx_hash in self._seen

    def add(self, tx_hash: str) -> bool:
        """Record a hash. Returns False if it was already present."""
        now = self._clock()
        self._evict(now)
        if tx_hash in self._seen:
            return False
        self._seen[tx_hash] = now
        while len(self._seen) > self._max_size:
            self._seen.popitem(last=False)
        return True

    def clear(self) -> None:
        self._seen.clear()

    def _evict(self, now: float) -> None:
        cutoff = now - self._ttl
        while self._seen:
            oldest_hash, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[oldest_hash]


@dataclass
class LatencyStats:
    """Rolling detection latency statistics."""

    count: int = 0
    fast_count: int = 0
    min_ms: float | None = None
    max_ms: float | None = None
    samples: deque[float] = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    @property
    def average_ms(self) -> float:
        return sum(self.samples) / len(self.samples) if self.samples else 0.0

    @property
    def fast_ratio(self) -> float:
        return self.fast_count / self.count if self.count else 0.0

    def record(self, latency_ms: float) -> None:
        self.count += 1
        if latency_ms < FAST_DETECTION_MS:
            self.fast_count += 1
        self.min_ms = latency_ms if self.min_ms is None else min(self.min_ms, latency_ms)
        self.max_ms = latency_ms if self.max_ms is None else max(self.max_ms, latency_ms)
        self.samples.append(latency_ms)


@dataclass
class DetectorStats:
    seen: int = 0
    filtered: int = 0
    duplicates: int = 0
    below_minimum: int = 0
    malformed: int = 0
    intents: int = 0


class WhaleIntentDetector:
    """Classifies watched-address transactions into whale intent events.

    Example:
        ```python
        detector = WhaleIntentDetector(
            WhaleConfig.create(watchlist=[...], exchange_addresses={...})
        )
        intent = detector.analyze_pending(tx)
        if intent is not None:
            state_machine.record_intent(intent)
        ```
    """

    def __init__(
        self,
        config: WhaleConfig,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._event_bus = event_bus
        self._clock = clock
        self._processed = ProcessedTransactionCache(config.dedup_size, config.dedup_ttl_seconds)
        self._latency = LatencyStats()
        self._stats = DetectorStats()

    @property
    def config(self) -> WhaleConfig:
        return self._config

    @property
    def latency(self) -> LatencyStats:
        return self._latency

    @property
    def stats(self) -> DetectorStats:
        return self._stats

    def is_whale_transaction(self, from_address: str | None, to_address: str | None) -> bool:
        watchlist = self._config.watchlist
        return (from_address is not None and from_address.lower() in watchlist) or (
            to_address is not None and to_address.lower() in watchlist
        )

    def analyze_pending(self, tx: PendingTransactionEvent) -> WhaleIntentEvent | None:
        """Classify a pending transaction. Returns None if it is not whale activity."""
        self._stats.seen += 1
        if not self.is_whale_transaction(tx.from_address, tx.to_address):
            self._stats.filtered += 1
            return None
        if not self._processed.add(tx.hash):
            self._stats.duplicates += 1
            return None

        token_amount = _scale(tx.value, NATIVE_DECIMALS)
        return self._classify(
            tx_hash=tx.hash,
            from_address=tx.from_address,
            to_address=tx.to_address,
            token_amount=token_amount,
            estimated_value=token_amount * self._config.native_price_usd,
            has_payload=tx.has_payload,
            tx_time=tx.timestamp,
            source=IntentSource.MEMPOOL,
        )

    def analyze_transfer(self, tx: TransactionEvent) -> WhaleIntentEvent | None:
        """Classify a confirmed token transfer. Returns None if it is not whale activity."""
        self._stats.seen += 1
        if not self.is_whale_transaction(tx.from_address, tx.to_address):
            self._stats.filtered += 1
            return None
        if not self._processed.add(tx.hash):
            self._stats.duplicates += 1
            return None

        token_amount = _scale(tx.value, tx.token_decimals)
        return self._classify(
            tx_hash=tx.hash,
            from_address=tx.from_address,
            to_address=tx.to_address,
            token_amount=token_amount,
            estimated_value=token_amount * self._config.token_price_usd,
            has_payload=False,
            tx_time=tx.timestamp,
            source=IntentSource.TRANSFER,
        )

    def _classify(
        self,
        *,
        tx_hash: str,
        from_address: str | None,
        to_address: str | None,
        token_amount: Decimal,
        estimated_value: Decimal,
        has_payload: bool,
        tx_time: datetime,
        source: IntentSource,
    ) -> WhaleIntentEvent | None:
        cfg = self._config
        if estimated_value < cfg.min_transfer_usd:
            self._stats.below_minimum += 1
            return None

        from_address = from_address.lower() if from_address else None
        to_address = to_address.lower() if to_address else None
        exchange = cfg.exchange_addresses.get(to_address or "")
        if exchange is not None:
            intent_type = IntentType.EXCHANGE_DEPOSIT
            confidence = DEPOSIT_CONFIDENCE
        elif has_payload:
            intent_type = IntentType.DEX_SWAP
            confidence = DEX_SWAP_CONFIDENCE
        elif estimated_value > cfg.large_transfer_usd:
            intent_type = IntentType.LARGE_TRANSFER
            confidence = LARGE_TRANSFER_CONFIDENCE
        else:
            return None

        now = self._clock()
        latency_ms = max(0.0, (now - tx_time).total_seconds() * 1000.0)
        self._latency.record(latency_ms)

        whale = from_address if from_address in cfg.watchlist else to_address
        intent = WhaleIntentEvent(
            whale_address=whale or "",
            tx_hash=tx_hash,
            intent_type=intent_type,
            estimated_value=estimated_value,
            token_amount=token_amount,
            target_exchange=exchange,
            confidence=confidence,
            detection_latency_ms=latency_ms,
            threat_level=threat_level_for(intent_type, estimated_value),
            source=source,
            from_address=from_address,
            to_address=to_address,
            timestamp=now,
            transaction_time=tx_time,
        )
        self._stats.intents += 1
        logger.info(
            "Whale intent %s: whale=%s value=$%s threat=%s latency=%.0fms",
            intent_type.value,
            intent.whale_address[:10] + "...",
            f"{estimated_value:,.0f}",
            intent.threat_level.value,
            latency_ms,
        )
        if self._event_bus is not None:
            self._event_bus.publish(EventType.WHALE_INTENT, intent)
        return intent


def _scale(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)
