"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum


class SignalKind(str, Enum):
    """Market regime candidates produced by the microstructure classifier."""

    CASCADE = "CASCADE"
    ABSORPTION = "ABSORPTION"
    PRESSURE_SPIKE = "PRESSURE_SPIKE"
    NONE = "NONE"


class LiquidityRegime(str, Enum):
    CRITICAL = "CRITICAL"
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    ULTRA_HIGH = "ULTRA_HIGH"


class IntentType(str, Enum):
    EXCHANGE_DEPOSIT = "EXCHANGE_DEPOSIT"
    LARGE_TRANSFER = "LARGE_TRANSFER"
    DEX_SWAP = "DEX_SWAP"


class ThreatLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IntentSource(str, Enum):
    """Which feed produced a whale intent."""

    MEMPOOL = "MEMPOOL"
    TRANSFER = "TRANSFER"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class MarketSignal:
    """Candidate regime signal for one order-book snapshot.

    Attributes:
        kind: Regime that fired, or NONE.
        pressure_ratio: Ask volume divided by bid volume over the top levels.
        bid_volume: Summed bid quantity over the top levels.
        ask_volume: Summed ask quantity over the top levels.
        momentum: Percent price change over the rolling price buffer.
        price: Reference price (mid) at classification time.
        confidence: Strength of the fired rule (0.0 to 1.0, 0.0 for NONE).
        factors: Individual factor scores contributing to confidence.
        timestamp: Snapshot timestamp the signal was derived from.
    """

    kind: SignalKind
    pressure_ratio: float
    bid_volume: float
    ask_volume: float
    momentum: float
    price: float
    confidence: float = 0.0
    factors: dict[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_actionable(self) -> bool:
        return self.kind != SignalKind.NONE

    @property
    def is_high_confidence(self) -> bool:
        """Return True if confidence exceeds 0.7."""
        return self.confidence >= 0.7

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "pressure_ratio": self.pressure_ratio,
            "bid_volume": self.bid_volume,
            "ask_volume": self.ask_volume,
            "momentum": self.momentum,
            "price": self.price,
            "confidence": self.confidence,
            "factors": dict(self.factors),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class LiquidityScore:
    """Dynamic liquidity score with its historical percentile rank."""

    value: float
    percentile: float
    regime: LiquidityRegime
    valid_for_signal: bool
    components: dict[str, float] = field(default_factory=dict)
    sample_count: int = 0
    status: str = "ok"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "value": self.value,
            "percentile": self.percentile,
            "regime": self.regime.value,
            "valid_for_signal": self.valid_for_signal,
            "components": dict(self.components),
            "sample_count": self.sample_count,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class WhaleIntentEvent:
    """Classified intent of a watched-address transaction.

    Attributes:
        whale_address: The watched address involved (sender or recipient).
        tx_hash: Transaction hash.
        intent_type: Classified intent.
        estimated_value: Estimated USD value.
        token_amount: Transferred amount in whole token (or native coin) units.
        target_exchange: Exchange name for deposits, else None.
        confidence: Classification confidence (0.0 to 1.0).
        detection_latency_ms: Milliseconds between the transaction and detection.
        threat_level: Deterministic function of intent type and estimated value.
        source: Feed that produced the transaction.
        from_address: Transaction sender.
        to_address: Transaction recipient.
        timestamp: When the intent was detected.
        transaction_time: When the transaction was seen on chain or in the
            mempool. None when the source did not report it.
    """

    whale_address: str
    tx_hash: str
    intent_type: IntentType
    estimated_value: Decimal
    token_amount: Decimal
    target_exchange: str | None
    confidence: float
    detection_latency_ms: float
    threat_level: ThreatLevel
    source: IntentSource
    from_address: str | None = None
    to_address: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    transaction_time: datetime | None = None

    @property
    def is_exchange_deposit(self) -> bool:
        return self.intent_type == IntentType.EXCHANGE_DEPOSIT

    @property
    def occurred_at(self) -> datetime:
        """Transaction time when known, else detection time."""
        return self.transaction_time or self.timestamp

    def to_dict(self) -> dict[str, object]:
        return {
            "whale_address": self.whale_address,
            "tx_hash": self.tx_hash,
            "intent_type": self.intent_type.value,
            "estimated_value": str(self.estimated_value),
            "token_amount": str(self.token_amount),
            "target_exchange": self.target_exchange,
            "confidence": self.confidence,
            "detection_latency_ms": self.detection_latency_ms,
            "threat_level": self.threat_level.value,
            "source": self.source.value,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "timestamp": self.timestamp.isoformat(),
            "transaction_time": (
                self.transaction_time.isoformat() if self.transaction_time else None
            ),
        }


@dataclass(frozen=True)
class SpoofState:
    """Point-in-time spoof-wall detector state."""

    spoofing_active: bool
    spoof_count: int
    tracked_walls: int
    last_spoof_time: datetime | None = None


@dataclass(frozen=True)
class WashPattern:
    """A recorded wash-trading pattern."""

    wash_score: float
    severity: RiskLevel
    trade_count: int
    components: dict[str, float]
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "wash_score": self.wash_score,
            "severity": self.severity.value,
            "trade_count": self.trade_count,
            "components": dict(self.components),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ManipulationAssessment:
    """Combined spoofing and wash-trading assessment.

    ``wash_trading`` carries the wash detector's disable-trading verdict at
    assessment time so that decisions stay a pure function of their inputs.
    """

    spoofing_active: bool
    spoof_count: int
    wash_score: float
    risk_level: RiskLevel
    wash_trading: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "spoofing_active": self.spoofing_active,
            "spoof_count": self.spoof_count,
            "wash_score": self.wash_score,
            "risk_level": self.risk_level.value,
            "wash_trading": self.wash_trading,
            "timestamp": self.timestamp.isoformat(),
        }
