"""Decision combiner.

Turns a classifier signal plus the surrounding context (system state,
liquidity score, manipulation assessment) into a single TradeDecision.
Vetoes are evaluated in a fixed order and the first one wins:

1. wash trading
2. system state not HUNTING
3. spoofing active
4. liquidity percentile too low for a signal
5. quality grade REJECT

The combiner holds no state; the same inputs always produce the same decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from predatory_signal_engine.detector.classifier import (
    DEFAULT_LIQUIDITY_THRESHOLD,
    LOW_BAND_FRACTION,
)
from predatory_signal_engine.detector.models import (
    LiquidityScore,
    ManipulationAssessment,
    MarketSignal,
    SignalKind,
)
from predatory_signal_engine.errors import SignalEngineError
from predatory_signal_engine.state.models import SystemSnapshot, SystemState

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_QUALITY_HIGH_VOLUME = 800_000.0
DEFAULT_QUALITY_MEDIUM_VOLUME = 600_000.0
DEFAULT_QUALITY_LOW_VOLUME = 400_000.0
DEFAULT_MAX_CONCURRENT_POSITIONS = 3
DEFAULT_MIN_EXPOSURE_FACTOR = 0.2

# Thin-book kinds are graded by position inside their classifier band
BAND_HIGH_FRACTION = 2 / 3
BAND_MEDIUM_FRACTION = 1 / 3


class DecisionError(SignalEngineError):
    """Raised when the combiner is called with an input it must never receive."""


class QualityGrade(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    REJECT = "REJECT"


QUALITY_FACTORS: dict[QualityGrade, float] = {
    QualityGrade.HIGH: 1.0,
    QualityGrade.MEDIUM: 0.8,
    QualityGrade.LOW: 0.5,
    QualityGrade.REJECT: 0.0,
}


class DecisionReason(str, Enum):
    """Closed set of decision reasons."""

    APPROVED = "approved"
    WASH_TRADING = "wash trading"
    SYSTEM_STATE = "system state"
    MANIPULATION = "manipulation"
    LIQUIDITY = "insufficient liquidity percentile"
    QUALITY = "quality"
    DATA_UNAVAILABLE = "data unavailable"


@dataclass(frozen=True)
class DecisionConfig:
    quality_high_volume: float = DEFAULT_QUALITY_HIGH_VOLUME
    quality_medium_volume: float = DEFAULT_QUALITY_MEDIUM_VOLUME
    quality_low_volume: float = DEFAULT_QUALITY_LOW_VOLUME
    liquidity_threshold: float = DEFAULT_LIQUIDITY_THRESHOLD
    max_concurrent_positions: int = DEFAULT_MAX_CONCURRENT_POSITIONS
    min_exposure_factor: float = DEFAULT_MIN_EXPOSURE_FACTOR


@dataclass(frozen=True)
class TradeDecision:
    """Final, immutable verdict for one classifier signal.

    Attributes:
        allow: True only when the signal survived every veto.
        reason: Why the decision was made.
        quality_grade: Grade derived from the signal's bid volume.
        sizing_factor: Position size multiplier (0.0 when not allowed).
        signal: The classifier signal being judged.
        system_state: State snapshot used, None if unavailable.
        liquidity: Liquidity score used, None if unavailable.
        manipulation: Manipulation assessment used, None if unavailable.
        timestamp: When the decision was made.
    """

    allow: bool
    reason: DecisionReason
    quality_grade: QualityGrade
    sizing_factor: float
    signal: MarketSignal
    system_state: SystemSnapshot | None
    liquidity: LiquidityScore | None
    manipulation: ManipulationAssessment | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def vetoed(self) -> bool:
        return not self.allow

    def to_dict(self) -> dict[str, object]:
        return {
            "allow": self.allow,
            "reason": self.reason.value,
            "quality_grade": self.quality_grade.value,
            "sizing_factor": self.sizing_factor,
            "signal": self.signal.to_dict(),
            "system_state": self.system_state.to_dict() if self.system_state else None,
            "liquidity": self.liquidity.to_dict() if self.liquidity else None,
            "manipulation": self.manipulation.to_dict() if self.manipulation else None,
            "timestamp": self.timestamp.isoformat(),
        }


class DecisionCombiner:
    """Combines every upstream component into a TradeDecision.

    Example:
        ```python
        combiner = DecisionCombiner(DecisionConfig())
        decision = combiner.evaluate(
            signal,
            system_state=state_machine.snapshot(),
            liquidity=liquidity_score,
            manipulation=monitor.assess(),
        )
        ```
    """

    def __init__(self, config: DecisionConfig | None = None) -> None:
        self._config = config or DecisionConfig()

    @property
    def config(self) -> DecisionConfig:
        return self._config

    def grade_quality(
        self, bid_volume: float, kind: SignalKind = SignalKind.CASCADE
    ) -> QualityGrade:
        """Grade a signal's bid depth.

        CASCADE fires on deep books and is graded against the absolute
        volume breakpoints. ABSORPTION and PRESSURE_SPIKE only fire on
        thin books, below the classifier's liquidity threshold, so they
        are graded by where the bid volume sits inside their own band.
        A bid volume below the band grades REJECT.
        """
        if kind in (SignalKind.ABSORPTION, SignalKind.PRESSURE_SPIKE):
            return self._grade_in_band(bid_volume, kind)

        cfg = self._config
        if bid_volume >= cfg.quality_high_volume:
            return QualityGrade.HIGH
        if bid_volume >= cfg.quality_medium_volume:
            return QualityGrade.MEDIUM
        if bid_volume >= cfg.quality_low_volume:
            return QualityGrade.LOW
        return QualityGrade.REJECT

    def band_for(self, kind: SignalKind) -> tuple[float, float]:
        """Bid-volume band ``[lower, upper)`` a thin-book kind fires in."""
        upper = self._config.liquidity_threshold
        low_band = upper * LOW_BAND_FRACTION
        if kind == SignalKind.ABSORPTION:
            return 0.0, low_band
        return low_band, upper

    def _grade_in_band(self, bid_volume: float, kind: SignalKind) -> QualityGrade:
        lower, upper = self.band_for(kind)
        if bid_volume < lower or upper <= lower:
            return QualityGrade.REJECT
        position = (bid_volume - lower) / (upper - lower)
        if position >= BAND_HIGH_FRACTION:
            return QualityGrade.HIGH
        if position >= BAND_MEDIUM_FRACTION:
            return QualityGrade.MEDIUM
        return QualityGrade.LOW

    def exposure_factor(self, open_positions: int) -> float:
        """Shrink size as concurrent exposure grows, never below the floor."""
        cfg = self._config
        used = max(0, open_positions) / cfg.max_concurrent_positions
        return max(cfg.min_exposure_factor, 1.0 - used)

    def sizing_factor(self, grade: QualityGrade, confidence: float, open_positions: int = 0) -> float:
        raw = QUALITY_FACTORS[grade] * confidence * self.exposure_factor(open_positions)
        return max(0.0, min(1.0, raw))

    def evaluate(
        self,
        signal: MarketSignal,
        *,
        system_state: SystemSnapshot | None,
        liquidity: LiquidityScore | None,
        manipulation: ManipulationAssessment | None,
        open_positions: int = 0,
        timestamp: datetime | None = None,
    ) -> TradeDecision:
        """Judge one signal.

        Args:
            signal: A non-NONE classifier signal.
            system_state: Current state snapshot, or None if the whale feed is down.
            liquidity: Latest liquidity score, or None if unavailable.
            manipulation: Latest manipulation assessment, or None if unavailable.
            open_positions: Positions currently open, for exposure scaling.
            timestamp: Decision time. Defaults to now.

        Raises:
            DecisionError: If the signal kind is NONE.
        """
        if signal.kind == SignalKind.NONE:
            raise DecisionError("Decision requested for a NONE signal")

        grade = self.grade_quality(signal.bid_volume, signal.kind)
        reason = self._first_veto(
            signal,
            grade=grade,
            system_state=system_state,
            liquidity=liquidity,
            manipulation=manipulation,
        )
        allow = reason is None
        sizing = self.sizing_factor(grade, signal.confidence, open_positions) if allow else 0.0

        decision = TradeDecision(
            allow=allow,
            reason=reason or DecisionReason.APPROVED,
            quality_grade=grade,
            sizing_factor=sizing,
            signal=signal,
            system_state=system_state,
            liquidity=liquidity,
            manipulation=manipulation,
            timestamp=timestamp or datetime.now(UTC),
        )
        if allow:
            logger.info(
                "%s approved: grade=%s sizing=%.2f confidence=%.2f",
                signal.kind.value,
                grade.value,
                sizing,
                signal.confidence,
            )
        else:
            logger.info("%s vetoed: %s", signal.kind.value, decision.reason.value)
        return decision

    def _first_veto(
        self,
        signal: MarketSignal,
        *,
        grade: QualityGrade,
        system_state: SystemSnapshot | None,
        liquidity: LiquidityScore | None,
        manipulation: ManipulationAssessment | None,
    ) -> DecisionReason | None:
        if manipulation is None:
            return DecisionReason.DATA_UNAVAILABLE
        if manipulation.wash_trading:
            return DecisionReason.WASH_TRADING

        if system_state is None:
            return DecisionReason.DATA_UNAVAILABLE
        if system_state.state != SystemState.HUNTING or not system_state.allow_trading:
            return DecisionReason.SYSTEM_STATE

        if manipulation.spoofing_active:
            return DecisionReason.MANIPULATION

        if liquidity is None:
            return DecisionReason.DATA_UNAVAILABLE
        if not liquidity.valid_for_signal:
            return DecisionReason.LIQUIDITY

        if grade == QualityGrade.REJECT:
            return DecisionReason.QUALITY
        return None
