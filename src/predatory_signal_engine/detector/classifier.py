"""Order-book microstructure classification.

This module provides the MicrostructureClassifier that turns one order-book
snapshot plus a rolling price history into a candidate regime signal:

- CASCADE: heavy ask pressure over a still-liquid bid side with strong
  negative momentum.
- ABSORPTION: heavy ask pressure against a thin bid side while price holds.
- PRESSURE_SPIKE: heavy ask pressure over a mid-sized bid side while
  price holds.

Rules are evaluated in that order and the first complete match wins.
Every comparison is strict, so values sitting exactly on a threshold
never fire.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from predatory_signal_engine.detector.models import MarketSignal, SignalKind
from predatory_signal_engine.ingestor.models import OrderBookSnapshot

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PRESSURE_THRESHOLD = 3.0
DEFAULT_LIQUIDITY_THRESHOLD = 100_000.0
DEFAULT_STRONG_MOMENTUM_THRESHOLD = -0.3  # percent
DEFAULT_NEUTRAL_MOMENTUM_BAND = 0.1  # percent
DEFAULT_TOP_LEVELS = 50
DEFAULT_PRICE_HISTORY_SIZE = 300

LOW_BAND_FRACTION = 0.5

# A fired rule starts at BASE_CONFIDENCE; factor strength adds the rest.
BASE_CONFIDENCE = 0.5
CONFIDENCE_WEIGHTS = {
    SignalKind.CASCADE: {"pressure": 0.3, "liquidity": 0.4, "momentum": 0.3},
    SignalKind.ABSORPTION: {"pressure": 0.4, "liquidity": 0.3, "momentum": 0.3},
    SignalKind.PRESSURE_SPIKE: {"pressure": 0.5, "liquidity": 0.2, "momentum": 0.3},
}


@dataclass(frozen=True)
class ClassifierConfig:
    pressure_threshold: float = DEFAULT_PRESSURE_THRESHOLD
    liquidity_threshold: float = DEFAULT_LIQUIDITY_THRESHOLD
    strong_momentum_threshold: float = DEFAULT_STRONG_MOMENTUM_THRESHOLD
    neutral_momentum_band: float = DEFAULT_NEUTRAL_MOMENTUM_BAND
    top_levels: int = DEFAULT_TOP_LEVELS
    price_history_size: int = DEFAULT_PRICE_HISTORY_SIZE

    @property
    def low_liquidity_threshold(self) -> float:
        return self.liquidity_threshold * LOW_BAND_FRACTION


@dataclass
class ClassifierStats:
    classifications: int = 0
    invalid_inputs: int = 0
    detections: dict[str, int] = field(
        default_factory=lambda: {
            SignalKind.CASCADE.value: 0,
            SignalKind.ABSORPTION.value: 0,
            SignalKind.PRESSURE_SPIKE.value: 0,
        }
    )
    last_diagnostic: str | None = None


def calculate_momentum(prices: Sequence[float]) -> float:
    """Percent change from the first to the last price in the window."""
    if len(prices) < 2:
        return 0.0
    first = prices[0]
    last = prices[-1]
    if not first:
        return 0.0
    return (last - first) / first * 100.0


class PriceHistory:
    """Fixed-capacity rolling price buffer used to derive momentum."""

    def __init__(self, size: int = DEFAULT_PRICE_HISTORY_SIZE) -> None:
        if size < 2:
            raise ValueError("Price history needs room for at least two samples")
        self._prices: deque[float] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._prices)

    @property
    def values(self) -> tuple[float, ...]:
        return tuple(self._prices)

    @property
    def momentum(self) -> float:
        return calculate_momentum(self._prices)

    def append(self, price: float) -> None:
        if math.isfinite(price) and price > 0:
            self._prices.append(price)

    def clear(self) -> None:
        self._prices.clear()


class MicrostructureClassifier:
    """Pure classifier for order-book regime signals.

    ``classify`` has no side effects on its inputs; the only state it keeps
    is counters for observability, which never influence its output.

    Example:
        ```python
        classifier = MicrostructureClassifier(ClassifierConfig())
        history = PriceHistory()
        history.append(snapshot.mid_price)
        signal = classifier.classify(snapshot, history.values)
        if signal.kind == SignalKind.CASCADE:
            ...
        ```
    """

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self._config = config or ClassifierConfig()
        self._stats = ClassifierStats()

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    @property
    def stats(self) -> ClassifierStats:
        return self._stats

    def classify(self, snapshot: OrderBookSnapshot, prices: Sequence[float]) -> MarketSignal:
        """Classify a snapshot into a regime signal.

        Args:
            snapshot: Order-book snapshot to classify.
            prices: Rolling price history, oldest first.

        Returns:
            MarketSignal; ``kind`` is NONE when no rule holds or when the
            input is malformed.
        """
        self._stats.classifications += 1
        try:
            return self._classify(snapshot, prices)
        except (TypeError, ValueError, AttributeError, ArithmeticError) as e:
            self._stats.invalid_inputs += 1
            self._stats.last_diagnostic = f"invalid input: {e}"
            logger.warning("Classifier rejected malformed snapshot: %s", e)
            return MarketSignal(
                kind=SignalKind.NONE,
                pressure_ratio=0.0,
                bid_volume=0.0,
                ask_volume=0.0,
                momentum=0.0,
                price=0.0,
                timestamp=getattr(snapshot, "timestamp", None) or datetime.now(UTC),
            )

    def _classify(self, snapshot: OrderBookSnapshot, prices: Sequence[float]) -> MarketSignal:
        cfg = self._config
        bid_volume = _checked(snapshot.bid_volume(cfg.top_levels), "bid_volume")
        ask_volume = _checked(snapshot.ask_volume(cfg.top_levels), "ask_volume")
        momentum = _checked(calculate_momentum(prices), "momentum")
        pressure_ratio = ask_volume / bid_volume if bid_volume > 0 else 0.0
        price = snapshot.mid_price or snapshot.best_bid or (prices[-1] if prices else 0.0)
        price = _checked(float(price), "price")

        kind, diagnostic = self._evaluate_rules(pressure_ratio, bid_volume, momentum)
        self._stats.last_diagnostic = diagnostic

        confidence = 0.0
        factors: dict[str, float] = {}
        if kind != SignalKind.NONE:
            self._stats.detections[kind.value] += 1
            confidence, factors = self.calculate_confidence(
                kind,
                pressure_ratio=pressure_ratio,
                bid_volume=bid_volume,
                momentum=momentum,
            )
            logger.info(
                "Regime signal %s: pressure=%.3f, bid_volume=%.0f, momentum=%.3f%%, confidence=%.2f",
                kind.value,
                pressure_ratio,
                bid_volume,
                momentum,
                confidence,
            )
        else:
            logger.debug("No regime: %s", diagnostic)

        return MarketSignal(
            kind=kind,
            pressure_ratio=pressure_ratio,
            bid_volume=bid_volume,
            ask_volume=ask_volume,
            momentum=momentum,
            price=price,
            confidence=confidence,
            factors=factors,
            timestamp=snapshot.timestamp,
        )

    def _evaluate_rules(
        self,
        pressure_ratio: float,
        bid_volume: float,
        momentum: float,
    ) -> tuple[SignalKind, str]:
        cfg = self._config
        if not pressure_ratio > cfg.pressure_threshold:
            return SignalKind.NONE, (
                f"pressure {pressure_ratio:.3f} not above {cfg.pressure_threshold}"
            )

        low_band = cfg.low_liquidity_threshold
        neutral = -cfg.neutral_momentum_band < momentum < cfg.neutral_momentum_band

        if bid_volume >= low_band and momentum < cfg.strong_momentum_threshold:
            return SignalKind.CASCADE, "cascade conditions met"
        if bid_volume < low_band and neutral:
            return SignalKind.ABSORPTION, "absorption conditions met"
        if low_band <= bid_volume < cfg.liquidity_threshold and neutral:
            return SignalKind.PRESSURE_SPIKE, "pressure spike conditions met"

        if not neutral and momentum >= cfg.strong_momentum_threshold:
            reason = f"momentum {momentum:.3f}% neither neutral nor below {cfg.strong_momentum_threshold}%"
        elif bid_volume < low_band:
            reason = f"bid volume {bid_volume:.0f} too thin for a cascade"
        else:
            reason = f"bid volume {bid_volume:.0f} above the pressure-spike band"
        return SignalKind.NONE, reason

    def calculate_confidence(
        self,
        kind: SignalKind,
        *,
        pressure_ratio: float,
        bid_volume: float,
        momentum: float,
    ) -> tuple[float, dict[str, float]]:
        """Calculate confidence for a fired rule.

        Returns:
            Tuple of (confidence, factors dict).
        """
        cfg = self._config
        low_band = cfg.low_liquidity_threshold
        factors: dict[str, float] = {
            "pressure": _unit((pressure_ratio - cfg.pressure_threshold) / cfg.pressure_threshold),
        }

        if kind == SignalKind.CASCADE:
            factors["liquidity"] = _unit(bid_volume / cfg.liquidity_threshold)
            factors["momentum"] = _unit(
                (cfg.strong_momentum_threshold - momentum) / abs(cfg.strong_momentum_threshold)
            )
        elif kind == SignalKind.ABSORPTION:
            factors["liquidity"] = _unit(1.0 - bid_volume / low_band)
            factors["momentum"] = _unit(1.0 - abs(momentum) / cfg.neutral_momentum_band)
        elif kind == SignalKind.PRESSURE_SPIKE:
            band_width = cfg.liquidity_threshold - low_band
            factors["liquidity"] = _unit((bid_volume - low_band) / band_width)
            factors["momentum"] = _unit(1.0 - abs(momentum) / cfg.neutral_momentum_band)
        else:
            return 0.0, {}

        weights = CONFIDENCE_WEIGHTS[kind]
        strength = sum(factors[name] * weight for name, weight in weights.items())
        confidence = min(1.0, BASE_CONFIDENCE + (1.0 - BASE_CONFIDENCE) * strength)
        return confidence, factors


def _checked(value: float, name: str) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
        raise ValueError(f"{name} is not a finite number: {value!r}")
    return float(value)


def _unit(value: float) -> float:
    return max(0.0, min(1.0, value))
