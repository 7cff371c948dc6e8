"""Dynamic Liquidity Score (DLS).

Replaces a static bid-volume cutoff with a 0-100 composite of five
order-book quality measures, ranked against its own rolling history.
A score only counts as valid for signal use when its percentile rank
clears a configurable cutoff.
"""

from __future__ import annotations

import bisect
import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

from predatory_signal_engine.detector.models import LiquidityRegime, LiquidityScore
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.models import OrderBookSnapshot, VolumeProfile

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HISTORY_SIZE = 1440
DEFAULT_MIN_SAMPLES = 10
DEFAULT_SIGNAL_PERCENTILE = 75.0
DEFAULT_HIGH_CONFIDENCE_PERCENTILE = 90.0
DEFAULT_LOW_WARNING_PERCENTILE = 25.0
DEFAULT_IMPACT_NOTIONAL_USD = 10_000.0
DEFAULT_DEPTH_REFERENCE = 1_000_000.0
DEFAULT_VOLUME_REFERENCE_USD = 1_000_000.0
DEFAULT_DENSITY_SCALE = 10.0

COLD_START_PERCENTILE = 50.0
DENSITY_BAND = 0.01  # +/-1% around mid

DEFAULT_WEIGHTS = {
    "depth": 0.30,
    "density": 0.25,
    "volume": 0.20,
    "spread": 0.15,
    "impact": 0.10,
}

REGIME_BREAKPOINTS = (
    (90.0, LiquidityRegime.ULTRA_HIGH),
    (75.0, LiquidityRegime.HIGH),
    (50.0, LiquidityRegime.NORMAL),
    (25.0, LiquidityRegime.LOW),
)


@dataclass(frozen=True)
class LiquidityConfig:
    history_size: int = DEFAULT_HISTORY_SIZE
    min_samples: int = DEFAULT_MIN_SAMPLES
    signal_percentile: float = DEFAULT_SIGNAL_PERCENTILE
    high_confidence_percentile: float = DEFAULT_HIGH_CONFIDENCE_PERCENTILE
    low_warning_percentile: float = DEFAULT_LOW_WARNING_PERCENTILE
    impact_notional_usd: float = DEFAULT_IMPACT_NOTIONAL_USD
    depth_reference: float = DEFAULT_DEPTH_REFERENCE
    volume_reference_usd: float = DEFAULT_VOLUME_REFERENCE_USD
    density_scale: float = DEFAULT_DENSITY_SCALE


def regime_for_percentile(percentile: float) -> LiquidityRegime:
    for floor, regime in REGIME_BREAKPOINTS:
        if percentile >= floor:
            return regime
    return LiquidityRegime.CRITICAL


def percentile_rank(value: float, history: list[float] | tuple[float, ...], *, min_samples: int) -> float:
    """Rank ``value`` against ``history`` (which must not include it).

    Returns the share of history strictly below ``value``, scaled to
    0-100 and rounded; 100 when nothing in history reaches ``value``; 50
    when history holds fewer than ``min_samples`` entries.
    """
    if len(history) < min_samples:
        return COLD_START_PERCENTILE
    ordered = sorted(history)
    position = bisect.bisect_left(ordered, value)
    if position == len(ordered):
        return 100.0
    return float(round(position / len(ordered) * 100))


class LiquidityScorer:
    """Adaptive liquidity scorer.

    ``compute_value`` is a pure function of the snapshot. ``score`` ranks the
    value against the rolling history, then appends it.

    Example:
        ```python
        scorer = LiquidityScorer(LiquidityConfig())
        result = scorer.score(snapshot)
        if result.valid_for_signal:
            ...
        ```
    """

    def __init__(
        self,
        config: LiquidityConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or LiquidityConfig()
        self._event_bus = event_bus
        self._history: deque[float] = deque(maxlen=self._config.history_size)
        self._latest: LiquidityScore | None = None

    @property
    def config(self) -> LiquidityConfig:
        return self._config

    @property
    def sample_count(self) -> int:
        return len(self._history)

    @property
    def latest(self) -> LiquidityScore | None:
        return self._latest

    def reset(self) -> None:
        self._history.clear()
        self._latest = None

    def score(
        self,
        snapshot: OrderBookSnapshot,
        volume_profile: VolumeProfile | None = None,
    ) -> LiquidityScore:
        """Score a snapshot and record it in the rolling history.

        Malformed or one-sided books score 0 with status ``invalid`` and are
        not recorded.
        """
        cfg = self._config
        try:
            value, components = self.compute_value(snapshot, volume_profile)
        except (TypeError, ValueError, AttributeError, ArithmeticError) as e:
            logger.warning("Liquidity scorer rejected malformed snapshot: %s", e)
            value, components = None, {}

        if value is None:
            result = LiquidityScore(
                value=0.0,
                percentile=0.0,
                regime=LiquidityRegime.CRITICAL,
                valid_for_signal=False,
                components=components,
                sample_count=len(self._history),
                status="invalid",
                timestamp=getattr(snapshot, "timestamp", None) or datetime.now(UTC),
            )
            self._latest = result
            return result

        percentile = percentile_rank(value, tuple(self._history), min_samples=cfg.min_samples)
        self._history.append(value)

        result = LiquidityScore(
            value=value,
            percentile=percentile,
            regime=regime_for_percentile(percentile),
            valid_for_signal=percentile >= cfg.signal_percentile,
            components=components,
            sample_count=len(self._history),
            timestamp=snapshot.timestamp,
        )
        self._latest = result
        self._publish(result)
        return result

    def compute_value(
        self,
        snapshot: OrderBookSnapshot,
        volume_profile: VolumeProfile | None = None,
    ) -> tuple[float | None, dict[str, float]]:
        """Compute the composite DLS value without touching history.

        Returns:
            Tuple of (value, components); value is None if the book is
            empty on either side.
        """
        if not snapshot.bids or not snapshot.asks:
            return None, {}
        mid = snapshot.mid_price
        if mid is None or mid <= 0:
            return None, {}

        components = {
            "depth": self._depth_score(snapshot),
            "density": self._density_score(snapshot, mid),
            "volume": self._volume_score(volume_profile),
            "spread": self._spread_score(snapshot),
            "impact": self._impact_score(snapshot, mid),
        }
        composite = sum(components[name] * weight for name, weight in DEFAULT_WEIGHTS.items())
        value = float(round(max(0.0, min(100.0, composite))))
        return value, components

    def _depth_score(self, snapshot: OrderBookSnapshot) -> float:
        depth = snapshot.bid_volume() + snapshot.ask_volume()
        return min(100.0, depth / self._config.depth_reference * 100.0)

    def _density_score(self, snapshot: OrderBookSnapshot, mid: float) -> float:
        lower = mid * (1 - DENSITY_BAND)
        upper = mid * (1 + DENSITY_BAND)
        quantities = [lvl.quantity for lvl in snapshot.bids if lower <= lvl.price <= mid]
        quantities += [lvl.quantity for lvl in snapshot.asks if mid <= lvl.price <= upper]
        if not quantities:
            return 0.0
        return min(100.0, sum(quantities) / len(quantities) * self._config.density_scale)

    def _volume_score(self, volume_profile: VolumeProfile | None) -> float:
        if volume_profile is None or volume_profile.recent_volume_usd <= 0:
            return 0.0
        return min(100.0, volume_profile.recent_volume_usd / self._config.volume_reference_usd * 100.0)

    def _spread_score(self, snapshot: OrderBookSnapshot) -> float:
        spread_bps = snapshot.spread_bps
        if spread_bps is None:
            return 0.0
        return min(100.0, max(0.0, 100.0 - spread_bps))

    def _impact_score(self, snapshot: OrderBookSnapshot, mid: float) -> float:
        """Walk a fixed notional through the bids and score the slippage."""
        target = self._config.impact_notional_usd / mid
        filled = 0.0
        cost = 0.0
        for level in snapshot.bids:
            take = min(level.quantity, target - filled)
            if take <= 0:
                break
            cost += take * level.price
            filled += take
        if filled <= 0:
            return 0.0
        avg_price = cost / filled
        impact_bps = abs(avg_price - mid) / mid * 10_000
        if filled < target:
            # Book exhausted before the notional was filled.
            impact_bps += (1 - filled / target) * 10_000
        return min(100.0, max(0.0, 100.0 - impact_bps))

    def _publish(self, result: LiquidityScore) -> None:
        if self._event_bus is None:
            return
        cfg = self._config
        self._event_bus.publish(EventType.LIQUIDITY_ANALYSIS, result)
        if result.sample_count <= cfg.min_samples:
            return
        if result.percentile >= cfg.high_confidence_percentile:
            self._event_bus.publish(EventType.HIGH_LIQUIDITY_REGIME, result)
        elif result.percentile <= cfg.low_warning_percentile:
            logger.warning(
                "Low liquidity: score=%.0f, percentile=%.0f",
                result.value,
                result.percentile,
            )
            self._event_bus.publish(EventType.LOW_LIQUIDITY_WARNING, result)
