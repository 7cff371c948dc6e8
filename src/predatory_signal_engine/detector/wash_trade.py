"""Wash-trade detection over a rolling trade tape.

The wash score (0-100) is a weighted sum of four sub-scores:

- round-number trades: share of trades with round quantity or notional (40%)
- rapid trades: share of consecutive pairs closer than the rapid threshold (30%)
- volume concentration: excess share of value held by the top 20% of trades (20%)
- flat prices: share of consecutive price changes below epsilon (10%)

Recomputation is throttled so that the trade path stays cheap.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from predatory_signal_engine.detector.models import RiskLevel, WashPattern
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.models import TradeTick

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_WINDOW_SECONDS = 300.0
DEFAULT_THRESHOLD = 75.0
DEFAULT_RAPID_TRADE_MS = 100.0
DEFAULT_ANALYSIS_INTERVAL_SECONDS = 30.0
DEFAULT_MIN_TRADES = 10
DEFAULT_PRICE_EPSILON = 0.0001
DEFAULT_MAX_TRADES = 50_000
DEFAULT_SCORE_HISTORY_SIZE = 100

DEFAULT_WEIGHTS = {
    "round_numbers": 0.4,
    "rapid_trades": 0.3,
    "volume_concentration": 0.2,
    "price_patterns": 0.1,
}

TOP_TRADE_FRACTION = 0.2
CONCENTRATION_BASELINE = 60.0


@dataclass(frozen=True)
class WashTradeConfig:
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    threshold: float = DEFAULT_THRESHOLD
    rapid_trade_ms: float = DEFAULT_RAPID_TRADE_MS
    analysis_interval_seconds: float = DEFAULT_ANALYSIS_INTERVAL_SECONDS
    min_trades: int = DEFAULT_MIN_TRADES
    price_epsilon: float = DEFAULT_PRICE_EPSILON
    max_trades: int = DEFAULT_MAX_TRADES


def _is_round(value: float, step: float) -> bool:
    return math.isclose(math.fmod(value, step), 0.0, abs_tol=1e-9) or math.isclose(
        math.fmod(value, step), step, abs_tol=1e-9
    )


def round_number_score(trades: list[TradeTick]) -> float:
    """Percent of trades with round quantity (1k/10k) or round notional (100/1k)."""
    if not trades:
        return 0.0
    hits = 0
    for trade in trades:
        notional = trade.notional
        if (
            _is_round(trade.quantity, 1000)
            or _is_round(trade.quantity, 10_000)
            or _is_round(notional, 100)
            or _is_round(notional, 1000)
        ):
            hits += 1
    return hits / len(trades) * 100.0


def rapid_trade_score(trades: list[TradeTick], rapid_trade_ms: float) -> float:
    """Percent of consecutive trade pairs separated by less than the rapid gap."""
    if len(trades) < 2:
        return 0.0
    rapid = 0
    for prev, cur in zip(trades, trades[1:]):
        gap_ms = (cur.timestamp - prev.timestamp).total_seconds() * 1000.0
        if gap_ms < rapid_trade_ms:
            rapid += 1
    return rapid / (len(trades) - 1) * 100.0


def volume_concentration_score(trades: list[TradeTick]) -> float:
    """Excess share (above 60%) of value held by the top 20% of trades."""
    if not trades:
        return 0.0
    values = sorted((t.notional for t in trades), reverse=True)
    total = sum(values)
    if total <= 0:
        return 0.0
    top_n = max(1, math.ceil(len(values) * TOP_TRADE_FRACTION))
    concentration = sum(values[:top_n]) / total * 100.0
    return max(0.0, concentration - CONCENTRATION_BASELINE)


def price_pattern_score(trades: list[TradeTick], epsilon: float) -> float:
    """Percent of consecutive price changes smaller than ``epsilon`` (relative)."""
    if len(trades) < 2:
        return 0.0
    flat = 0
    for prev, cur in zip(trades, trades[1:]):
        if prev.price > 0 and abs(cur.price - prev.price) / prev.price < epsilon:
            flat += 1
    return flat / (len(trades) - 1) * 100.0


class WashTradeDetector:
    """Rolling wash-trade detector.

    Example:
        ```python
        detector = WashTradeDetector(WashTradeConfig())
        detector.add_trade(trade)
        if detector.should_disable_trading():
            ...
        ```
    """

    def __init__(
        self,
        config: WashTradeConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or WashTradeConfig()
        self._event_bus = event_bus
        self._clock = clock
        self._trades: deque[TradeTick] = deque(maxlen=self._config.max_trades)
        self._wash_score = 0.0
        self._components: dict[str, float] = {}
        self._last_analysis: float | None = None
        self._score_history: deque[float] = deque(maxlen=DEFAULT_SCORE_HISTORY_SIZE)
        self._patterns: deque[WashPattern] = deque(maxlen=DEFAULT_SCORE_HISTORY_SIZE)
        self._analyses = 0

    @property
    def config(self) -> WashTradeConfig:
        return self._config

    @property
    def wash_score(self) -> float:
        return self._wash_score

    @property
    def components(self) -> dict[str, float]:
        return dict(self._components)

    @property
    def trade_count(self) -> int:
        return len(self._trades)

    @property
    def score_history(self) -> tuple[float, ...]:
        return tuple(self._score_history)

    @property
    def patterns(self) -> tuple[WashPattern, ...]:
        return tuple(self._patterns)

    @property
    def analyses(self) -> int:
        return self._analyses

    def reset(self) -> None:
        self._trades.clear()
        self._wash_score = 0.0
        self._components = {}
        self._last_analysis = None
        self._score_history.clear()
        self._patterns.clear()

    def add_trade(self, trade: TradeTick) -> None:
        """Add a trade and recompute the score if the throttle interval elapsed."""
        self._trades.append(trade)
        self.analyze(force=False)

    def analyze(self, *, force: bool = True) -> float:
        """Recompute the wash score over the current window.

        With ``force=False`` the previous score is returned unless the
        analysis interval has elapsed.
        """
        cfg = self._config
        now = self._clock()
        if (
            not force
            and self._last_analysis is not None
            and now - self._last_analysis < cfg.analysis_interval_seconds
        ):
            return self._wash_score
        self._last_analysis = now
        self._analyses += 1
        self._prune(now)

        trades = list(self._trades)
        if len(trades) < cfg.min_trades:
            self._wash_score = 0.0
            self._components = {}
            return 0.0

        components = {
            "round_numbers": round_number_score(trades),
            "rapid_trades": rapid_trade_score(trades, cfg.rapid_trade_ms),
            "volume_concentration": volume_concentration_score(trades),
            "price_patterns": price_pattern_score(trades, cfg.price_epsilon),
        }
        score = sum(components[name] * weight for name, weight in DEFAULT_WEIGHTS.items())
        score = max(0.0, min(100.0, score))

        self._wash_score = score
        self._components = components
        self._score_history.append(score)

        if score > cfg.threshold / 2:
            self._record_pattern(score, len(trades), components, now)
        return score

    def should_disable_trading(self) -> bool:
        """Return True when the wash score exceeds the threshold.

        A threshold of zero (or below) disables trading for any non-empty
        trade window.
        """
        # Re-run the throttled analysis so a tape that went quiet ages out.
        self.analyze(force=False)
        if self._config.threshold <= 0:
            self._prune(self._clock())
            return len(self._trades) > 0
        return self._wash_score > self._config.threshold

    def _prune(self, now: float) -> None:
        cutoff = now - self._config.window_seconds
        while self._trades and self._trades[0].timestamp.timestamp() < cutoff:
            self._trades.popleft()

    def _record_pattern(
        self,
        score: float,
        trade_count: int,
        components: dict[str, float],
        now: float,
    ) -> None:
        severity = RiskLevel.HIGH if score > self._config.threshold else RiskLevel.MEDIUM
        pattern = WashPattern(
            wash_score=score,
            severity=severity,
            trade_count=trade_count,
            components=dict(components),
            timestamp=datetime.fromtimestamp(now, tz=UTC),
        )
        self._patterns.append(pattern)
        logger.warning(
            "Wash trading pattern: score=%.1f severity=%s trades=%d",
            score,
            severity.value,
            trade_count,
        )
        if self._event_bus is not None:
            self._event_bus.publish(EventType.WASH_TRADING_DETECTED, pattern)
