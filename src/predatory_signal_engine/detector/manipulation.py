"""Manipulation risk assessment combining spoofing and wash trading."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from predatory_signal_engine.detector.models import ManipulationAssessment, RiskLevel
from predatory_signal_engine.detector.spoofing import SpoofDetector
from predatory_signal_engine.detector.wash_trade import WashTradeDetector

logger = logging.getLogger(__name__)

# Risk points
SPOOFING_ACTIVE_POINTS = 3
SPOOF_SEEN_POINTS = 1
WASH_TRADING_POINTS = 3
WASH_ELEVATED_POINTS = 1

HIGH_RISK_POINTS = 3
MEDIUM_RISK_POINTS = 1


def risk_level_for(
    *,
    spoofing_active: bool,
    spoof_count: int,
    wash_trading: bool,
    wash_elevated: bool,
) -> RiskLevel:
    points = 0
    if spoofing_active:
        points += SPOOFING_ACTIVE_POINTS
    if spoof_count > 0:
        points += SPOOF_SEEN_POINTS
    if wash_trading:
        points += WASH_TRADING_POINTS
    elif wash_elevated:
        points += WASH_ELEVATED_POINTS

    if points >= HIGH_RISK_POINTS:
        return RiskLevel.HIGH
    if points >= MEDIUM_RISK_POINTS:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class ManipulationMonitor:
    """Reads both manipulation filters into one immutable assessment."""

    def __init__(self, spoof_detector: SpoofDetector, wash_detector: WashTradeDetector) -> None:
        self._spoof = spoof_detector
        self._wash = wash_detector

    @property
    def spoof_detector(self) -> SpoofDetector:
        return self._spoof

    @property
    def wash_detector(self) -> WashTradeDetector:
        return self._wash

    def assess(self, *, timestamp: datetime | None = None) -> ManipulationAssessment:
        spoof_state = self._spoof.get_state()
        wash_trading = self._wash.should_disable_trading()
        wash_score = self._wash.wash_score
        threshold = self._wash.config.threshold

        risk = risk_level_for(
            spoofing_active=spoof_state.spoofing_active,
            spoof_count=spoof_state.spoof_count,
            wash_trading=wash_trading,
            wash_elevated=wash_score > threshold / 2,
        )
        return ManipulationAssessment(
            spoofing_active=spoof_state.spoofing_active,
            spoof_count=spoof_state.spoof_count,
            wash_score=wash_score,
            risk_level=risk,
            wash_trading=wash_trading,
            timestamp=timestamp or datetime.now(UTC),
        )
