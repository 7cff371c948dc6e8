"""Detection layer - Microstructure, liquidity, whale and manipulation analysis."""

from predatory_signal_engine.detector.classifier import (
    ClassifierConfig,
    MicrostructureClassifier,
    PriceHistory,
)
from predatory_signal_engine.detector.liquidity import LiquidityConfig, LiquidityScorer
from predatory_signal_engine.detector.manipulation import ManipulationMonitor
from predatory_signal_engine.detector.models import (
    LiquidityScore,
    ManipulationAssessment,
    MarketSignal,
    SignalKind,
    WhaleIntentEvent,
)
from predatory_signal_engine.detector.spoofing import SpoofConfig, SpoofDetector
from predatory_signal_engine.detector.wash_trade import WashTradeConfig, WashTradeDetector
from predatory_signal_engine.detector.whale_intent import WhaleConfig, WhaleIntentDetector

__all__ = [
    "ClassifierConfig",
    "LiquidityConfig",
    "LiquidityScore",
    "LiquidityScorer",
    "ManipulationAssessment",
    "ManipulationMonitor",
    "MarketSignal",
    "MicrostructureClassifier",
    "PriceHistory",
    "SignalKind",
    "SpoofConfig",
    "SpoofDetector",
    "WashTradeConfig",
    "WashTradeDetector",
    "WhaleConfig",
    "WhaleIntentDetector",
    "WhaleIntentEvent",
]
