"""Main engine orchestrator for the Predatory Signal Engine.

This module provides the PredatorySignalEngine that wires together all
components and owns the two input domains:

- Order-book pull domain: ``process_snapshot()`` is synchronous, does no
  I/O and runs classifier, liquidity scorer, spoof detector, state tick,
  manipulation assessment and decision combiner in a fixed order.
- Whale push domain: the mempool feed and the transfer poller run as
  asyncio tasks and feed ``process_pending_transaction()`` and
  ``process_transaction()``, which may move the shared state machine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from predatory_signal_engine.config import Settings, get_settings
from predatory_signal_engine.decision import DecisionCombiner, DecisionConfig, TradeDecision
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
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.mempool_stream import FeedHealth, MempoolFeed
from predatory_signal_engine.ingestor.models import (
    OrderBookSnapshot,
    PendingTransactionEvent,
    TradeTick,
    TransactionEvent,
    VolumeProfile,
)
from predatory_signal_engine.ingestor.transfers import TokenTransferPoller
from predatory_signal_engine.reporting import RedisEventPublisher
from predatory_signal_engine.state.machine import StateMachineConfig, WhaleStateMachine
from predatory_signal_engine.state.models import SystemSnapshot

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the package loggers."""
    level = settings.get_logging_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("predatory_signal_engine").setLevel(level)


def classifier_config(settings: Settings) -> ClassifierConfig:
    s = settings.classifier
    return ClassifierConfig(
        pressure_threshold=s.pressure_threshold,
        liquidity_threshold=s.liquidity_threshold,
        strong_momentum_threshold=s.strong_momentum_threshold,
        neutral_momentum_band=s.neutral_momentum_band,
        top_levels=s.top_levels,
        price_history_size=s.price_history_size,
    )


def liquidity_config(settings: Settings) -> LiquidityConfig:
    s = settings.liquidity
    return LiquidityConfig(
        history_size=s.history_size,
        min_samples=s.min_samples,
        signal_percentile=s.signal_percentile,
        high_confidence_percentile=s.high_confidence_percentile,
        low_warning_percentile=s.low_warning_percentile,
        impact_notional_usd=s.impact_notional_usd,
        depth_reference=s.depth_reference,
        volume_reference_usd=s.volume_reference_usd,
        density_scale=s.density_scale,
    )


def whale_config(settings: Settings) -> WhaleConfig:
    s = settings.whale
    return WhaleConfig.create(
        watchlist=s.watchlist,
        exchange_addresses=s.exchange_addresses,
        min_transfer_usd=s.min_transfer_usd,
        large_transfer_usd=s.large_transfer_usd,
        native_price_usd=s.native_price_usd,
        token_price_usd=s.token_price_usd,
        dedup_size=s.dedup_size,
        dedup_ttl_seconds=s.dedup_ttl_seconds,
    )


def state_machine_config(settings: Settings) -> StateMachineConfig:
    s = settings.whale
    return StateMachineConfig(
        hunt_trigger_threshold=s.hunt_trigger_threshold,
        hunt_duration=timedelta(hours=s.hunt_mode_duration_hours),
        dump_validity=timedelta(hours=s.dump_validity_hours),
        retrigger_policy=s.hunt_retrigger_policy,
        history_size=s.history_size,
    )


def spoof_config(settings: Settings) -> SpoofConfig:
    s = settings.spoof
    return SpoofConfig(
        wall_threshold=s.wall_threshold,
        min_dwell_seconds=s.min_dwell_seconds,
        detection_window_seconds=s.detection_window_seconds,
        max_spoof_count=s.max_spoof_count,
        spoof_window_seconds=s.spoof_window_seconds,
        stale_wall_seconds=s.stale_wall_seconds,
    )


def wash_trade_config(settings: Settings) -> WashTradeConfig:
    s = settings.wash
    return WashTradeConfig(
        window_seconds=s.window_seconds,
        threshold=s.threshold,
        rapid_trade_ms=s.rapid_trade_ms,
        analysis_interval_seconds=s.analysis_interval_seconds,
        min_trades=s.min_trades,
        price_epsilon=s.price_epsilon,
        max_trades=s.max_trades,
    )


def decision_config(settings: Settings) -> DecisionConfig:
    s = settings.decision
    return DecisionConfig(
        quality_high_volume=s.quality_high_volume,
        quality_medium_volume=s.quality_medium_volume,
        quality_low_volume=s.quality_low_volume,
        liquidity_threshold=settings.classifier.liquidity_threshold,
        max_concurrent_positions=s.max_concurrent_positions,
        min_exposure_factor=s.min_exposure_factor,
    )


class EngineState(str, Enum):
    """Engine lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class EngineStats:
    """Statistics for the engine."""

    started_at: datetime | None = None
    snapshots_processed: int = 0
    invalid_snapshots: int = 0
    trades_processed: int = 0
    invalid_trades: int = 0
    transactions_processed: int = 0
    invalid_transactions: int = 0
    intents_detected: int = 0
    signals_generated: int = 0
    decisions_approved: int = 0
    decisions_vetoed: int = 0
    errors: int = 0
    last_snapshot_time: datetime | None = None
    last_error: str | None = None


class PredatorySignalEngine:
    """Fuses order-book, whale and manipulation evidence into trade decisions.

    Engine flow:
        OrderBookSnapshot → Classifier → Liquidity → Spoof → State tick →
        Manipulation assessment → Decision Combiner → TradeDecision
        Mempool / Transfers → Whale Intent Detector → Whale State Machine

    Example:
        ```python
        from predatory_signal_engine.config import get_settings
        from predatory_signal_engine.engine import PredatorySignalEngine

        engine = PredatorySignalEngine(get_settings())
        await engine.start()
        decision = engine.process_snapshot(snapshot)
        await engine.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        event_bus: EventBus | None = None,
        redis: Redis | None = None,
        mempool_feed: MempoolFeed | None = None,
        transfer_poller: TokenTransferPoller | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            event_bus: Bus to publish on. A private bus is created if omitted.
            redis: Redis client for the event mirror. Built from settings when
                ``REDIS_ENABLED`` is set and none is given.
            mempool_feed: Pre-built mempool feed. Built from settings when
                ``MEMPOOL_ENABLED`` is set and none is given.
            transfer_poller: Pre-built transfer poller. Built from settings when
                ``CHAIN_ENABLED`` is set and none is given.
            clock: Wall clock shared by the whale detector, the wash-trade
                detector and the state machine.
        """
        self._settings = settings or get_settings()
        self._event_bus = event_bus or EventBus()
        self._clock = clock

        self._classifier_config = classifier_config(self._settings)
        self._liquidity_config = liquidity_config(self._settings)
        self._whale_config = whale_config(self._settings)
        self._spoof_config = spoof_config(self._settings)
        self._wash_config = wash_trade_config(self._settings)

        self._state = EngineState.STOPPED
        self._stats = EngineStats()

        self._classifier = MicrostructureClassifier(self._classifier_config)
        self._combiner = DecisionCombiner(decision_config(self._settings))
        self._state_machine = WhaleStateMachine(
            state_machine_config(self._settings),
            event_bus=self._event_bus,
            clock=clock,
        )
        self._build_windowed_components()

        self._latest_signal: MarketSignal | None = None
        self._latest_manipulation: ManipulationAssessment | None = None
        self._latest_decision: TradeDecision | None = None

        # Whale push domain (started in start())
        self._redis = redis
        self._owns_redis = False
        self._publisher: RedisEventPublisher | None = None
        self._mempool_feed = mempool_feed
        self._transfer_poller = transfer_poller
        self._transfer_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    def _build_windowed_components(self) -> None:
        """(Re)create every component that holds a rolling window."""
        self._price_history = PriceHistory(self._classifier_config.price_history_size)
        self._liquidity_scorer = LiquidityScorer(self._liquidity_config, event_bus=self._event_bus)
        self._spoof_detector = SpoofDetector(self._spoof_config, event_bus=self._event_bus)
        self._wash_detector = WashTradeDetector(
            self._wash_config,
            event_bus=self._event_bus,
            clock=lambda: self._clock().timestamp(),
        )
        self._manipulation_monitor = ManipulationMonitor(self._spoof_detector, self._wash_detector)
        self._whale_detector = WhaleIntentDetector(
            self._whale_config,
            event_bus=self._event_bus,
            clock=self._clock,
        )

    @property
    def state(self) -> EngineState:
        """Current engine state."""
        return self._state

    @property
    def stats(self) -> EngineStats:
        """Current engine statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def state_machine(self) -> WhaleStateMachine:
        return self._state_machine

    @property
    def whale_detector(self) -> WhaleIntentDetector:
        return self._whale_detector

    @property
    def liquidity_scorer(self) -> LiquidityScorer:
        return self._liquidity_scorer

    @property
    def spoof_detector(self) -> SpoofDetector:
        return self._spoof_detector

    @property
    def wash_detector(self) -> WashTradeDetector:
        return self._wash_detector

    @property
    def price_history(self) -> PriceHistory:
        return self._price_history

    @property
    def latest_signal(self) -> MarketSignal | None:
        return self._latest_signal

    @property
    def latest_liquidity(self) -> LiquidityScore | None:
        return self._liquidity_scorer.latest

    @property
    def latest_manipulation(self) -> ManipulationAssessment | None:
        return self._latest_manipulation

    @property
    def latest_decision(self) -> TradeDecision | None:
        return self._latest_decision

    @property
    def feed_health(self) -> FeedHealth | None:
        """Mempool feed health, or None when no feed is configured."""
        return self._mempool_feed.health if self._mempool_feed else None

    @property
    def transfer_health(self) -> FeedHealth | None:
        """Transfer poller health, or None when no poller is configured."""
        return self._transfer_poller.health if self._transfer_poller else None

    def system_snapshot(self) -> SystemSnapshot:
        return self._state_machine.snapshot()

    # Order-book pull domain

    def process_snapshot(
        self,
        snapshot: OrderBookSnapshot | Mapping[str, Any],
        *,
        volume_profile: VolumeProfile | None = None,
        open_positions: int = 0,
    ) -> TradeDecision | None:
        """Process one order-book snapshot.

        Args:
            snapshot: Normalized snapshot, or a raw mapping for ``from_dict``.
            volume_profile: Recent traded volume, if the caller tracks it.
            open_positions: Positions currently open, for exposure scaling.

        Returns:
            A TradeDecision for a non-NONE signal, else None. Malformed
            snapshots are logged, counted and return None.
        """
        if not isinstance(snapshot, OrderBookSnapshot):
            try:
                snapshot = OrderBookSnapshot.from_dict(dict(snapshot))
            except (TypeError, ValueError) as e:
                self._stats.invalid_snapshots += 1
                logger.warning("Dropping malformed order-book snapshot: %s", e)
                return None

        self._stats.snapshots_processed += 1
        self._stats.last_snapshot_time = snapshot.timestamp

        mid = snapshot.mid_price
        if mid is not None:
            self._price_history.append(mid)

        signal = self._classifier.classify(snapshot, self._price_history.values)
        self._liquidity_scorer.score(snapshot, volume_profile)
        self._spoof_detector.update(snapshot)
        self._state_machine.tick()
        manipulation = self._manipulation_monitor.assess(timestamp=snapshot.timestamp)

        self._latest_signal = signal
        self._latest_manipulation = manipulation
        if signal.kind == SignalKind.NONE:
            return None

        self._stats.signals_generated += 1
        self._event_bus.publish(EventType.SIGNAL_GENERATED, signal)

        decision = self._combiner.evaluate(
            signal,
            system_state=self._system_state_for_decision(),
            liquidity=self._liquidity_scorer.latest,
            manipulation=manipulation,
            open_positions=open_positions,
            timestamp=snapshot.timestamp,
        )
        if decision.allow:
            self._stats.decisions_approved += 1
        else:
            self._stats.decisions_vetoed += 1
        self._latest_decision = decision
        self._event_bus.publish(EventType.TRADE_DECISION, decision)
        return decision

    def process_trade(self, trade: TradeTick | Mapping[str, Any]) -> None:
        """Feed one trade to the wash-trade detector."""
        if not isinstance(trade, TradeTick):
            try:
                trade = TradeTick.from_dict(dict(trade))
            except (TypeError, ValueError) as e:
                self._stats.invalid_trades += 1
                logger.warning("Dropping malformed trade: %s", e)
                return
        self._stats.trades_processed += 1
        self._wash_detector.add_trade(trade)

    def _system_state_for_decision(self) -> SystemSnapshot | None:
        if FeedHealth.FAILED in (self.feed_health, self.transfer_health):
            return None
        return self._state_machine.snapshot()

    # Whale push domain

    def process_pending_transaction(
        self,
        tx: PendingTransactionEvent | Mapping[str, Any],
    ) -> WhaleIntentEvent | None:
        """Classify a pending transaction and apply any whale intent to the state."""
        if not isinstance(tx, PendingTransactionEvent):
            try:
                tx = PendingTransactionEvent.from_rpc(dict(tx))
            except (TypeError, ValueError) as e:
                self._stats.invalid_transactions += 1
                logger.warning("Dropping malformed pending transaction: %s", e)
                return None
        self._stats.transactions_processed += 1
        return self._apply_intent(self._whale_detector.analyze_pending(tx))

    def process_transaction(
        self,
        tx: TransactionEvent | Mapping[str, Any],
    ) -> WhaleIntentEvent | None:
        """Classify a confirmed token transfer and apply any whale intent to the state."""
        if not isinstance(tx, TransactionEvent):
            try:
                tx = TransactionEvent.from_dict(dict(tx))
            except (TypeError, ValueError) as e:
                self._stats.invalid_transactions += 1
                logger.warning("Dropping malformed transaction: %s", e)
                return None
        self._stats.transactions_processed += 1
        return self._apply_intent(self._whale_detector.analyze_transfer(tx))

    def _apply_intent(self, intent: WhaleIntentEvent | None) -> WhaleIntentEvent | None:
        if intent is None:
            return None
        self._stats.intents_detected += 1
        self._state_machine.record_intent(intent)
        return intent

    async def _on_pending_transaction(self, tx: PendingTransactionEvent) -> None:
        self.process_pending_transaction(tx)

    async def _on_transfer(self, tx: TransactionEvent) -> None:
        self.process_transaction(tx)

    # Lifecycle

    async def start(self, *, reset_state: bool = False) -> None:
        """Start the engine.

        Rolling windows always start cold. The state machine keeps its
        state across restarts unless ``reset_state`` is set.

        Raises:
            RuntimeError: If the engine is already running.
        """
        if self._state != EngineState.STOPPED:
            raise RuntimeError(f"Cannot start engine in state {self._state}")

        self._state = EngineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting engine for %s...", self._settings.symbol)

        try:
            self._settings.validate_requirements()
            self._build_windowed_components()
            self._latest_signal = None
            self._latest_manipulation = None
            self._latest_decision = None
            if reset_state:
                self._state_machine = WhaleStateMachine(
                    self._state_machine.config,
                    event_bus=self._event_bus,
                    clock=self._clock,
                )
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = EngineState.RUNNING
            logger.info("Engine started successfully")
        except Exception as e:
            self._state = EngineState.ERROR
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.error("Failed to start engine: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            self._state = EngineState.STOPPED
            raise

    async def stop(self) -> None:
        """Stop the engine. In-flight data is discarded, not flushed."""
        if self._state == EngineState.STOPPED:
            return

        self._state = EngineState.STOPPING
        logger.info("Stopping engine...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = EngineState.STOPPED
        logger.info("Engine stopped")

    async def _start_background_services(self) -> None:
        settings = self._settings

        if self._redis is None and settings.redis.enabled:
            password = settings.redis.password.get_secret_value() if settings.redis.password else None
            self._redis = Redis.from_url(settings.redis.url, password=password)
            self._owns_redis = True
        if self._redis is not None:
            self._publisher = RedisEventPublisher(
                self._redis,
                event_bus=self._event_bus,
                prefix=settings.redis.stream_prefix,
                maxlen=settings.redis.stream_maxlen,
            )
            await self._publisher.start()

        if self._mempool_feed is None and settings.mempool.enabled:
            self._mempool_feed = MempoolFeed(
                settings.mempool.provider_urls,
                address_filter=self._whale_detector.is_whale_transaction,
                on_transaction=self._on_pending_transaction,
                event_bus=self._event_bus,
                stale_after_seconds=settings.mempool.stale_after_seconds,
                health_check_interval=settings.mempool.health_check_interval_seconds,
                ping_interval=settings.mempool.ping_interval,
                initial_reconnect_delay=settings.mempool.initial_reconnect_delay,
                max_reconnect_delay=settings.mempool.max_reconnect_delay,
                max_reconnect_attempts=settings.mempool.max_reconnect_attempts,
            )
        if self._mempool_feed is not None:
            logger.debug("Starting mempool feed...")
            await self._mempool_feed.start()

        if self._transfer_poller is None and settings.chain.enabled and settings.chain.token_address:
            self._transfer_poller = TokenTransferPoller(
                settings.chain.rpc_url,
                token_address=settings.chain.token_address,
                watchlist=self._whale_config.watchlist,
                on_transaction=self._on_transfer,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                token_decimals=settings.chain.token_decimals,
                poll_interval_seconds=settings.chain.poll_interval_seconds,
                max_blocks_per_poll=settings.chain.max_blocks_per_poll,
                failure_threshold=settings.chain.failure_threshold,
                event_bus=self._event_bus,
            )
        if self._transfer_poller is not None:
            logger.debug("Starting transfer poller...")
            self._transfer_task = asyncio.create_task(
                self._transfer_poller.start(), name="transfer-poller"
            )

    async def _stop_background_services(self) -> None:
        if self._mempool_feed is not None:
            logger.debug("Stopping mempool feed...")
            await self._mempool_feed.stop()

        if self._transfer_poller is not None:
            logger.debug("Stopping transfer poller...")
            await self._transfer_poller.stop()
        if self._transfer_task:
            self._transfer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._transfer_task
            self._transfer_task = None

        if self._publisher is not None:
            await self._publisher.stop()
            self._publisher = None

    async def _cleanup(self) -> None:
        if self._transfer_poller is not None:
            await self._transfer_poller.aclose()

        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
            self._owns_redis = False

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the engine and run until stopped.

        Example:
            ```python
            engine = PredatorySignalEngine()
            try:
                await engine.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> PredatorySignalEngine:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
