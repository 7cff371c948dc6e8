"""Whale gating state machine.

The WhaleStateMachine is the only writer of the process-wide SystemState.
Both the order-book domain (``tick``) and the whale-event domain
(``record_intent``) may request transitions; the transition methods are
serialized by one lock, and readers get a frozen SystemSnapshot taken
under that lock. Events are published only after the lock is released.

Transitions:
    PATIENT  -> HUNTING    qualifying whale deposit inside the validity window
    HUNTING  -> PATIENT    hunt window elapsed
    HUNTING  -> STRIKE     execution layer marks a position in progress
    STRIKE   -> HUNTING    execution finished inside the hunt window
    STRIKE   -> PATIENT    execution finished after the hunt window
    any      -> DEFENSIVE  explicit trigger only
    DEFENSIVE -> PATIENT   explicit external resolution only
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Literal

from predatory_signal_engine.detector.models import IntentType, WhaleIntentEvent
from predatory_signal_engine.errors import SignalEngineError, StateInvariantError
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.state.models import (
    StateTransition,
    SystemSnapshot,
    SystemState,
    WhaleDump,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HUNT_TRIGGER_THRESHOLD = Decimal("3000000")
DEFAULT_HUNT_DURATION = timedelta(hours=12)
DEFAULT_DUMP_VALIDITY = timedelta(hours=6)
DEFAULT_HISTORY_SIZE = 100

RetriggerPolicy = Literal["ignore", "extend"]


class InvalidTransitionError(SignalEngineError):
    """Raised when a caller requests a transition the current state does not allow."""


@dataclass(frozen=True)
class StateMachineConfig:
    hunt_trigger_threshold: Decimal = DEFAULT_HUNT_TRIGGER_THRESHOLD
    hunt_duration: timedelta = DEFAULT_HUNT_DURATION
    dump_validity: timedelta = DEFAULT_DUMP_VALIDITY
    retrigger_policy: RetriggerPolicy = "ignore"
    history_size: int = DEFAULT_HISTORY_SIZE


@dataclass
class StateMachineStats:
    whale_dumps: int = 0
    stale_dumps: int = 0
    hunts_triggered: int = 0
    hunts_extended: int = 0
    hunts_expired: int = 0
    defensive_entries: int = 0
    transitions: int = 0


PendingEvents = list[tuple[EventType, object]]


class WhaleStateMachine:
    """Single-writer owner of the SystemState.

    Example:
        ```python
        machine = WhaleStateMachine(StateMachineConfig(), event_bus=bus)
        machine.record_intent(intent)
        snapshot = machine.snapshot()
        if snapshot.allow_trading:
            ...
        ```
    """

    def __init__(
        self,
        config: StateMachineConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config or StateMachineConfig()
        self._event_bus = event_bus
        self._clock = clock

        self._lock = threading.Lock()
        self._writer: int | None = None

        self._state = SystemState.PATIENT
        self._hunt_started_at: datetime | None = None
        self._hunt_expires_at: datetime | None = None
        self._defensive_reason: str | None = None
        self._dumps: deque[WhaleDump] = deque()
        self._consumed: set[str] = set()
        self._history: deque[StateTransition] = deque(maxlen=self._config.history_size)
        self._stats = StateMachineStats()

    @property
    def config(self) -> StateMachineConfig:
        return self._config

    @property
    def state(self) -> SystemState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> StateMachineStats:
        return self._stats

    @property
    def history(self) -> tuple[StateTransition, ...]:
        with self._lock:
            return tuple(self._history)

    @property
    def dumps(self) -> tuple[WhaleDump, ...]:
        with self._lock:
            return tuple(self._dumps)

    def snapshot(self, now: datetime | None = None) -> SystemSnapshot:
        """Return a consistent copy of the current state."""
        now = now or self._clock()
        with self._lock:
            cutoff = now - self._config.dump_validity
            remaining = timedelta(0)
            if self._state in (SystemState.HUNTING, SystemState.STRIKE) and self._hunt_expires_at:
                remaining = max(timedelta(0), self._hunt_expires_at - now)
            return SystemSnapshot(
                state=self._state,
                allow_trading=self._state == SystemState.HUNTING and remaining > timedelta(0),
                hunt_started_at=self._hunt_started_at,
                hunt_expires_at=self._hunt_expires_at,
                hunt_time_remaining=remaining,
                valid_dump_count=sum(1 for d in self._dumps if d.timestamp >= cutoff),
                defensive_reason=self._defensive_reason,
                timestamp=now,
            )

    def record_intent(self, intent: WhaleIntentEvent, now: datetime | None = None) -> SystemState:
        """Record a whale intent; qualifying exchange deposits may start a hunt.

        Returns:
            The state after the intent was applied.
        """
        cfg = self._config
        if intent.intent_type != IntentType.EXCHANGE_DEPOSIT:
            return self.state
        if intent.token_amount < cfg.hunt_trigger_threshold:
            logger.debug(
                "Deposit %s below hunt trigger (%s < %s)",
                intent.tx_hash,
                intent.token_amount,
                cfg.hunt_trigger_threshold,
            )
            return self.state

        now = now or self._clock()
        occurred_at = min(intent.occurred_at, now)
        with self._writing() as pending:
            if any(d.tx_hash == intent.tx_hash for d in self._dumps):
                return self._state
            if occurred_at < now - cfg.dump_validity:
                self._stats.stale_dumps += 1
                logger.info(
                    "Ignoring stale whale dump %s from %s",
                    intent.tx_hash,
                    occurred_at.isoformat(),
                )
                return self._state
            dump = WhaleDump(
                tx_hash=intent.tx_hash,
                whale_address=intent.whale_address,
                token_amount=intent.token_amount,
                estimated_value=intent.estimated_value,
                target_exchange=intent.target_exchange,
                timestamp=occurred_at,
            )
            self._dumps.append(dump)
            self._stats.whale_dumps += 1
            pending.append((EventType.WHALE_DUMP, dump))
            logger.warning(
                "Whale dump recorded: %s tokens to %s (tx=%s)",
                intent.token_amount,
                intent.target_exchange or "unknown",
                intent.tx_hash,
            )
            self._evaluate(now, pending)
            return self._state

    def tick(self, now: datetime | None = None) -> SystemState:
        """Apply time-based transitions (dump expiry and hunt expiry)."""
        now = now or self._clock()
        with self._writing() as pending:
            self._evaluate(now, pending)
            return self._state

    def enter_defensive(self, reason: str, now: datetime | None = None) -> SystemState:
        """Enter DEFENSIVE from any state. Only ``resolve_defensive`` leaves it."""
        now = now or self._clock()
        with self._writing() as pending:
            if self._state == SystemState.DEFENSIVE:
                self._defensive_reason = reason
                return self._state
            self._hunt_started_at = None
            self._hunt_expires_at = None
            self._defensive_reason = reason
            self._stats.defensive_entries += 1
            self._set_state(SystemState.DEFENSIVE, f"defensive: {reason}", now, pending)
            return self._state

    def resolve_defensive(self, cause: str = "manual resolution", now: datetime | None = None) -> SystemState:
        now = now or self._clock()
        with self._writing() as pending:
            if self._state != SystemState.DEFENSIVE:
                raise InvalidTransitionError(f"Cannot resolve defensive mode from {self._state.value}")
            self._defensive_reason = None
            self._set_state(SystemState.PATIENT, cause, now, pending)
            return self._state

    def begin_strike(self, cause: str = "execution started", now: datetime | None = None) -> SystemState:
        now = now or self._clock()
        with self._writing() as pending:
            if self._state != SystemState.HUNTING:
                raise InvalidTransitionError(f"Cannot strike from {self._state.value}")
            self._set_state(SystemState.STRIKE, cause, now, pending)
            return self._state

    def end_strike(self, cause: str = "execution finished", now: datetime | None = None) -> SystemState:
        now = now or self._clock()
        with self._writing() as pending:
            if self._state != SystemState.STRIKE:
                raise InvalidTransitionError(f"Cannot end strike from {self._state.value}")
            if self._hunt_expires_at is not None and now < self._hunt_expires_at:
                self._set_state(SystemState.HUNTING, cause, now, pending)
            else:
                self._hunt_started_at = None
                self._hunt_expires_at = None
                self._set_state(SystemState.PATIENT, f"{cause}; hunt window closed", now, pending)
            return self._state

    def _evaluate(self, now: datetime, pending: PendingEvents) -> None:
        cfg = self._config
        cutoff = now - cfg.dump_validity
        self._prune_dumps(now)

        if (
            self._state == SystemState.HUNTING
            and self._hunt_expires_at is not None
            and now >= self._hunt_expires_at
        ):
            self._hunt_started_at = None
            self._hunt_expires_at = None
            self._stats.hunts_expired += 1
            self._set_state(SystemState.PATIENT, "hunt expired", now, pending)

        fresh = [
            d for d in self._dumps if d.tx_hash not in self._consumed and d.timestamp >= cutoff
        ]
        if not fresh:
            return

        if self._state == SystemState.PATIENT:
            self._consumed.update(d.tx_hash for d in fresh)
            self._hunt_started_at = now
            self._hunt_expires_at = now + cfg.hunt_duration
            self._stats.hunts_triggered += 1
            trigger = fresh[-1]
            self._set_state(
                SystemState.HUNTING,
                f"whale dump {trigger.token_amount} to {trigger.target_exchange or 'exchange'}",
                now,
                pending,
            )
        elif self._state == SystemState.HUNTING:
            self._consumed.update(d.tx_hash for d in fresh)
            if cfg.retrigger_policy == "extend":
                self._hunt_started_at = now
                self._hunt_expires_at = now + cfg.hunt_duration
                self._stats.hunts_extended += 1
                self._set_state(SystemState.HUNTING, "hunt extended", now, pending)
            else:
                logger.info("Qualifying dump during hunt ignored (policy=ignore)")

    def _prune_dumps(self, now: datetime) -> None:
        cutoff = now - self._config.dump_validity
        # Dumps arrive out of order when a transfer backlog is drained.
        expired = [d for d in self._dumps if d.timestamp < cutoff]
        if not expired:
            return
        self._dumps = deque(d for d in self._dumps if d.timestamp >= cutoff)
        for dump in expired:
            self._consumed.discard(dump.tx_hash)

    def _set_state(
        self,
        new_state: SystemState,
        cause: str,
        now: datetime,
        pending: PendingEvents,
    ) -> None:
        if self._writer != threading.get_ident():
            raise StateInvariantError("SystemState mutated outside a serialized transition")
        transition = StateTransition(
            timestamp=now,
            from_state=self._state,
            to_state=new_state,
            cause=cause,
        )
        self._state = new_state
        self._history.append(transition)
        self._stats.transitions += 1
        pending.append((EventType.SYSTEM_STATE_CHANGE, transition))
        logger.warning(
            "System state: %s -> %s (%s)",
            transition.from_state.value,
            transition.to_state.value,
            cause,
        )

    @contextmanager
    def _writing(self) -> Iterator[PendingEvents]:
        me = threading.get_ident()
        if self._writer == me:
            raise StateInvariantError("Re-entrant SystemState mutation during a transition")
        pending: PendingEvents = []
        with self._lock:
            self._writer = me
            try:
                yield pending
            finally:
                self._writer = None
        self._flush(pending)

    def _flush(self, pending: PendingEvents) -> None:
        if self._event_bus is None:
            return
        for event_type, payload in pending:
            self._event_bus.publish(event_type, payload)
