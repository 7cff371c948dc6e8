"""Spoof-wall detection.

Tracks large order-book walls by (price, side). A wall that lives longer
than the minimum dwell time and then vanishes inside the detection window
counts as a spoof. Enough spoofs within the rolling spoof window switch
spoofing on, and a quiet window switches it back off.

All timing is taken from snapshot timestamps, so replaying the same
snapshots always yields the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from predatory_signal_engine.detector.models import SpoofState
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.models import OrderBookSnapshot

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_WALL_THRESHOLD = 300_000.0
DEFAULT_MIN_DWELL_SECONDS = 5.0
DEFAULT_DETECTION_WINDOW_SECONDS = 10.0
DEFAULT_MAX_SPOOF_COUNT = 3
DEFAULT_SPOOF_WINDOW_SECONDS = 300.0
DEFAULT_STALE_WALL_SECONDS = 60.0

BID = "bid"
ASK = "ask"


@dataclass(frozen=True)
class SpoofConfig:
    wall_threshold: float = DEFAULT_WALL_THRESHOLD
    min_dwell_seconds: float = DEFAULT_MIN_DWELL_SECONDS
    detection_window_seconds: float = DEFAULT_DETECTION_WINDOW_SECONDS
    max_spoof_count: int = DEFAULT_MAX_SPOOF_COUNT
    spoof_window_seconds: float = DEFAULT_SPOOF_WINDOW_SECONDS
    stale_wall_seconds: float = DEFAULT_STALE_WALL_SECONDS


@dataclass
class _TrackedWall:
    price: float
    side: str
    quantity: float
    first_seen: float
    last_seen: float

    @property
    def lifetime(self) -> float:
        return self.last_seen - self.first_seen


@dataclass(frozen=True)
class SpoofEvent:
    """A wall that was pulled inside the detection window."""

    price: float
    side: str
    quantity: float
    lifetime_seconds: float
    spoof_count: int
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "price": self.price,
            "side": self.side,
            "quantity": self.quantity,
            "lifetime_seconds": self.lifetime_seconds,
            "spoof_count": self.spoof_count,
            "timestamp": self.timestamp.isoformat(),
        }


class SpoofDetector:
    """Stateful spoof-wall tracker fed with consecutive snapshots."""

    def __init__(
        self,
        config: SpoofConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or SpoofConfig()
        self._event_bus = event_bus
        self._walls: dict[tuple[float, str], _TrackedWall] = {}
        self._spoof_count = 0
        self._spoofing_active = False
        self._last_spoof_time: float | None = None
        self._last_spoof_dt: datetime | None = None
        self._total_spoofs = 0

    @property
    def spoofing_active(self) -> bool:
        return self._spoofing_active

    @property
    def spoof_count(self) -> int:
        return self._spoof_count

    @property
    def total_spoofs(self) -> int:
        return self._total_spoofs

    def get_state(self) -> SpoofState:
        return SpoofState(
            spoofing_active=self._spoofing_active,
            spoof_count=self._spoof_count,
            tracked_walls=len(self._walls),
            last_spoof_time=self._last_spoof_dt,
        )

    def reset(self) -> None:
        self._walls.clear()
        self._spoof_count = 0
        self._spoofing_active = False
        self._last_spoof_time = None
        self._last_spoof_dt = None

    def update(self, snapshot: OrderBookSnapshot) -> SpoofState:
        """Update wall tracking from a snapshot and return the new state."""
        cfg = self._config
        now = snapshot.timestamp.timestamp()

        present: set[tuple[float, str]] = set()
        for side, levels in ((BID, snapshot.bids), (ASK, snapshot.asks)):
            for level in levels:
                if level.quantity <= cfg.wall_threshold:
                    continue
                key = (level.price, side)
                present.add(key)
                wall = self._walls.get(key)
                if wall is None:
                    self._walls[key] = _TrackedWall(
                        price=level.price,
                        side=side,
                        quantity=level.quantity,
                        first_seen=now,
                        last_seen=now,
                    )
                else:
                    wall.quantity = level.quantity
                    wall.last_seen = now

        for key in [k for k in self._walls if k not in present]:
            wall = self._walls[key]
            lifetime = wall.lifetime
            if cfg.min_dwell_seconds < lifetime <= cfg.detection_window_seconds:
                del self._walls[key]
                self._record_spoof(wall, now, snapshot.timestamp)
            elif lifetime > cfg.detection_window_seconds:
                del self._walls[key]
            elif now - wall.last_seen > cfg.stale_wall_seconds:
                del self._walls[key]

        self._decay(now)
        return self.get_state()

    def _record_spoof(self, wall: _TrackedWall, now: float, at: datetime) -> None:
        cfg = self._config
        # A quiet window resets the counter before the new spoof is counted.
        self._decay(now)
        self._spoof_count += 1
        self._total_spoofs += 1
        self._last_spoof_time = now
        self._last_spoof_dt = at

        logger.info(
            "Spoof wall pulled: side=%s price=%s qty=%.0f lifetime=%.1fs count=%d",
            wall.side,
            wall.price,
            wall.quantity,
            wall.lifetime,
            self._spoof_count,
        )

        if not self._spoofing_active and self._spoof_count >= cfg.max_spoof_count:
            self._spoofing_active = True
            logger.warning("Spoofing detected: %d spoofs within window", self._spoof_count)
            if self._event_bus is not None:
                self._event_bus.publish(
                    EventType.SPOOFING_DETECTED,
                    SpoofEvent(
                        price=wall.price,
                        side=wall.side,
                        quantity=wall.quantity,
                        lifetime_seconds=wall.lifetime,
                        spoof_count=self._spoof_count,
                        timestamp=at,
                    ),
                )

    def _decay(self, now: float) -> None:
        if self._last_spoof_time is None:
            return
        if now - self._last_spoof_time > self._config.spoof_window_seconds:
            if self._spoofing_active:
                logger.info("Spoofing cleared after quiet window")
            self._spoof_count = 0
            self._spoofing_active = False
            self._last_spoof_time = None
