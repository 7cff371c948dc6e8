"""Data models for the whale gating state machine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum


class SystemState(str, Enum):
    """Process-wide trading posture."""

    PATIENT = "PATIENT"
    HUNTING = "HUNTING"
    STRIKE = "STRIKE"
    DEFENSIVE = "DEFENSIVE"


@dataclass(frozen=True)
class StateTransition:
    """One entry of the append-only state history."""

    timestamp: datetime
    from_state: SystemState
    to_state: SystemState
    cause: str

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "from": self.from_state.value,
            "to": self.to_state.value,
            "cause": self.cause,
        }


@dataclass(frozen=True)
class WhaleDump:
    """A qualifying whale deposit to an exchange."""

    tx_hash: str
    whale_address: str
    token_amount: Decimal
    estimated_value: Decimal
    target_exchange: str | None
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "tx_hash": self.tx_hash,
            "whale_address": self.whale_address,
            "token_amount": str(self.token_amount),
            "estimated_value": str(self.estimated_value),
            "target_exchange": self.target_exchange,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SystemSnapshot:
    """Consistent read-only view of the state machine.

    Attributes:
        state: Current state.
        allow_trading: True only while hunting inside an open window.
        hunt_started_at: When the current hunt started, if hunting.
        hunt_expires_at: When the current hunt expires, if hunting.
        hunt_time_remaining: Time left in the hunt window, zero otherwise.
        valid_dump_count: Dumps still inside the validity window.
        defensive_reason: Reason given when DEFENSIVE was entered.
        timestamp: When the snapshot was taken.
    """

    state: SystemState
    allow_trading: bool
    hunt_started_at: datetime | None
    hunt_expires_at: datetime | None
    hunt_time_remaining: timedelta
    valid_dump_count: int
    defensive_reason: str | None
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "allow_trading": self.allow_trading,
            "hunt_started_at": self.hunt_started_at.isoformat() if self.hunt_started_at else None,
            "hunt_expires_at": self.hunt_expires_at.isoformat() if self.hunt_expires_at else None,
            "hunt_time_remaining_seconds": self.hunt_time_remaining.total_seconds(),
            "valid_dump_count": self.valid_dump_count,
            "defensive_reason": self.defensive_reason,
            "timestamp": self.timestamp.isoformat(),
        }
