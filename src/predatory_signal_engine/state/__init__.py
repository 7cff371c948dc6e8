"""Whale gating state - Single-writer SystemState ownership."""

from predatory_signal_engine.state.machine import (
    InvalidTransitionError,
    StateMachineConfig,
    WhaleStateMachine,
)
from predatory_signal_engine.state.models import (
    StateTransition,
    SystemSnapshot,
    SystemState,
    WhaleDump,
)

__all__ = [
    "InvalidTransitionError",
    "StateMachineConfig",
    "StateTransition",
    "SystemSnapshot",
    "SystemState",
    "WhaleDump",
    "WhaleStateMachine",
]
