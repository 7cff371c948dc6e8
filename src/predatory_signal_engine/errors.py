"""Exceptions shared across engine components."""


class SignalEngineError(Exception):
    """Base exception for signal engine errors."""


class StateInvariantError(SignalEngineError):
    """Raised when the single-writer discipline of the system state is broken.

    This is never recovered from inside the engine; it indicates a
    concurrency bug in the caller.
    """
