"""Test that the project setup is working correctly."""

import logging

import predatory_signal_engine
from predatory_signal_engine.config import Settings
from predatory_signal_engine.engine import configure_logging


def test_version() -> None:
    """Test that version is defined."""
    assert predatory_signal_engine.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from predatory_signal_engine import detector
    from predatory_signal_engine import ingestor
    from predatory_signal_engine import state
    from predatory_signal_engine import decision
    from predatory_signal_engine import engine
    from predatory_signal_engine import reporting

    # Just verify imports work
    assert detector is not None
    assert ingestor is not None
    assert state is not None
    assert decision is not None
    assert engine is not None
    assert reporting is not None


def test_configure_logging_sets_package_level() -> None:
    configure_logging(Settings(LOG_LEVEL="DEBUG"))
    assert logging.getLogger("predatory_signal_engine").level == logging.DEBUG
    configure_logging(Settings())
    assert logging.getLogger("predatory_signal_engine").level == logging.INFO
