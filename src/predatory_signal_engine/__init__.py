"""Predatory Signal Engine.

Fuses order-book microstructure, on-chain whale movement and manipulation
indicators into a single trade authorization.
"""

__version__ = "0.1.0"
