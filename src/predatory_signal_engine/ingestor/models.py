"""Data models for normalized order-book and on-chain inputs."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _finite_float(value: Any, *, name: str) -> float:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{name} is missing or not numeric: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} is not numeric: {value!r}") from e
    if not math.isfinite(result):
        raise ValueError(f"{name} is not finite: {value!r}")
    return result


def _parse_timestamp(value: Any) -> datetime:
    """Accept datetimes, epoch seconds or epoch milliseconds."""
    if value is None:
        return datetime.now(UTC)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    seconds = _finite_float(value, name="timestamp")
    if seconds > 1e11:
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=UTC)


def _parse_quantity(value: Any) -> int:
    """Parse an on-chain integer quantity (decimal int or 0x-hex)."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"value is missing or not an integer: {value!r}")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            result = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError as e:
            raise ValueError(f"value is not an integer: {value!r}") from e
    else:
        raise ValueError(f"value is not an integer: {value!r}")
    if result < 0:
        raise ValueError(f"value must be non-negative: {value!r}")
    return result


def _normalize_address(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


@dataclass(frozen=True)
class BookLevel:
    """A single (price, quantity) order-book level."""

    price: float
    quantity: float

    @classmethod
    def from_raw(cls, raw: Any) -> BookLevel:
        """Create a level from ``[price, qty]`` or ``{"price", "quantity"}``.

        Raises:
            ValueError: If the level is malformed or has non-finite values.
        """
        if isinstance(raw, dict):
            price = raw.get("price")
            qty = raw.get("quantity", raw.get("qty", raw.get("size")))
        elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
            price, qty = raw[0], raw[1]
        else:
            raise ValueError(f"Malformed order-book level: {raw!r}")

        level = cls(
            price=_finite_float(price, name="price"),
            quantity=_finite_float(qty, name="quantity"),
        )
        if level.price <= 0 or level.quantity < 0:
            raise ValueError(f"Order-book level out of range: {raw!r}")
        return level


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Immutable order-book snapshot.

    Bids are held in descending and asks in ascending price order, regardless
    of the order they were supplied in.
    """

    bids: tuple[BookLevel, ...]
    asks: tuple[BookLevel, ...]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "bids", tuple(sorted(self.bids, key=lambda lvl: -lvl.price)))
        object.__setattr__(self, "asks", tuple(sorted(self.asks, key=lambda lvl: lvl.price)))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderBookSnapshot:
        """Create a snapshot from a ``{bids, asks, timestamp}`` mapping.

        Raises:
            ValueError: If any level or the timestamp is malformed.
        """
        bids_raw = data.get("bids")
        asks_raw = data.get("asks")
        if not isinstance(bids_raw, (list, tuple)) or not isinstance(asks_raw, (list, tuple)):
            raise ValueError("Snapshot requires bids and asks sequences")
        return cls(
            bids=tuple(BookLevel.from_raw(b) for b in bids_raw),
            asks=tuple(BookLevel.from_raw(a) for a in asks_raw),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )

    @property
    def best_bid(self) -> float | None:
        """Return the best bid price, or None if no bids."""
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        """Return the best ask price, or None if no asks."""
        return self.asks[0].price if self.asks else None

    @property
    def mid_price(self) -> float | None:
        """Return the midpoint price, or None if either side is empty."""
        if self.best_bid is not None and self.best_ask is not None:
            return (self.best_bid + self.best_ask) / 2
        return None

    @property
    def spread(self) -> float | None:
        """Return the bid-ask spread, or None if missing data."""
        if self.best_bid is not None and self.best_ask is not None:
            return self.best_ask - self.best_bid
        return None

    @property
    def spread_bps(self) -> float | None:
        """Return the spread in basis points of mid, or None if missing data."""
        mid = self.mid_price
        spread = self.spread
        if mid is None or spread is None or mid <= 0:
            return None
        return spread / mid * 10_000

    def bid_volume(self, top_n: int | None = None) -> float:
        levels = self.bids if top_n is None else self.bids[:top_n]
        return sum(lvl.quantity for lvl in levels)

    def ask_volume(self, top_n: int | None = None) -> float:
        levels = self.asks if top_n is None else self.asks[:top_n]
        return sum(lvl.quantity for lvl in levels)


@dataclass(frozen=True)
class VolumeProfile:
    """Externally supplied recent traded volume and VWAP."""

    recent_volume_usd: float
    vwap: float | None = None


@dataclass(frozen=True)
class TradeTick:
    """A single trade from the public trade tape."""

    price: float
    quantity: float
    timestamp: datetime
    trade_id: str | None = None
    is_buyer_maker: bool | None = None

    @property
    def notional(self) -> float:
        return self.price * self.quantity

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradeTick:
        """Create a trade from a normalized trade-feed mapping.

        Raises:
            ValueError: If price, quantity or timestamp are malformed.
        """
        price = _finite_float(data.get("price"), name="price")
        quantity = _finite_float(data.get("quantity", data.get("qty")), name="quantity")
        if price <= 0 or quantity <= 0:
            raise ValueError(f"Trade price and quantity must be positive: {data!r}")
        trade_id = data.get("trade_id", data.get("id"))
        maker = data.get("is_buyer_maker")
        return cls(
            price=price,
            quantity=quantity,
            timestamp=_parse_timestamp(data.get("timestamp")),
            trade_id=str(trade_id) if trade_id is not None else None,
            is_buyer_maker=bool(maker) if maker is not None else None,
        )


@dataclass(frozen=True)
class TransactionEvent:
    """A confirmed token transfer for the watched contract.

    ``value`` is in the token's smallest unit.
    """

    hash: str
    from_address: str | None
    to_address: str | None
    value: int
    token_decimals: int
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionEvent:
        """Create a transfer from an indexer/explorer mapping.

        Raises:
            ValueError: If the hash, value or decimals are malformed.
        """
        tx_hash = str(data.get("hash") or "").strip().lower()
        if not tx_hash:
            raise ValueError("Transaction hash is required")
        decimals_raw = data.get("token_decimals", data.get("tokenDecimal", 18))
        try:
            decimals = int(decimals_raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"token_decimals is not an integer: {decimals_raw!r}") from e
        if decimals < 0:
            raise ValueError("token_decimals must be non-negative")
        return cls(
            hash=tx_hash,
            from_address=_normalize_address(data.get("from_address", data.get("from"))),
            to_address=_normalize_address(data.get("to_address", data.get("to"))),
            value=_parse_quantity(data.get("value")),
            token_decimals=decimals,
            timestamp=_parse_timestamp(data.get("timestamp", data.get("timeStamp"))),
        )


@dataclass(frozen=True)
class PendingTransactionEvent:
    """A pending (mempool) transaction. ``value`` is in wei."""

    hash: str
    from_address: str | None
    to_address: str | None
    value: int
    data: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_payload(self) -> bool:
        """Return True if the transaction carries contract call data."""
        return bool(self.data) and self.data not in ("0x", "0x0")

    @classmethod
    def from_rpc(cls, data: dict[str, Any], *, received_at: datetime | None = None) -> PendingTransactionEvent:
        """Create a pending transaction from a full JSON-RPC transaction object.

        Raises:
            ValueError: If the hash or value are malformed.
        """
        tx_hash = str(data.get("hash") or "").strip().lower()
        if not tx_hash:
            raise ValueError("Transaction hash is required")
        payload = data.get("input", data.get("data"))
        return cls(
            hash=tx_hash,
            from_address=_normalize_address(data.get("from")),
            to_address=_normalize_address(data.get("to")),
            value=_parse_quantity(data.get("value", 0)),
            data=str(payload) if payload is not None else None,
            timestamp=received_at or datetime.now(UTC),
        )
