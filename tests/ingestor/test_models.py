"""Tests for ingestor data models."""

from datetime import UTC, datetime

import pytest

from predatory_signal_engine.ingestor.models import (
    BookLevel,
    OrderBookSnapshot,
    PendingTransactionEvent,
    TradeTick,
    TransactionEvent,
)


class TestBookLevel:
    """Tests for BookLevel parsing."""

    def test_from_list(self) -> None:
        level = BookLevel.from_raw(["0.0123", "1500"])
        assert level.price == pytest.approx(0.0123)
        assert level.quantity == 1500.0

    def test_from_dict(self) -> None:
        level = BookLevel.from_raw({"price": 1.5, "qty": 20})
        assert level == BookLevel(price=1.5, quantity=20.0)

    @pytest.mark.parametrize(
        "raw",
        [
            ["abc", "1"],
            [1.0],
            [float("nan"), 1],
            [1.0, float("inf")],
            [0, 1],
            [1.0, -1],
            None,
            [True, 1],
        ],
    )
    def test_malformed_levels_raise(self, raw: object) -> None:
        with pytest.raises(ValueError):
            BookLevel.from_raw(raw)


class TestOrderBookSnapshot:
    """Tests for OrderBookSnapshot."""

    def test_levels_are_sorted(self) -> None:
        snapshot = OrderBookSnapshot.from_dict(
            {
                "bids": [[99.0, 1], [100.0, 2], [98.0, 3]],
                "asks": [[103.0, 1], [101.0, 2]],
                "timestamp": 1_700_000_000_000,
            }
        )
        assert [lvl.price for lvl in snapshot.bids] == [100.0, 99.0, 98.0]
        assert [lvl.price for lvl in snapshot.asks] == [101.0, 103.0]
        assert snapshot.timestamp == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_derived_prices(self) -> None:
        snapshot = OrderBookSnapshot.from_dict({"bids": [[99.0, 1]], "asks": [[101.0, 1]]})
        assert snapshot.best_bid == 99.0
        assert snapshot.best_ask == 101.0
        assert snapshot.mid_price == 100.0
        assert snapshot.spread == 2.0
        assert snapshot.spread_bps == pytest.approx(200.0)

    def test_empty_side(self) -> None:
        snapshot = OrderBookSnapshot.from_dict({"bids": [], "asks": [[101.0, 1]]})
        assert snapshot.best_bid is None
        assert snapshot.mid_price is None
        assert snapshot.spread_bps is None
        assert snapshot.bid_volume() == 0

    def test_volume_over_top_levels(self) -> None:
        snapshot = OrderBookSnapshot.from_dict(
            {"bids": [[100 - i, 10] for i in range(5)], "asks": [[101 + i, 1] for i in range(5)]}
        )
        assert snapshot.bid_volume() == 50
        assert snapshot.bid_volume(2) == 20
        assert snapshot.ask_volume(3) == 3

    def test_missing_sides_raise(self) -> None:
        with pytest.raises(ValueError):
            OrderBookSnapshot.from_dict({"bids": [[1, 1]]})

    def test_malformed_level_raises(self) -> None:
        with pytest.raises(ValueError):
            OrderBookSnapshot.from_dict({"bids": [["x", 1]], "asks": []})


class TestTradeTick:
    """Tests for TradeTick."""

    def test_from_dict(self) -> None:
        trade = TradeTick.from_dict(
            {"price": "2.5", "qty": "4", "timestamp": 1_700_000_000, "id": 77, "is_buyer_maker": 1}
        )
        assert trade.notional == 10.0
        assert trade.trade_id == "77"
        assert trade.is_buyer_maker is True

    def test_non_positive_quantity_raises(self) -> None:
        with pytest.raises(ValueError):
            TradeTick.from_dict({"price": 1, "quantity": 0})


class TestTransactionEvent:
    """Tests for TransactionEvent."""

    def test_from_dict_with_hex_value(self) -> None:
        tx = TransactionEvent.from_dict(
            {
                "hash": "0xABC",
                "from": "0xAAAA",
                "to": "0xBBBB",
                "value": "0xde0b6b3a7640000",
                "tokenDecimal": "18",
                "timeStamp": "1700000000",
            }
        )
        assert tx.hash == "0xabc"
        assert tx.from_address == "0xaaaa"
        assert tx.to_address == "0xbbbb"
        assert tx.value == 10**18
        assert tx.token_decimals == 18

    def test_missing_hash_raises(self) -> None:
        with pytest.raises(ValueError):
            TransactionEvent.from_dict({"value": 1})

    def test_negative_value_raises(self) -> None:
        with pytest.raises(ValueError):
            TransactionEvent.from_dict({"hash": "0x1", "value": -5})


class TestPendingTransactionEvent:
    """Tests for PendingTransactionEvent."""

    def test_from_rpc(self) -> None:
        received = datetime(2024, 1, 1, tzinfo=UTC)
        tx = PendingTransactionEvent.from_rpc(
            {"hash": "0xF00", "from": "0xA", "to": "0xB", "value": "0x10", "input": "0xa9059cbb"},
            received_at=received,
        )
        assert tx.hash == "0xf00"
        assert tx.value == 16
        assert tx.has_payload is True
        assert tx.timestamp == received

    def test_plain_transfer_has_no_payload(self) -> None:
        tx = PendingTransactionEvent.from_rpc({"hash": "0x1", "value": "0x0", "input": "0x"})
        assert tx.has_payload is False

    def test_contract_creation_has_no_recipient(self) -> None:
        tx = PendingTransactionEvent.from_rpc({"hash": "0x1", "from": "0xA", "to": None})
        assert tx.to_address is None
        assert tx.value == 0
