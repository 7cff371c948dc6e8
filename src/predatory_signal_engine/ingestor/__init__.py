"""Data ingestion layer - Order-book inputs and on-chain whale feeds."""

from predatory_signal_engine.ingestor.mempool_stream import (
    FeedHealth,
    MempoolFeed,
    MempoolStreamError,
    MempoolStreamHandler,
)
from predatory_signal_engine.ingestor.models import (
    BookLevel,
    OrderBookSnapshot,
    PendingTransactionEvent,
    TradeTick,
    TransactionEvent,
    VolumeProfile,
)
from predatory_signal_engine.ingestor.transfers import TokenTransferPoller, TransferSourceError

__all__ = [
    "BookLevel",
    "FeedHealth",
    "MempoolFeed",
    "MempoolStreamError",
    "MempoolStreamHandler",
    "OrderBookSnapshot",
    "PendingTransactionEvent",
    "TokenTransferPoller",
    "TradeTick",
    "TransactionEvent",
    "TransferSourceError",
    "VolumeProfile",
]
