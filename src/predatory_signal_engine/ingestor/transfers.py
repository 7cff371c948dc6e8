"""Confirmed token transfer polling over JSON-RPC.

TokenTransferPoller follows the chain head with ``eth_getLogs`` and turns
ERC-20 ``Transfer`` logs that involve a watched address into
TransactionEvents. It is the confirmed-block complement to the mempool
stream: slower, but it catches whale movements the mempool feed missed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from predatory_signal_engine.errors import SignalEngineError, StateInvariantError
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.mempool_stream import FeedHealth, FeedHealthChange
from predatory_signal_engine.ingestor.models import TransactionEvent

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_MAX_BLOCKS_PER_POLL = 500
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TOKEN_DECIMALS = 18
DEFAULT_FAILURE_THRESHOLD = 3

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = AsyncWeb3.to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))


class TransferSourceError(SignalEngineError):
    """Raised when the RPC source cannot be queried on primary or fallback."""


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_address(topic: Any) -> str:
    # topic may be HexBytes or bytes-like.
    hexed = topic.hex() if hasattr(topic, "hex") else str(topic)
    if hexed.startswith("0x"):
        hexed = hexed[2:]
    return ("0x" + hexed[-40:]).lower()


def _hex_str(value: Any) -> str:
    hexed = value.hex() if hasattr(value, "hex") else str(value)
    return (hexed if hexed.startswith("0x") else "0x" + hexed).lower()


def _log_amount(data: Any) -> int:
    hexed = data.hex() if hasattr(data, "hex") else str(data)
    return int(hexed, 16) if hexed not in ("", "0x") else 0


@dataclass
class PollerStats:
    polls: int = 0
    logs_seen: int = 0
    transfers_emitted: int = 0
    malformed_logs: int = 0
    rpc_failures: int = 0
    failed_polls: int = 0
    consecutive_failures: int = 0
    last_block: int | None = None
    last_success_time: datetime | None = None
    last_error: str | None = None


TransferCallback = Callable[[TransactionEvent], Awaitable[None]]


class TokenTransferPoller:
    """Polls Transfer logs of one token for watched senders and recipients.

    Example:
        ```python
        poller = TokenTransferPoller(
            "https://eth.llamarpc.com",
            token_address="0x...",
            watchlist=settings.whale.watchlist,
            on_transaction=handle_transfer,
        )
        await poller.start()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        token_address: str,
        watchlist: Iterable[str],
        on_transaction: TransferCallback | None = None,
        fallback_rpc_url: str | None = None,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_blocks_per_poll: int = DEFAULT_MAX_BLOCKS_PER_POLL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        start_block: int | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        event_bus: EventBus | None = None,
    ) -> None:
        self._token_address = token_address.lower()
        self._watchlist = sorted({a.lower() for a in watchlist})
        self._on_transaction = on_transaction
        self._token_decimals = token_decimals
        self._poll_interval = poll_interval_seconds
        self._max_blocks = max_blocks_per_poll
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._next_block = start_block
        self._failure_threshold = max(1, failure_threshold)
        self._event_bus = event_bus
        self._health = FeedHealth.HEALTHY

        self._w3: AsyncWeb3[AsyncHTTPProvider] = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._stats = PollerStats()
        self._block_times: dict[int, datetime] = {}
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def stats(self) -> PollerStats:
        return self._stats

    @property
    def next_block(self) -> int | None:
        return self._next_block

    @property
    def health(self) -> FeedHealth:
        """HEALTHY, DEGRADED after a failed poll, FAILED after repeated ones."""
        return self._health

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Execute a web3.eth call on primary, then fallback, with backoff.

        Raises:
            TransferSourceError: If every attempt on every endpoint fails.
        """
        last_error: Exception | None = None
        clients = [("Primary", self._w3)]
        if self._w3_fallback is not None:
            clients.append(("Fallback", self._w3_fallback))

        for label, client in clients:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    method = getattr(client.eth, func_name)
                    return await method(*args, **kwargs)
                except (Web3Exception, OSError, TimeoutError) as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        func_name,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2

        self._stats.rpc_failures += 1
        raise TransferSourceError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def latest_block_number(self) -> int:
        block = await self._execute_with_retry("get_block", "latest")
        return int(block["number"])

    async def _block_time(self, block_number: int) -> datetime:
        cached = self._block_times.get(block_number)
        if cached is not None:
            return cached
        block = await self._execute_with_retry("get_block", block_number)
        ts = datetime.fromtimestamp(int(block["timestamp"]), tz=UTC)
        if len(self._block_times) > self._max_blocks:
            self._block_times.clear()
        self._block_times[block_number] = ts
        return ts

    async def poll_once(self) -> list[TransactionEvent]:
        """Fetch watched transfers from the next unseen block range.

        The first poll starts at the chain head. Each poll covers at most
        ``max_blocks_per_poll`` blocks; a larger backlog is drained over
        subsequent polls.

        Returns:
            The transfers emitted by this poll, in log order.

        Raises:
            TransferSourceError: If the RPC source is unreachable. Repeated
                failures move ``health`` to FAILED.
        """
        try:
            events = await self._poll()
        except TransferSourceError as e:
            self._record_failure(e)
            raise
        self._record_success()
        return events

    async def _poll(self) -> list[TransactionEvent]:
        self._stats.polls += 1
        if not self._watchlist:
            return []

        head = await self.latest_block_number()
        if self._next_block is None:
            self._next_block = head
        if self._next_block > head:
            return []

        from_block = self._next_block
        to_block = min(head, from_block + self._max_blocks - 1)
        topics = [_pad_topic_address(a) for a in self._watchlist]
        base = {
            "address": AsyncWeb3.to_checksum_address(self._token_address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        outbound = await self._execute_with_retry(
            "get_logs", {**base, "topics": [TRANSFER_EVENT_SIGNATURE, topics]}
        )
        inbound = await self._execute_with_retry(
            "get_logs", {**base, "topics": [TRANSFER_EVENT_SIGNATURE, None, topics]}
        )

        seen: set[tuple[str, int]] = set()
        logs: list[dict[str, Any]] = []
        for log in [*outbound, *inbound]:
            entry = dict(log)
            try:
                key = (_hex_str(entry["transactionHash"]), int(entry.get("logIndex") or 0))
            except (KeyError, TypeError, ValueError):
                self._stats.malformed_logs += 1
                continue
            if key not in seen:
                seen.add(key)
                logs.append(entry)
        logs.sort(key=lambda e: (int(e.get("blockNumber") or 0), int(e.get("logIndex") or 0)))
        self._stats.logs_seen += len(logs)

        events: list[TransactionEvent] = []
        for entry in logs:
            event = await self._to_event(entry)
            if event is not None:
                events.append(event)

        self._next_block = to_block + 1
        self._stats.last_block = to_block
        self._stats.transfers_emitted += len(events)
        if events:
            logger.info("Found %d watched transfers in blocks %d-%d", len(events), from_block, to_block)
        return events

    def _record_success(self) -> None:
        self._stats.consecutive_failures = 0
        self._stats.last_success_time = datetime.now(UTC)
        self._set_health(FeedHealth.HEALTHY, "poll succeeded")

    def _record_failure(self, error: TransferSourceError) -> None:
        stats = self._stats
        stats.failed_polls += 1
        stats.consecutive_failures += 1
        stats.last_error = str(error)
        if stats.consecutive_failures >= self._failure_threshold:
            self._set_health(
                FeedHealth.FAILED, f"{stats.consecutive_failures} consecutive poll failures"
            )
        else:
            self._set_health(FeedHealth.DEGRADED, "poll failed")

    def _set_health(self, new_health: FeedHealth, reason: str) -> None:
        if new_health == self._health:
            return
        old = self._health
        self._health = new_health
        log = logger.error if new_health == FeedHealth.FAILED else logger.warning
        log("Transfer poller health: %s -> %s (%s)", old.value, new_health.value, reason)
        if self._event_bus is not None:
            self._event_bus.publish(
                EventType.STREAM_HEALTH_CHANGED,
                FeedHealthChange(feed="transfers", previous=old, current=new_health, reason=reason),
            )

    async def _to_event(self, entry: dict[str, Any]) -> TransactionEvent | None:
        try:
            topics = entry["topics"]
            block_number = int(entry["blockNumber"])
            from_address = _topic_to_address(topics[1])
            to_address = _topic_to_address(topics[2])
            value = _log_amount(entry["data"])
            tx_hash = _hex_str(entry["transactionHash"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            self._stats.malformed_logs += 1
            logger.warning("Skipping malformed transfer log: %s", e)
            return None
        return TransactionEvent(
            hash=tx_hash,
            from_address=from_address,
            to_address=to_address,
            value=value,
            token_decimals=self._token_decimals,
            timestamp=await self._block_time(block_number),
        )

    async def start(self) -> None:
        """Poll until stopped. RPC outages are logged and retried next interval."""
        if self._running:
            raise RuntimeError("Transfer poller already running")
        self._running = True
        self._stop_event = asyncio.Event()
        try:
            while self._running and not self._stop_event.is_set():
                try:
                    events = await self.poll_once()
                except TransferSourceError as e:
                    logger.error(
                        "Transfer poll failed (%d in a row): %s", self._stats.consecutive_failures, e
                    )
                    events = []
                for event in events:
                    if self._on_transaction is None:
                        continue
                    try:
                        await self._on_transaction(event)
                    except StateInvariantError:
                        raise
                    except Exception as e:
                        logger.error("Error in transfer callback for %s: %s", event.hash, e)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
