"""Pending-transaction (mempool) WebSocket streaming.

MempoolStreamHandler speaks JSON-RPC ``eth_subscribe`` to one provider and
reconnects with exponential backoff. MempoolFeed supervises a prioritized
list of providers, fails over when one is exhausted and tracks the feed's
health (including data droughts) for the rest of the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from predatory_signal_engine.errors import SignalEngineError, StateInvariantError
from predatory_signal_engine.events import EventBus, EventType
from predatory_signal_engine.ingestor.models import PendingTransactionEvent, _normalize_address

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30.0  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0  # seconds
DEFAULT_STALE_AFTER_SECONDS = 120.0
DEFAULT_HEALTH_CHECK_INTERVAL = 30.0  # seconds

SUBSCRIBE_REQUEST_ID = 1


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class FeedHealth(str, Enum):
    """Health of the whale push feed as seen by the decision path."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    STALE = "STALE"
    FAILED = "FAILED"


@dataclass
class StreamStats:
    messages_received: int = 0
    transactions_received: int = 0
    transactions_filtered: int = 0
    hash_only_messages: int = 0
    malformed_messages: int = 0
    reconnect_count: int = 0
    consecutive_failures: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class FeedHealthChange:
    """Payload of a STREAM_HEALTH_CHANGED event."""

    feed: str
    previous: FeedHealth
    current: FeedHealth
    reason: str
    provider: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "feed": self.feed,
            "previous": self.previous.value,
            "current": self.current.value,
            "reason": self.reason,
            "provider": self.provider,
            "timestamp": self.timestamp.isoformat(),
        }


class MempoolStreamError(SignalEngineError):
    """Base exception for mempool stream errors."""


class MempoolConnectionError(MempoolStreamError):
    """Raised when connecting or subscribing to a provider fails."""


class StreamExhaustedError(MempoolStreamError):
    """Raised when a provider keeps failing past its reconnect attempt limit."""


TransactionCallback = Callable[[PendingTransactionEvent], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]
AddressFilter = Callable[[str | None, str | None], bool]


class MempoolStreamHandler:
    """WebSocket client for one provider's pending-transaction subscription.

    Transactions whose sender and recipient are both outside the address
    filter are dropped before they are parsed.

    Example:
        ```python
        handler = MempoolStreamHandler(
            "wss://provider.example/ws",
            address_filter=detector.is_whale_transaction,
            on_transaction=handle_pending,
        )
        await handler.start()
        ```
    """

    def __init__(
        self,
        url: str,
        *,
        name: str | None = None,
        address_filter: AddressFilter | None = None,
        on_transaction: TransactionCallback | None = None,
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: float = DEFAULT_INITIAL_RECONNECT_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        self._url = url
        self._name = name or url
        self._address_filter = address_filter
        self._on_transaction = on_transaction
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._subscribe_timeout = subscribe_timeout

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()
        self._subscription_id: str | None = None

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Mempool stream %s state: %s -> %s", self._name, old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise MempoolConnectionError(f"Failed to connect to {self._name}: {e}") from e

        try:
            self._subscription_id = await self._subscribe(ws)
        except Exception:
            with contextlib.suppress(Exception):
                await ws.close()
            raise

        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        self._stats.consecutive_failures = 0
        logger.info("Subscribed to pending transactions on %s (id=%s)", self._name, self._subscription_id)
        return ws

    async def _subscribe(self, ws: ClientConnection) -> str:
        request = {
            "jsonrpc": "2.0",
            "id": SUBSCRIBE_REQUEST_ID,
            "method": "eth_subscribe",
            "params": ["newPendingTransactions", True],
        }
        await ws.send(json.dumps(request))
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self._subscribe_timeout)
        except TimeoutError as e:
            raise MempoolConnectionError(f"Subscription to {self._name} timed out") from e

        try:
            response = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise MempoolConnectionError(f"Invalid subscription response from {self._name}") from e

        if not isinstance(response, dict) or response.get("error"):
            error = response.get("error") if isinstance(response, dict) else response
            raise MempoolConnectionError(f"Subscription rejected by {self._name}: {error}")
        result = response.get("result")
        if not isinstance(result, str) or not result:
            raise MempoolConnectionError(f"Subscription to {self._name} returned no id")
        return result

    async def _handle_message(self, message: str | bytes) -> None:
        self._stats.messages_received += 1
        self._stats.last_message_time = time.time()
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self._stats.malformed_messages += 1
            logger.warning("Invalid JSON message on mempool stream %s", self._name)
            return

        if not isinstance(data, dict) or data.get("method") != "eth_subscription":
            logger.debug("Ignoring non-subscription message on %s", self._name)
            return

        params = data.get("params")
        result = params.get("result") if isinstance(params, dict) else None
        if isinstance(result, str):
            # Provider ignored the full-transaction flag.
            self._stats.hash_only_messages += 1
            return
        if not isinstance(result, dict):
            self._stats.malformed_messages += 1
            return

        if self._address_filter is not None and not self._address_filter(
            _normalize_address(result.get("from")),
            _normalize_address(result.get("to")),
        ):
            self._stats.transactions_filtered += 1
            return

        try:
            tx = PendingTransactionEvent.from_rpc(result, received_at=datetime.now(UTC))
        except ValueError as e:
            self._stats.malformed_messages += 1
            logger.warning("Failed to parse pending transaction on %s: %s", self._name, e)
            return

        self._stats.transactions_received += 1
        if self._on_transaction:
            try:
                await self._on_transaction(tx)
            except StateInvariantError:
                raise
            except Exception as e:
                logger.error("Error in transaction callback for %s: %s", tx.hash, e)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    continue
                await self._handle_message(message)
        except websockets.ConnectionClosed as e:
            logger.warning("Mempool stream %s connection closed: %s", self._name, e)
            raise

    async def start(self) -> None:
        """Run the connect/listen loop until stopped.

        Raises:
            StreamExhaustedError: After ``max_reconnect_attempts`` consecutive
                failed connection attempts.
        """
        if self._running:
            raise RuntimeError("Mempool stream already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        try:
            while self._running and not self._stop_event.is_set():
                try:
                    self._ws = await self._connect()
                    delay = self._initial_reconnect_delay
                    await self._listen(self._ws)
                except StateInvariantError:
                    raise
                except Exception as e:
                    self._stats.reconnect_count += 1
                    self._stats.consecutive_failures += 1
                    self._stats.last_error = str(e)
                    if self._stats.consecutive_failures > self._max_reconnect_attempts:
                        logger.error(
                            "Mempool stream %s exhausted after %d attempts: %s",
                            self._name,
                            self._stats.consecutive_failures,
                            e,
                        )
                        raise StreamExhaustedError(
                            f"{self._name} failed {self._stats.consecutive_failures} times: {e}"
                        ) from e
                    await self._set_state(ConnectionState.RECONNECTING)
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    delay = min(self._max_reconnect_delay, delay * 2)
                finally:
                    with contextlib.suppress(Exception):
                        if self._ws:
                            await self._ws.close()
                    self._ws = None
        finally:
            self._running = False
            await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()


HandlerFactory = Callable[..., MempoolStreamHandler]


class MempoolFeed:
    """Prioritized, supervised set of mempool providers.

    Providers are tried in order; when one is exhausted the next takes
    over. When every provider is exhausted the feed is FAILED until it is
    restarted. A feed that stays connected but receives nothing for
    ``stale_after_seconds`` is STALE.
    """

    def __init__(
        self,
        provider_urls: Sequence[str],
        *,
        address_filter: AddressFilter | None = None,
        on_transaction: TransactionCallback | None = None,
        event_bus: EventBus | None = None,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        handler_factory: HandlerFactory = MempoolStreamHandler,
        clock: Callable[[], float] = time.time,
        **handler_options: Any,
    ) -> None:
        if not provider_urls:
            raise ValueError("At least one mempool provider URL is required")
        self._provider_urls = list(provider_urls)
        self._address_filter = address_filter
        self._on_transaction = on_transaction
        self._event_bus = event_bus
        self._stale_after = stale_after_seconds
        self._health_check_interval = health_check_interval
        self._handler_factory = handler_factory
        self._clock = clock
        self._handler_options = handler_options

        self._health = FeedHealth.DEGRADED
        self._active_index: int | None = None
        self._handler: MempoolStreamHandler | None = None
        self._failovers = 0
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def health(self) -> FeedHealth:
        return self._health

    @property
    def active_provider(self) -> str | None:
        return self._handler.name if self._handler else None

    @property
    def failovers(self) -> int:
        return self._failovers

    @property
    def handler(self) -> MempoolStreamHandler | None:
        return self._handler

    async def start(self) -> None:
        """Spawn the supervisor and health monitor tasks."""
        if self._running:
            raise RuntimeError("Mempool feed already running")
        self._running = True
        self._stop_event = asyncio.Event()
        self._failovers = 0
        self._set_health(FeedHealth.DEGRADED, "starting")
        self._tasks = [
            asyncio.create_task(self.run(), name="mempool-feed"),
            asyncio.create_task(self._monitor_health(), name="mempool-health"),
        ]

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._handler:
            await self._handler.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

    async def run(self) -> None:
        """Run providers in priority order until stopped or all are exhausted."""
        for index, url in enumerate(self._provider_urls):
            if not self._running:
                return
            self._active_index = index
            self._handler = self._handler_factory(
                url,
                name=f"provider-{index}",
                address_filter=self._address_filter,
                on_transaction=self._on_transaction,
                on_state_change=self._on_connection_state,
                **self._handler_options,
            )
            try:
                await self._handler.start()
            except StreamExhaustedError as e:
                if index + 1 < len(self._provider_urls):
                    self._failovers += 1
                    logger.warning("Failing over from %s to provider-%d: %s", url, index + 1, e)
                    self._set_health(FeedHealth.DEGRADED, f"failover: {e}")
                    continue
                self._set_health(FeedHealth.FAILED, f"all providers exhausted: {e}")
                return
            if not self._running:
                return

    def check_health(self, now: float | None = None) -> FeedHealth:
        """Re-evaluate staleness against the active handler's last message time."""
        if self._health == FeedHealth.FAILED or self._handler is None:
            return self._health
        if self._handler.state != ConnectionState.CONNECTED:
            return self._health

        now = now if now is not None else self._clock()
        last = self._handler.stats.last_message_time or self._handler.stats.connected_since
        if last is not None and now - last > self._stale_after:
            self._set_health(FeedHealth.STALE, f"no data for {now - last:.0f}s")
        elif self._health == FeedHealth.STALE:
            self._set_health(self._connected_health(), "data resumed")
        return self._health

    async def _monitor_health(self) -> None:
        while self._running and self._stop_event and not self._stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._health_check_interval)
            if self._running:
                self.check_health()

    async def _on_connection_state(self, state: ConnectionState) -> None:
        if self._health == FeedHealth.FAILED:
            return
        if state == ConnectionState.CONNECTED:
            self._set_health(self._connected_health(), "connected")
        elif state == ConnectionState.RECONNECTING:
            self._set_health(FeedHealth.DEGRADED, "reconnecting")

    def _connected_health(self) -> FeedHealth:
        return FeedHealth.HEALTHY if self._active_index == 0 else FeedHealth.DEGRADED

    def _set_health(self, new_health: FeedHealth, reason: str) -> None:
        if new_health == self._health:
            return
        old = self._health
        self._health = new_health
        log = logger.error if new_health == FeedHealth.FAILED else logger.warning
        log("Mempool feed health: %s -> %s (%s)", old.value, new_health.value, reason)
        if self._event_bus is not None:
            self._event_bus.publish(
                EventType.STREAM_HEALTH_CHANGED,
                FeedHealthChange(
                    feed="mempool",
                    previous=old,
                    current=new_health,
                    reason=reason,
                    provider=self.active_provider,
                ),
            )
