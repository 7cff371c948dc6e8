"""Redis Streams mirror of the event bus.

RedisEventPublisher subscribes to every event on the bus and appends each
one to the stream ``{prefix}:{event_type}`` as a JSON document. Publishing
from the bus is non-blocking: events are queued and written by a
background task, so a slow or unreachable Redis never stalls the
order-book path.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from redis.asyncio import Redis
from redis.exceptions import RedisError

from predatory_signal_engine.events import Event, EventBus

logger = logging.getLogger(__name__)

DEFAULT_STREAM_PREFIX = "predatory"
DEFAULT_STREAM_MAXLEN = 10_000
DEFAULT_QUEUE_SIZE = 10_000


def _json_default(value: object) -> object:
    """Serialize event payload values that stdlib json can't encode."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass
class PublisherStats:
    queued: int = 0
    written: int = 0
    dropped: int = 0
    write_errors: int = 0


class RedisEventPublisher:
    """Mirrors bus events into Redis Streams.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        publisher = RedisEventPublisher(redis, event_bus=bus)
        await publisher.start()
        ...
        await publisher.stop()
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        event_bus: EventBus,
        prefix: str = DEFAULT_STREAM_PREFIX,
        maxlen: int = DEFAULT_STREAM_MAXLEN,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._redis = redis
        self._event_bus = event_bus
        self._prefix = prefix
        self._maxlen = maxlen
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self._stats = PublisherStats()
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stream_key(self, event: Event) -> str:
        return f"{self._prefix}:{event.event_type.value}"

    async def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Event publisher already running")
        self._event_bus.subscribe(None, self._enqueue)
        self._task = asyncio.create_task(self._drain(), name="redis-event-publisher")
        logger.info("Mirroring events to Redis streams %s:*", self._prefix)

    async def stop(self) -> None:
        """Stop mirroring. Queued events that were not yet written are discarded."""
        self._event_bus.unsubscribe(None, self._enqueue)
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        discarded = self._queue.qsize()
        while not self._queue.empty():
            self._queue.get_nowait()
        if discarded:
            logger.info("Discarded %d unpublished events on shutdown", discarded)

    async def publish(self, event: Event) -> str:
        """Write one event to its stream. Returns the stream entry id."""
        data = json.dumps(event.to_dict(), default=_json_default)
        entry_id = await self._redis.xadd(
            self.stream_key(event),
            {"data": data},
            maxlen=self._maxlen,
            approximate=True,
        )
        self._stats.written += 1
        return entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)

    def _enqueue(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
            self._stats.queued += 1
        except asyncio.QueueFull:
            self._stats.dropped += 1
            logger.warning("Event queue full, dropping %s", event.event_type.value)

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.publish(event)
            except (RedisError, OSError, TypeError, ValueError) as e:
                self._stats.write_errors += 1
                logger.warning("Failed to publish %s to Redis: %s", event.event_type.value, e)
            finally:
                self._queue.task_done()
