"""
Event Drain: the hand-off between the broker connection and application workers.

This module is responsible for:
- Turning every inbound (topic, payload) into an `Event`.
- Dropping (after logging) payloads that cannot be decoded.
- Putting events into a bounded `asyncio.Queue`. A full queue suspends the
  transport's listener until a consumer makes room (backpressure).
- Exposing only the consuming end of the queue to downstream workers.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Optional

from mqtt_supervisor.errors import EventDecodeError
from mqtt_supervisor.models import Event

logger = logging.getLogger(__name__)


class EventStream:
    """
    Read-only view of the drain queue handed to downstream workers.
    """
    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Event:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            yield await self._queue.get()


class EventDrain:
    worker_name: str
    _queue: asyncio.Queue

    def __init__(self, capacity: int, worker_name: str, log: Optional[logging.Logger] = None):
        if capacity < 1:
            raise ValueError(f"Drain queue capacity must be at least 1 (capacity: {capacity})")
        self.worker_name = worker_name
        self.log = log or logger
        self._queue = asyncio.Queue(maxsize=capacity)

    async def handle_message(self, topic: str, payload: Any) -> None:
        """
        The message handler registered with the transport.
        Blocks (awaits) while the queue is full.
        """
        # 1. Log receipt
        self.log.info(
            f"Received new mqtt (worker: {self.worker_name}) - (message: {payload!r}) for (topic: {topic}). Building event now ..."
        )

        # 2. Decode, a bad payload only costs us this one message
        try:
            event = Event.from_message(topic, payload)
        except EventDecodeError as e:
            self.log.error(f"Could not handle received event due to (err: {e})")
            return

        self.log.info(f"Event successfully created (data: {event.data})")

        # 3. Enqueue, waiting for room when consumers are behind
        if self._queue.full():
            self.log.warning(
                f"Event queue for (worker: {self.worker_name}) is full (capacity: {self._queue.maxsize}). Waiting for consumers ..."
            )
        await self._queue.put(event)

    def drain_events(self) -> EventStream:
        """Returns the consuming end of the queue for downstream workers."""
        return EventStream(self._queue)
