"""
Topic subscription with a bounded retry budget.
"""
import logging
from typing import Optional

from mqtt_supervisor.errors import SubscribeError, TransportError
from mqtt_supervisor.transport import Transport

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """
    Subscribes and unsubscribes one worker against an already established transport.
    """
    def __init__(self, transport: Transport, worker_name: str, qos: int = 0, log: Optional[logging.Logger] = None):
        self.transport = transport
        self.worker_name = worker_name
        self.qos = qos
        self.log = log or logger

    async def subscribe(self, topic: str, max_attempts: int) -> None:
        """
        Tries to subscribe up to `max_attempts + 1` times, stopping at the first success.
        Retries are immediate; the broker round trip is the only spacing between them.

        Raises SubscribeError wrapping the last transport error when every attempt fails.
        """
        last_error: Optional[TransportError] = None

        for attempt in range(max_attempts + 1):
            self.log.info(
                f"About to attempt subscribe to mqtt (topic: {topic}) for (worker: {self.worker_name}) -> (retry_attempt: {attempt})"
            )
            try:
                await self.transport.subscribe(topic, self.qos)
            except TransportError as e:
                self.log.error(
                    f"Could not subscribe to (topic: {topic}) for (worker: {self.worker_name}) due to (err: {e}). Retrying ..."
                )
                last_error = e
                continue

            self.log.info(f"Successfully subscribed (worker: {self.worker_name}) on (topic: {topic})!")
            return

        raise SubscribeError(topic, max_attempts + 1, last_error) from last_error

    async def unsubscribe(self, topic: str) -> None:
        """Best-effort unsubscribe, failures are only logged."""
        self.log.warning(f"Unsubscribing from mqtt (worker: {self.worker_name}) (topic: {topic})...")
        try:
            await self.transport.unsubscribe(topic)
        except TransportError as e:
            self.log.error(f"Could not unsubscribe from (topic: {topic}) for (worker: {self.worker_name}) due to (err: {e})")
