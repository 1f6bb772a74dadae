"""
Named connection registry used to plug connections into a larger runtime.
"""
import asyncio
import logging
from typing import Dict, List

from mqtt_supervisor.supervisor import Connection

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Holds connections by name and starts/stops them together.
    All connections share the manager's stop event.
    """
    def __init__(self):
        self.stop_event = asyncio.Event()
        self._connections: Dict[str, Connection] = {}

    def register(self, name: str, connection: Connection) -> None:
        if name in self._connections:
            raise ValueError(f"Connection (name: {name}) is already registered")
        self._connections[name] = connection
        logger.info(f"Registered connection (name: {name})")

    def get(self, name: str) -> Connection:
        try:
            return self._connections[name]
        except KeyError:
            raise KeyError(f"Connection (name: {name}) is not registered") from None

    def names(self) -> List[str]:
        return list(self._connections)

    async def start_all(self) -> None:
        """Starts every connection in registration order. The first failure propagates."""
        for name, connection in self._connections.items():
            logger.info(f"Starting connection (name: {name}) ...")
            await connection.start(self.stop_event)

    async def stop_all(self) -> None:
        """Signals every supervisor to stop, then disconnects connections in reverse order."""
        self.stop_event.set()
        for name, connection in reversed(list(self._connections.items())):
            try:
                await connection.stop()
            except Exception as e:
                logger.error(f"Error while stopping connection (name: {name}): {e}")

        await asyncio.gather(
            *(connection.wait_closed() for connection in self._connections.values()),
            return_exceptions=True,
        )
        logger.info("All connections stopped.")
