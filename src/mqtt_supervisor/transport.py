"""
Broker Transport.

This module is responsible for:
- Defining the narrow capability the supervisor drives (`Transport`).
- Wrapping one `aiomqtt.Client` per connection generation (`AiomqttTransport`).
- Running the listener task that hands every inbound message to the registered handler.
- Reporting liveness: once the message iteration breaks the transport is no longer connected.
"""
import asyncio
import logging
from typing import Callable, Optional, Protocol, runtime_checkable

import aiomqtt

from mqtt_supervisor.errors import ConnectionRejectedError, TransportError
from mqtt_supervisor.models import ConnectOptions

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """What the supervisor needs from a broker client."""

    async def connect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    async def subscribe(self, topic: str, qos: int = 0) -> None:
        ...

    async def unsubscribe(self, topic: str) -> None:
        ...

    async def disconnect(self, timeout: float) -> None:
        ...


TransportFactory = Callable[[ConnectOptions], Transport]


class AiomqttTransport:
    options: ConnectOptions
    _client: aiomqtt.Client
    _connected: bool
    _closing: bool
    _delivering: bool
    _listener_task: Optional[asyncio.Task]

    """
    One broker connection generation backed by aiomqtt.
    Instances are never reused: the supervisor builds a new one for every reconnect.
    """
    def __init__(self, options: ConnectOptions):
        self.options = options
        # Empty credentials mean an anonymous connection
        self._client = aiomqtt.Client(
            hostname=options.host,
            port=options.port,
            identifier=options.client_id,
            username=options.username or None,
            password=options.password or None,
            transport=options.transport,
            timeout=options.connect_timeout,
            keepalive=options.keepalive,
        )
        self._connected = False
        self._closing = False
        self._delivering = False
        self._listener_task = None

    async def connect(self) -> None:
        try:
            await self._client.__aenter__()
        except aiomqtt.MqttCodeError as e:
            raise ConnectionRejectedError(
                f"Broker at {self.options.broker_uri} refused connection for (client_id: {self.options.client_id}): {e}"
            ) from e
        except (aiomqtt.MqttError, OSError) as e:
            raise TransportError(
                f"Failed to establish connection with mqtt server at {self.options.broker_uri} (error: {e})"
            ) from e

        self._connected = True
        self._listener_task = asyncio.create_task(
            self._listen(), name=f"mqtt-listener-{self.options.client_id}"
        )

    def is_connected(self) -> bool:
        return self._connected

    async def subscribe(self, topic: str, qos: int = 0) -> None:
        try:
            await self._client.subscribe(topic, qos=qos)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Subscribe to (topic: {topic}) failed: {e}") from e

    async def unsubscribe(self, topic: str) -> None:
        try:
            await self._client.unsubscribe(topic)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Unsubscribe from (topic: {topic}) failed: {e}") from e

    async def disconnect(self, timeout: float) -> None:
        """
        Stops the listener and closes the connection. A message already handed to
        the handler gets up to `timeout` seconds to be delivered before the listener
        is cancelled; closing the client is bounded by the same timeout.
        """
        self._connected = False
        self._closing = True
        listener, self._listener_task = self._listener_task, None
        if listener is not None:
            if self._delivering:
                await asyncio.wait({listener}, timeout=timeout)
            if not listener.done():
                listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        try:
            await asyncio.wait_for(self._client.__aexit__(None, None, None), timeout=timeout or None)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Disconnect did not finish within {timeout}s") from e
        except aiomqtt.MqttError as e:
            raise TransportError(f"Disconnect failed: {e}") from e

    async def _listen(self):
        """Delivers inbound messages to the handler until the connection breaks."""
        handler = self.options.message_handler
        try:
            async for message in self._client.messages:
                # Awaiting the handler is what applies backpressure to the broker connection
                self._delivering = True
                try:
                    await handler(str(message.topic), message.payload)
                finally:
                    self._delivering = False
                if self._closing:
                    break
        except aiomqtt.MqttError as e:
            logger.warning(f"Message listener for (client_id: {self.options.client_id}) stopped: {e}")
        except Exception as e:
            logger.error(f"Message handler for (client_id: {self.options.client_id}) failed, dropping connection: {e}")
        finally:
            self._connected = False

