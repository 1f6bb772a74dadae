"""
Connection Supervisor.

This module contains `Connection`, which owns one logical broker connection:
- `start()` makes the first handshake (connect + subscribe) synchronous for the caller.
- A background supervisor task then keeps the connection alive, replacing the
  transport wholesale (a new "generation") whenever the heartbeat notices it is gone.
- Inbound messages flow through the `EventDrain` to downstream workers.
- `stop()` unsubscribes and disconnects with a graceful window.

Stopping the supervisor task (the stop event passed to `start()`) and disconnecting
the transport (`stop()`) are independent; a full teardown needs both.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from mqtt_supervisor.config import ConnectionConfig, SupervisorSettings, validate_connection_config
from mqtt_supervisor.drain import EventDrain, EventStream
from mqtt_supervisor.errors import (
    ConnectionRejectedError,
    InitialConnectionTimeout,
    SubscribeError,
    SupervisorError,
    TransportError,
)
from mqtt_supervisor.models import ConnectionState, ConnectOptions
from mqtt_supervisor.resolver import broker_topic, build_connect_options, worker_name
from mqtt_supervisor.subscription import SubscriptionManager
from mqtt_supervisor.transport import AiomqttTransport, Transport, TransportFactory

logger = logging.getLogger(__name__)


class Connection:
    config: ConnectionConfig
    settings: SupervisorSettings
    state: ConnectionState
    last_error: Optional[BaseException]
    generation: int
    _transport: Optional[Transport]
    _options: Optional[ConnectOptions]
    _handshake: Optional[asyncio.Future]
    _supervisor_task: Optional[asyncio.Task]
    _monitor_task: Optional[asyncio.Task]

    """
    Supervises a single broker connection. Logging and configuration are injected
    at construction; the transport factory defaults to the aiomqtt implementation.
    """
    def __init__(
        self,
        config: ConnectionConfig,
        settings: Optional[SupervisorSettings] = None,
        transport_factory: TransportFactory = AiomqttTransport,
        log: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.settings = settings or SupervisorSettings()
        self.log = log or logger
        self._transport_factory = transport_factory

        self.name = worker_name(config)
        self.topic = broker_topic(config)
        self.drain = EventDrain(self.settings.concurrency, self.name, log=self.log)

        self.state = ConnectionState.DISCONNECTED
        self.last_error = None
        self.generation = 0
        self._transport = None
        self._options = None
        self._handshake = None
        self._supervisor_task = None
        self._monitor_task = None

    @classmethod
    def from_config(cls, raw: Dict[str, Any], **kwargs) -> "Connection":
        """Validates a raw configuration document and builds a connection from it."""
        settings = kwargs.pop("settings", None) or SupervisorSettings.from_config(raw)
        return cls(validate_connection_config(raw), settings=settings, **kwargs)

    @property
    def transport(self) -> Optional[Transport]:
        """The transport of the current live generation, if any."""
        return self._transport

    @property
    def broker_uri(self) -> str:
        return self._options.broker_uri if self._options else ""

    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_connected()

    def drain_events(self) -> EventStream:
        """Returns the read-only event stream for downstream workers."""
        return self.drain.drain_events()

    async def start(self, stop_event: asyncio.Event) -> None:
        """
        Launches the supervisor task and waits for the first handshake.

        Returns once connected and subscribed. Raises the connect error reported by
        the supervisor (broker refusal, exhausted retry budget), or
        InitialConnectionTimeout when neither happens within the initial window.
        The supervisor task keeps running after an error until `stop_event` is set.
        """
        if self._supervisor_task is not None and not self._supervisor_task.done():
            raise SupervisorError(f"Connection (worker: {self.name}) is already started")

        self._options = build_connect_options(self.config, self.settings, self.drain.handle_message)
        self._handshake = asyncio.get_running_loop().create_future()
        self._supervisor_task = asyncio.create_task(
            self._supervise(stop_event), name=f"mqtt-supervisor-{self.name}"
        )

        timeout = self.settings.initial_connection_timeout
        try:
            await asyncio.wait_for(asyncio.shield(self._handshake), timeout=timeout)
        except asyncio.TimeoutError:
            # Nobody listens for the handshake any more
            self._handshake.cancel()
            raise InitialConnectionTimeout(
                f"Could not establish mqtt connection for (worker: {self.name}) on (addr: {self.broker_uri}) "
                f"due to initial connection (timeout: {timeout}s)"
            ) from None

        self.log.info(f"Successfully established mqtt connection for (worker: {self.name}) on (addr: {self.broker_uri})")

    async def wait_closed(self) -> None:
        """Waits for the supervisor task to exit (after the stop event is set)."""
        if self._supervisor_task is not None:
            await self._supervisor_task

    async def stop(self) -> None:
        """
        Unsubscribes and disconnects the current transport, then waits out the
        graceful shutdown window. A no-op when the transport is not connected.
        """
        self.log.warning(f"Stopping mqtt (worker: {self.name}) ...")
        transport = self._transport

        if transport is None or not transport.is_connected():
            self.log.warning(f"Connection for mqtt (worker: {self.name}) is already closed.")
            self._set_state(ConnectionState.STOPPED)
            return

        self._set_state(ConnectionState.STOPPING)
        await SubscriptionManager(transport, self.name, self.settings.qos, log=self.log).unsubscribe(self.topic)

        grace = self.settings.graceful_shutdown_timeout
        self.log.warning(f"Stopping mqtt (worker: {self.name}) connection (graceful_timeout: {grace}s)...")
        try:
            await transport.disconnect(grace)
        except TransportError as e:
            self.log.error(f"Could not disconnect mqtt (worker: {self.name}) cleanly due to (err: {e})")

        # Let in-flight deliveries settle before handing control back
        await asyncio.sleep(grace)
        self._set_state(ConnectionState.STOPPED)

    # --- supervisor task ---

    async def _supervise(self, stop_event: asyncio.Event):
        try:
            await self._run_generations(stop_event)
        except Exception as e:
            self.last_error = e
            self.log.error(f"Supervisor for mqtt (worker: {self.name}) crashed due to (err: {e!r})")
            self._set_state(ConnectionState.STOPPED)
            self._reject_handshake(e)

    async def _run_generations(self, stop_event: asyncio.Event):
        failures = 0

        while not stop_event.is_set():
            self.generation += 1
            self._set_state(ConnectionState.CONNECTING)
            self.log.info(
                f"Starting MQTT (connection: {self.name}) on (addr: {self.broker_uri}) (generation: {self.generation})..."
            )

            transport = await self._open_generation()
            if transport is None:
                failures += 1
                if self._budget_exhausted(failures):
                    break
                if await self._cooldown(stop_event):
                    break
                continue

            if stop_event.is_set():
                # Stop arrived while connecting, this generation is never installed
                await self._abandon(transport)
                break

            failures = 0
            self._transport = transport
            self._set_state(ConnectionState.CONNECTED)
            self._resolve_handshake()

            # Exactly one monitor per live generation; it ends before the next one is built
            self._monitor_task = asyncio.create_task(
                self._heartbeat(transport, stop_event), name=f"mqtt-heartbeat-{self.name}-{self.generation}"
            )
            reload = await self._monitor_task
            if not reload:
                break

            self._set_state(ConnectionState.RECONNECTING)
            self.log.warning(
                f"Mqtt (worker: {self.name}) seems not to be connected. Restarting loop in {self.settings.reconnect_cooldown} seconds ..."
            )
            await self._abandon(transport)
            if await self._cooldown(stop_event):
                break

        if stop_event.is_set():
            if self.state not in (ConnectionState.STOPPING, ConnectionState.STOPPED):
                self._set_state(ConnectionState.STOPPING)
            self._reject_handshake(
                SupervisorError(f"Stop signal received before mqtt (worker: {self.name}) finished its handshake")
            )
        self.log.info(f"Supervisor for mqtt (worker: {self.name}) has stopped.")

    async def _open_generation(self) -> Optional[Transport]:
        """Creates, connects and subscribes a brand-new transport. Returns None on failure."""
        transport = self._transport_factory(self._options)

        try:
            await transport.connect()
        except TransportError as e:
            self.last_error = e
            self.log.error(f"Failed to establish connection with mqtt server for (worker: {self.name}) (error: {e})")
            # Transient failures are retried inside the handshake window, refusals are not
            if isinstance(e, ConnectionRejectedError):
                self._reject_handshake(e)
            return None

        if not transport.is_connected():
            self.log.warning(f"Mqtt (worker: {self.name}) reported success but is not connected. Retrying ...")
            await self._abandon(transport)
            return None

        try:
            await SubscriptionManager(transport, self.name, self.settings.qos, log=self.log).subscribe(
                self.topic, self.settings.max_subscribe_attempts
            )
        except SubscribeError as e:
            self.last_error = e
            self.log.error(str(e))
            await self._abandon(transport)
            return None

        return transport

    async def _heartbeat(self, transport: Transport, stop_event: asyncio.Event) -> bool:
        """
        Polls transport liveness. Returns True when the connection was lost
        (reload), False when the stop event fired first.
        """
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.heartbeat_interval)
            except asyncio.TimeoutError:
                if not transport.is_connected():
                    return True
                continue

            self.log.warning(
                f"Received stop signal for mqtt (worker: {self.name}). Will not attempt to restart worker ..."
            )
            return False

    async def _abandon(self, transport: Transport):
        """Closes a generation that is being replaced; errors only get logged."""
        if self._transport is transport:
            self._transport = None
        try:
            await transport.disconnect(self.settings.connect_timeout)
        except TransportError as e:
            self.log.warning(f"Could not close abandoned mqtt (worker: {self.name}) transport: {e}")

    async def _cooldown(self, stop_event: asyncio.Event) -> bool:
        """Sleeps the reconnect cool-down. Returns True if the stop event fired meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.settings.reconnect_cooldown)
        except asyncio.TimeoutError:
            return False
        return True

    def _budget_exhausted(self, failures: int) -> bool:
        limit = self.settings.max_reconnect_attempts
        if limit and failures > limit:
            self.log.error(
                f"Giving up on mqtt (worker: {self.name}) after (failed_attempts: {failures}) (last_error: {self.last_error})"
            )
            self._set_state(ConnectionState.STOPPED)
            self._reject_handshake(self.last_error or SupervisorError("Reconnect budget exhausted"))
            return True
        return False

    def _resolve_handshake(self):
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(None)

    def _reject_handshake(self, error: BaseException):
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)

    def _set_state(self, state: ConnectionState):
        if state != self.state:
            self.log.debug(f"Mqtt (worker: {self.name}) state {self.state.value} -> {state.value}")
            self.state = state
