"""
Pytest Configuration and Fixtures for the mqtt_supervisor project.

This module provides an in-memory fake of the broker transport so the
supervisor can be exercised without a running MQTT broker, plus fast
supervisor settings and a valid configuration document.
"""

import asyncio
import sys
import logging
from typing import Callable, List, Optional

import pytest

from mqtt_supervisor.config import SupervisorSettings
from mqtt_supervisor.errors import TransportError
from mqtt_supervisor.models import ConnectOptions


# --- Fake Transport ---

class FakeTransport:
    """
    One fake connection generation. Outcomes are scripted on the owning FakeBroker:
    every entry in its outcome lists is consumed by one call (None = success).
    """
    def __init__(self, broker: "FakeBroker", options: ConnectOptions):
        self.broker = broker
        self.options = options
        self.connected = False
        self.calls: List[str] = []

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.broker.hang_connect:
            await self.broker.release.wait()
            raise TransportError("connect aborted")
        outcome = self.broker.connect_outcomes.pop(0) if self.broker.connect_outcomes else None
        if outcome is not None:
            raise outcome
        self.connected = not self.broker.report_disconnected
        if self.broker.on_connect is not None:
            self.broker.on_connect()

    def is_connected(self) -> bool:
        return self.connected

    async def subscribe(self, topic: str, qos: int = 0) -> None:
        self.calls.append(f"subscribe:{topic}")
        self.broker.subscribe_calls += 1
        outcome = self.broker.subscribe_outcomes.pop(0) if self.broker.subscribe_outcomes else None
        if outcome is not None:
            raise outcome

    async def unsubscribe(self, topic: str) -> None:
        self.calls.append(f"unsubscribe:{topic}")
        if self.broker.unsubscribe_error is not None:
            raise self.broker.unsubscribe_error

    async def disconnect(self, timeout: float) -> None:
        self.calls.append("disconnect")
        self.connected = False
        if self.broker.disconnect_error is not None:
            raise self.broker.disconnect_error

    def drop(self):
        """Simulates the broker connection going away."""
        self.connected = False

    async def deliver(self, topic: str, payload) -> None:
        """Simulates an inbound message from the broker."""
        await self.options.message_handler(topic, payload)


class FakeBroker:
    """Transport factory handing out (and remembering) FakeTransport generations."""
    def __init__(
        self,
        connect_outcomes: Optional[list] = None,
        subscribe_outcomes: Optional[list] = None,
        hang_connect: bool = False,
        report_disconnected: bool = False,
    ):
        self.connect_outcomes = list(connect_outcomes or [])
        self.subscribe_outcomes = list(subscribe_outcomes or [])
        self.hang_connect = hang_connect
        self.report_disconnected = report_disconnected
        self.unsubscribe_error: Optional[Exception] = None
        self.disconnect_error: Optional[Exception] = None
        self.on_connect: Optional[Callable[[], None]] = None
        self.subscribe_calls = 0
        self.release = asyncio.Event()
        self.transports: List[FakeTransport] = []

    def __call__(self, options: ConnectOptions) -> FakeTransport:
        transport = FakeTransport(self, options)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def fake_broker():
    """Returns a builder for scripted FakeBroker transport factories."""
    return FakeBroker


@pytest.fixture
def fast_settings():
    """Supervisor settings scaled down to milliseconds."""
    return SupervisorSettings(
        initial_connection_timeout=1.0,
        heartbeat_interval=0.01,
        reconnect_cooldown=0.01,
        max_subscribe_attempts=3,
        max_reconnect_attempts=0,
        graceful_shutdown_timeout=0.05,
        connect_timeout=0.1,
        concurrency=4,
    )


@pytest.fixture
def raw_config():
    """A valid configuration document."""
    return {
        "name": "sensors-worker",
        "connection": {
            "network": "tcp",
            "address": "10.0.0.1:1883",
            "username": "",
            "password": "",
            "clientId": "cl1",
            "topic": "sensors/1",
        },
    }


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
