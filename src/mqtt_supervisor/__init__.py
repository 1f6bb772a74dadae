"""
mqtt_supervisor

This package provides a resilient, asynchronous MQTT connection supervisor:
it keeps one broker connection alive across network failures, retries
subscriptions within a bounded budget and hands decoded inbound messages
to application workers through a backpressured queue.
"""
from mqtt_supervisor.config import ConnectionConfig, SupervisorSettings, load_config, validate_connection_config
from mqtt_supervisor.errors import (
    ConfigValidationError,
    ConnectionRejectedError,
    EventDecodeError,
    InitialConnectionTimeout,
    SubscribeError,
    SupervisorError,
    TransportError,
)
from mqtt_supervisor.manager import ConnectionManager
from mqtt_supervisor.models import ConnectionState, Event
from mqtt_supervisor.supervisor import Connection

__version__ = "0.1.0"
