"""
Data Models shared by the supervisor, the transport and the event drain.

Defines the connection state machine values, the connect options handed
to every transport generation, and the `Event` delivered to consumers.
"""
from dataclasses import dataclass, field, asdict
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Union
from uuid import uuid4

from mqtt_supervisor.errors import EventDecodeError

# (topic, payload) -> awaitable, invoked by the transport for every inbound message
MessageHandler = Callable[[str, Any], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True, kw_only=True)
class ConnectOptions:
    """
    Everything a transport needs to open one connection generation.
    Built once in `Connection.start` and reused for every reconnect.
    """
    broker_uri: str
    host: str
    port: int
    transport: str
    client_id: str
    username: str
    password: str = field(repr=False)
    connect_timeout: float
    keepalive: int
    message_handler: MessageHandler = field(repr=False, compare=False)


@dataclass(frozen=True, kw_only=True)
class Event:
    """A decoded inbound message. Immutable once built."""
    topic: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid4().hex)
    received_at: float = field(default_factory=time.time)

    @classmethod
    def from_message(cls, topic: str, payload: Union[bytes, bytearray, str, None]) -> "Event":
        """
        Decodes a raw broker message into an Event.
        The payload must be a UTF-8 encoded JSON object.
        """
        if payload is None:
            raise EventDecodeError(f"Empty payload received on (topic: {topic})")
        try:
            text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EventDecodeError(f"Payload on (topic: {topic}) is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise EventDecodeError(
                f"Payload on (topic: {topic}) must be a JSON object, got {type(data).__name__}"
            )
        return cls(topic=topic, data=data)

    def to_json(self) -> str:
        """Converts the event to a JSON string."""
        return json.dumps(asdict(self))
