"""
Exception types raised by the connection supervisor.

Every error a caller can observe derives from `SupervisorError`:
- `ConfigValidationError` for configuration blocks that cannot be used.
- `TransportError` / `ConnectionRejectedError` for broker connection failures.
- `InitialConnectionTimeout` when the first handshake does not finish in time.
- `SubscribeError` once the subscribe retry budget is exhausted.
- `EventDecodeError` for inbound payloads that cannot become an Event.
"""
from typing import Any, Optional


class SupervisorError(Exception):
    """Base class for all errors raised by mqtt_supervisor."""


class ConfigValidationError(SupervisorError, ValueError):
    """A configuration block is missing a field or holds an unusable value."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(message)


class TransportError(SupervisorError):
    """The broker client failed to connect, subscribe, unsubscribe or disconnect."""


class ConnectionRejectedError(TransportError):
    """The broker answered the connect request with a refusal (bad credentials, client id, ...)."""


class InitialConnectionTimeout(SupervisorError, TimeoutError):
    """No connection + subscription was established within the initial connection window."""


class SubscribeError(SupervisorError):
    """All subscribe attempts for a topic failed."""

    def __init__(self, topic: str, attempts: int, last_error: Optional[BaseException]):
        self.topic = topic
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Could not subscribe to (topic: {topic}) after (attempts: {attempts}) due to (err: {last_error})"
        )


class EventDecodeError(SupervisorError):
    """An inbound payload could not be decoded into an Event."""
