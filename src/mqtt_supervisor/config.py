"""
Configuration Loading and Validation.

This module is responsible for:
- Reading the YAML configuration file.
- Validating the `connection` block before any network activity happens.
- Producing a typed, immutable `ConnectionConfig` from the validated block.
- Producing the `SupervisorSettings` (timeouts, intervals, retry budgets, queue capacity).
"""
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from mqtt_supervisor.errors import ConfigValidationError

logger = logging.getLogger(__name__)

# Transport schemes we know how to hand to the broker client.
AVAILABLE_CONNECTION_TYPES = ("tcp", "ws")

CONCURRENCY_ENV_KEY = "MQTT_SUPERVISOR_MAX_CONCURRENCY"

INTEGER_SETTINGS = ("max_subscribe_attempts", "max_reconnect_attempts", "keepalive", "qos", "concurrency")


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
            return config
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise


@dataclass(frozen=True)
class ConnectionConfig:
    """Validated broker connection block."""
    name: str
    network: str
    address: str
    username: str
    password: str = field(repr=False)
    client_id: str
    topic: str


def _fail(field_name: str, value: Any, message: str) -> ConfigValidationError:
    return ConfigValidationError(field_name, value, f"Could not validate mqtt worker as {message}")


def validate_connection_config(raw: Optional[Dict[str, Any]]) -> ConnectionConfig:
    """
    Validates a raw configuration block and returns the typed connection config.

    Checks run in a fixed order and the first failure is raised as a
    `ConfigValidationError` naming the field and echoing the offending value.
    """
    raw = raw or {}
    data = raw.get("connection")
    if not isinstance(data, dict):
        raise _fail("connection", data, f"connection interface is missing (entry: {data!r})")

    network = data.get("network")
    if not isinstance(network, str):
        raise _fail("network", network, f"connection network is not set. (connection_data: {data!r})")
    if network not in AVAILABLE_CONNECTION_TYPES:
        raise _fail(
            "network", network,
            f"connection network is not valid. (network: {network}) - (available_networks: {list(AVAILABLE_CONNECTION_TYPES)})",
        )

    address = data.get("address")
    if not isinstance(address, str):
        raise _fail("address", address, f"connection address is not set. (connection_data: {data!r})")
    port = address.rsplit(":", 1)[1] if ":" in address else ""
    if len(address) < 5 or not port.isdecimal() or not 0 < int(port) <= 65535:
        raise _fail("address", address, f"connection address is not valid. (address: {address})")

    # Credentials can be empty strings but the keys MUST be present.
    username = data.get("username")
    if not isinstance(username, str):
        raise _fail(
            "username", username,
            f"connection username is not set. Username can be empty but it MUST be set. (username: {username!r})",
        )

    password = data.get("password")
    if not isinstance(password, str):
        raise _fail(
            "password", password,
            f"connection password is not set. Password can be empty but it MUST be set. (password: {password!r})",
        )

    client_id = data.get("clientId")
    if not isinstance(client_id, str):
        raise _fail("clientId", client_id, f"connection clientId is not set. (client_id: {client_id!r})")
    if len(client_id) < 2:
        raise _fail("clientId", client_id, f"connection clientId is not long enough. (client_id: {client_id})")

    topic = data.get("topic")
    if not isinstance(topic, str):
        raise _fail("topic", topic, f"connection topic is not set. (topic: {topic!r})")

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        name = client_id

    return ConnectionConfig(
        name=name,
        network=network,
        address=address,
        username=username,
        password=password,
        client_id=client_id,
        topic=topic,
    )


def concurrency_from_env(env_key: str = CONCURRENCY_ENV_KEY) -> int:
    """Reads a positive concurrency count from the environment, defaulting to the CPU count."""
    value = os.environ.get(env_key)
    if value:
        try:
            count = int(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {env_key}={value!r}")
        else:
            if count > 0:
                return count
            logger.warning(f"Ignoring non-positive {env_key}={value!r}")
    return os.cpu_count() or 1


@dataclass(frozen=True, kw_only=True)
class SupervisorSettings:
    """
    Tunables of the connection supervisor. All durations are in seconds.

    `max_reconnect_attempts` caps consecutive failed connection generations;
    0 means the supervisor retries until it is told to stop.
    """
    initial_connection_timeout: float = 15.0
    heartbeat_interval: float = 2.0
    reconnect_cooldown: float = 2.0
    max_subscribe_attempts: int = 3
    max_reconnect_attempts: int = 0
    graceful_shutdown_timeout: float = 5.0
    connect_timeout: float = 10.0
    keepalive: int = 60
    qos: int = 0
    concurrency: int = field(default_factory=concurrency_from_env)

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigValidationError(f.name, value, f"Supervisor setting {f.name} must be a number (value: {value!r})")
            if f.name in INTEGER_SETTINGS and not isinstance(value, int):
                raise ConfigValidationError(f.name, value, f"Supervisor setting {f.name} must be a whole number (value: {value!r})")
            if f.name in ("max_reconnect_attempts", "max_subscribe_attempts", "qos"):
                if value < 0:
                    raise ConfigValidationError(f.name, value, f"Supervisor setting {f.name} must not be negative (value: {value!r})")
            elif value <= 0:
                raise ConfigValidationError(f.name, value, f"Supervisor setting {f.name} must be positive (value: {value!r})")
        if self.qos > 2:
            raise ConfigValidationError("qos", self.qos, f"Supervisor setting qos must be 0, 1 or 2 (value: {self.qos!r})")

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "SupervisorSettings":
        """Builds settings from the optional `supervisor` block of a configuration document."""
        block = (raw or {}).get("supervisor") or {}
        if not isinstance(block, dict):
            raise ConfigValidationError("supervisor", block, f"Supervisor block must be a mapping (entry: {block!r})")

        known = {f.name for f in fields(cls)}
        unknown = set(block) - known
        if unknown:
            logger.warning(f"Ignoring unknown supervisor settings: {sorted(unknown)}")
        return cls(**{key: value for key, value in block.items() if key in known})
