"""
Broker address resolution.

Pure helpers that derive connection parameters (URI, endpoint, identity,
credentials, topic) from an already validated `ConnectionConfig`.
"""
from typing import Tuple

from mqtt_supervisor.config import ConnectionConfig, SupervisorSettings
from mqtt_supervisor.models import ConnectOptions, MessageHandler

# network name in the config -> transport name understood by aiomqtt
TRANSPORTS = {
    "tcp": "tcp",
    "ws": "websockets",
}

DEFAULT_CONNECT_TIMEOUT = 10


def broker_uri(config: ConnectionConfig, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> str:
    """Full broker uri string (protocol://addr:port?params)."""
    return f"{config.network}://{config.address}?timeout={connect_timeout:g}s"


def broker_endpoint(config: ConnectionConfig) -> Tuple[str, int]:
    host, port = config.address.rsplit(":", 1)
    return host, int(port)


def transport_name(config: ConnectionConfig) -> str:
    return TRANSPORTS[config.network]


def broker_credentials(config: ConnectionConfig) -> Tuple[str, str]:
    return config.username, config.password


def broker_client_id(config: ConnectionConfig) -> str:
    return config.client_id


def broker_topic(config: ConnectionConfig) -> str:
    return config.topic


def worker_name(config: ConnectionConfig) -> str:
    return config.name


def build_connect_options(
    config: ConnectionConfig,
    settings: SupervisorSettings,
    message_handler: MessageHandler,
) -> ConnectOptions:
    """Assembles the options every transport generation is created from."""
    host, port = broker_endpoint(config)
    username, password = broker_credentials(config)
    return ConnectOptions(
        broker_uri=broker_uri(config, settings.connect_timeout),
        host=host,
        port=port,
        transport=transport_name(config),
        client_id=broker_client_id(config),
        username=username,
        password=password,
        connect_timeout=settings.connect_timeout,
        keepalive=settings.keepalive,
        message_handler=message_handler,
    )
