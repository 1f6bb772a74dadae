import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from mqtt_supervisor.drain import EventDrain
from mqtt_supervisor.errors import ConnectionRejectedError, TransportError
from mqtt_supervisor.models import ConnectOptions
from mqtt_supervisor.transport import AiomqttTransport, Transport

"""
Tests for the aiomqtt-backed transport. The aiomqtt.Client is replaced by a mock
so no broker is needed; the real-broker path is covered by test_integration.py.
"""


def make_options(handler=None, username="", password=""):
    return ConnectOptions(
        broker_uri="tcp://10.0.0.1:1883?timeout=10s",
        host="10.0.0.1",
        port=1883,
        transport="tcp",
        client_id="cl1",
        username=username,
        password=password,
        connect_timeout=10,
        keepalive=60,
        message_handler=handler or AsyncMock(),
    )


def make_client(messages=(), hang=False):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.subscribe = AsyncMock()
    client.unsubscribe = AsyncMock()

    async def stream():
        for message in messages:
            yield message
        if hang:
            await asyncio.Event().wait()
        raise aiomqtt.MqttError("Disconnected during message iteration")

    client.messages = stream()
    return client


def message(topic, payload):
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


def test_transport_satisfies_protocol():
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=make_client()):
        assert isinstance(AiomqttTransport(make_options()), Transport)


def test_client_built_from_options():
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=make_client()) as MockClient:
        AiomqttTransport(make_options(username="bob", password="pw"))

    _, kwargs = MockClient.call_args
    assert kwargs["hostname"] == "10.0.0.1"
    assert kwargs["port"] == 1883
    assert kwargs["identifier"] == "cl1"
    assert kwargs["username"] == "bob"
    assert kwargs["password"] == "pw"
    assert kwargs["transport"] == "tcp"


def test_empty_credentials_connect_anonymously():
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=make_client()) as MockClient:
        AiomqttTransport(make_options())

    _, kwargs = MockClient.call_args
    assert kwargs["username"] is None
    assert kwargs["password"] is None


@pytest.mark.asyncio
async def test_listener_delivers_messages_until_connection_breaks():
    handler = AsyncMock()
    client = make_client(messages=[message("sensors/1", b'{"a": 1}'), message("sensors/1", b'{"a": 2}')])
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options(handler))

    await transport.connect()
    assert transport.is_connected()

    await asyncio.wait_for(transport._listener_task, timeout=1.0)

    assert handler.await_count == 2
    handler.assert_awaited_with("sensors/1", b'{"a": 2}')
    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_handler_failure_drops_connection():
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    client = make_client(messages=[message("t", b"{}")], hang=True)
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options(handler))

    await transport.connect()
    await asyncio.wait_for(transport._listener_task, timeout=1.0)

    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_refused_connect_raises_rejection():
    client = make_client()
    client.__aenter__.side_effect = aiomqtt.MqttCodeError(5, "Not authorized")
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options())

    with pytest.raises(ConnectionRejectedError):
        await transport.connect()
    assert not transport.is_connected()


@pytest.mark.parametrize("error", [aiomqtt.MqttError("timed out"), ConnectionRefusedError(111, "refused")])
@pytest.mark.asyncio
async def test_network_failure_raises_transport_error(error):
    client = make_client()
    client.__aenter__.side_effect = error
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options())

    with pytest.raises(TransportError) as excinfo:
        await transport.connect()
    assert not isinstance(excinfo.value, ConnectionRejectedError)


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe_errors_are_wrapped():
    client = make_client(hang=True)
    client.subscribe.side_effect = aiomqtt.MqttError("no suback")
    client.unsubscribe.side_effect = aiomqtt.MqttError("no unsuback")
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options())
    await transport.connect()

    with pytest.raises(TransportError):
        await transport.subscribe("t", 1)
    with pytest.raises(TransportError):
        await transport.unsubscribe("t")
    client.subscribe.assert_awaited_once_with("t", qos=1)

    await transport.disconnect(1.0)


@pytest.mark.asyncio
async def test_disconnect_stops_listener_and_closes_client():
    client = make_client(hang=True)
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options())
    await transport.connect()
    listener = transport._listener_task

    await transport.disconnect(1.0)

    assert listener.cancelled()
    client.__aexit__.assert_awaited_once_with(None, None, None)
    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_disconnect_failure_is_wrapped():
    client = make_client(hang=True)
    client.__aexit__.side_effect = aiomqtt.MqttError("Disconnected during message iteration")
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options())
    await transport.connect()

    with pytest.raises(TransportError):
        await transport.disconnect(1.0)


@pytest.mark.asyncio
async def test_disconnect_lets_blocked_delivery_finish():
    drain = EventDrain(1, "w1")
    client = make_client(messages=[message("t", b'{"n": 0}'), message("t", b'{"n": 1}')], hang=True)
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options(drain.handle_message))
    await transport.connect()
    stream = drain.drain_events()

    # First message fills the queue, the second one waits for room
    await asyncio.sleep(0.05)
    assert stream.qsize() == 1

    closing = asyncio.create_task(transport.disconnect(1.0))
    await asyncio.sleep(0.05)
    first = await asyncio.wait_for(stream.get(), timeout=1.0)
    await asyncio.wait_for(closing, timeout=1.0)

    assert first.data == {"n": 0}
    assert stream.get_nowait().data == {"n": 1}
    client.__aexit__.assert_awaited_once_with(None, None, None)


@pytest.mark.asyncio
async def test_disconnect_gives_up_on_delivery_after_timeout():
    drain = EventDrain(1, "w1")
    client = make_client(messages=[message("t", b'{"n": 0}'), message("t", b'{"n": 1}')], hang=True)
    with patch("mqtt_supervisor.transport.aiomqtt.Client", return_value=client):
        transport = AiomqttTransport(make_options(drain.handle_message))
    await transport.connect()
    listener = transport._listener_task
    await asyncio.sleep(0.05)

    await asyncio.wait_for(transport.disconnect(0.05), timeout=1.0)

    assert listener.cancelled()
    assert drain.drain_events().qsize() == 1
    client.__aexit__.assert_awaited_once_with(None, None, None)
