"""Tests for the WhatsApp bridge channel frame handling."""

import json
from unittest.mock import AsyncMock

import pytest

from salesbot.bus.events import OutboundMessage
from salesbot.bus.queue import MessageBus
from salesbot.channels.whatsapp_bridge import WhatsAppBridgeChannel
from salesbot.config import BridgeConfig


def sent_frames(ws: AsyncMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send.call_args_list]


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def ws() -> AsyncMock:
    return AsyncMock()


@pytest.mark.asyncio
async def test_handshake_accepts_valid_token(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(require_auth=True, token="t0k"), bus)
    ws.recv.return_value = json.dumps({"type": "connect", "token": "t0k"})

    assert await channel._handshake("conn-1", ws) is True
    assert sent_frames(ws) == [{"type": "connected", "sessionId": "conn-1"}]
    ws.close.assert_not_called()


@pytest.mark.asyncio
async def test_handshake_rejects_bad_token(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(require_auth=True, token="t0k"), bus)
    ws.recv.return_value = json.dumps({"type": "connect", "token": "nope"})

    assert await channel._handshake("conn-1", ws) is False
    assert sent_frames(ws)[0]["error"]["code"] == "unauthorized"
    ws.close.assert_awaited_once_with(code=1008, reason="unauthorized")


@pytest.mark.asyncio
async def test_handshake_requires_connect_first(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)
    ws.recv.return_value = json.dumps({"type": "message"})

    assert await channel._handshake("conn-1", ws) is False
    assert sent_frames(ws)[0]["error"]["code"] == "bad_request"


@pytest.mark.asyncio
async def test_message_frame_is_published_inbound(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)
    frame = {
        "type": "message",
        "id": "ABC123",
        "from": "5215550001@c.us",
        "body": "  Hola, precio del curso?  ",
        "timestamp": 1_700_000_000,
        "fromMe": False,
    }

    await channel._handle_frame(ws, json.dumps(frame))

    msg = await bus.consume_inbound()
    assert msg.channel == "whatsapp"
    assert msg.chat_id == "5215550001@c.us"
    assert msg.content == "Hola, precio del curso?"
    assert msg.message_id == "ABC123"
    assert msg.timestamp.timestamp() == 1_700_000_000
    assert msg.from_me is False
    ws.send.assert_not_called()


@pytest.mark.asyncio
async def test_message_frame_validation_errors(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)

    await channel._handle_frame(ws, json.dumps({"type": "message", "id": "1", "body": "hi"}))
    await channel._handle_frame(ws, json.dumps({"type": "message", "id": "2", "from": "x@c.us"}))
    await channel._handle_frame(ws, "not json")
    await channel._handle_frame(ws, json.dumps({"type": "typing"}))

    codes = [frame["error"]["code"] for frame in sent_frames(ws)]
    assert codes == ["bad_request", "bad_request", "bad_request", "unsupported_type"]
    assert bus.inbound_size == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("timestamp", [1e20, float("nan"), float("inf")])
async def test_out_of_range_timestamp_gets_error_frame(
    bus: MessageBus, ws: AsyncMock, timestamp: float
) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)
    frame = {"type": "message", "id": "T1", "from": "521@c.us", "body": "hola", "timestamp": timestamp}

    await channel._handle_frame(ws, json.dumps(frame))

    assert bus.inbound_size == 0
    assert sent_frames(ws) == [
        {"type": "error", "id": "T1", "error": {"code": "bad_request", "message": "invalid timestamp"}}
    ]


@pytest.mark.asyncio
async def test_non_list_media_without_body_is_rejected(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)

    await channel._handle_frame(ws, json.dumps({"type": "message", "id": "M1", "from": "521@c.us", "media": "x"}))

    assert bus.inbound_size == 0
    assert sent_frames(ws)[0]["error"] == {"code": "bad_request", "message": "body or media is required"}


@pytest.mark.asyncio
async def test_media_only_message_is_published(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)
    frame = {"type": "message", "id": "M2", "from": "521@c.us", "media": ["/tmp/voice.ogg"]}

    await channel._handle_frame(ws, json.dumps(frame))

    msg = await bus.consume_inbound()
    assert msg.content == ""
    assert msg.media == ["/tmp/voice.ogg"]
    ws.send.assert_not_called()


def test_parse_json_tolerates_deeply_nested_payload() -> None:
    assert WhatsAppBridgeChannel._parse_json("[" * 100_000) is None


@pytest.mark.asyncio
async def test_disallowed_sender_is_rejected(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(allow_from=("521@c.us",)), bus)
    frame = {"type": "message", "id": "9", "from": "999@c.us", "body": "hola"}

    await channel._handle_frame(ws, json.dumps(frame))

    assert bus.inbound_size == 0
    assert sent_frames(ws) == [
        {"type": "error", "id": "9", "error": {"code": "forbidden", "message": "sender not allowed"}}
    ]


@pytest.mark.asyncio
async def test_ping_gets_pong(bus: MessageBus, ws: AsyncMock) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)

    await channel._handle_frame(ws, b'{"type": "ping"}')

    assert sent_frames(ws) == [{"type": "pong"}]


@pytest.mark.asyncio
async def test_send_forwards_reply_to_connected_bridges(bus: MessageBus) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)
    ws_a, ws_b = AsyncMock(), AsyncMock()
    channel._connections = {"a": ws_a, "b": ws_b}

    await channel.send(
        OutboundMessage(channel="whatsapp", chat_id="521@c.us", content="Claro!", reply_to="m1")
    )

    expected = {"type": "send", "to": "521@c.us", "text": "Claro!", "replyTo": "m1"}
    assert sent_frames(ws_a) == [expected]
    assert sent_frames(ws_b) == [expected]


@pytest.mark.asyncio
async def test_send_without_bridge_is_dropped(bus: MessageBus) -> None:
    channel = WhatsAppBridgeChannel(BridgeConfig(), bus)

    await channel.send(OutboundMessage(channel="whatsapp", chat_id="521@c.us", content="hola"))

    assert channel._connections == {}
