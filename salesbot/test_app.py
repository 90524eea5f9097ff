"""Tests for gateway outbound dispatch."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from salesbot.app import dispatch_outbound, echo_handler
from salesbot.bus.events import InboundMessage, OutboundMessage
from salesbot.bus.queue import MessageBus


@pytest.mark.asyncio
async def test_dispatch_outbound_keeps_going_after_send_failure() -> None:
    bus = MessageBus()
    channel = AsyncMock()
    channel.send.side_effect = [ConnectionError("bridge gone"), None]

    task = asyncio.create_task(dispatch_outbound(bus, channel))
    await bus.publish_outbound(OutboundMessage(channel="whatsapp", chat_id="a", content="1"))
    await bus.publish_outbound(OutboundMessage(channel="whatsapp", chat_id="b", content="2"))
    for _ in range(10):
        if channel.send.await_count == 2:
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert [c.args[0].chat_id for c in channel.send.await_args_list] == ["a", "b"]


@pytest.mark.asyncio
async def test_echo_handler_repeats_content() -> None:
    msg = InboundMessage(channel="whatsapp", sender_id="a", chat_id="a", content="hola")
    assert await echo_handler(msg) == "hola"
