"""Telegram channel against a mocked Bot API."""

import asyncio

import httpx
import pytest

from arledger.common.errors import ChannelError
from arledger.services.notification.channels import LogChannel, TelegramChannel


def _channel(handler) -> TelegramChannel:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramChannel("fake-token", "https://bot.example", client=client)


def test_send_posts_to_bot_api_and_returns_message_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

    receipt = asyncio.run(_channel(handler).send("12345", "hello"))

    assert receipt == "77"
    assert seen["url"] == "https://bot.example/botfake-token/sendMessage"
    assert b'"chat_id":"12345"' in seen["body"].replace(b" ", b"")


def test_http_error_status_raises_channel_error():
    channel = _channel(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(ChannelError, match="502"):
        asyncio.run(channel.send("12345", "hello"))


def test_rejected_message_raises_channel_error():
    channel = _channel(
        lambda request: httpx.Response(200, json={"ok": False, "description": "chat not found"})
    )
    with pytest.raises(ChannelError, match="chat not found"):
        asyncio.run(channel.send("12345", "hello"))


def test_transport_failure_raises_channel_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ChannelError):
        asyncio.run(_channel(handler).send("12345", "hello"))


def test_log_channel_returns_receipts():
    channel = LogChannel()
    assert asyncio.run(channel.send("x", "one")) == "log-1"
    assert asyncio.run(channel.send("x", "two")) == "log-2"
