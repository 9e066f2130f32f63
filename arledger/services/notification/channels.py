"""Delivery channels: one `send(address, text)` operation per platform."""

import abc

import httpx

from arledger.common.errors import ChannelError
from arledger.common.logging import logger


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels."""

    @abc.abstractmethod
    async def send(self, address: str, text: str) -> str:
        """Deliver `text` to `address`; returns the platform's receipt id.

        Raises `ChannelError` (or any other exception) on failure.
        """

    async def close(self) -> None:
        """Release resources (HTTP clients, etc.)."""


class TelegramChannel(NotificationChannel):
    """Delivers alerts through the Telegram Bot API `sendMessage` call."""

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://api.telegram.org",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{api_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def send(self, address: str, text: str) -> str:
        try:
            resp = await self._get_client().post(self._url, json={"chat_id": address, "text": text})
        except httpx.HTTPError as exc:
            raise ChannelError(f"telegram request failed: {exc}") from exc

        if resp.status_code != 200:
            raise ChannelError(f"telegram returned {resp.status_code}: {resp.text[:200]}")
        body = resp.json()
        if not body.get("ok"):
            raise ChannelError(f"telegram rejected message: {body.get('description', 'unknown error')}")
        return str(body["result"]["message_id"])

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class LogChannel(NotificationChannel):
    """Writes alerts to the log instead of delivering them (no bot token configured)."""

    def __init__(self) -> None:
        self._sent = 0

    async def send(self, address: str, text: str) -> str:
        self._sent += 1
        logger.info("alert_logged address=%s text=%s", address, text)
        return f"log-{self._sent}"
