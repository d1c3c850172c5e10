"""
Delivery transport for release notifications.

The orchestrator hands a NotificationPayload and a recipient id to any object
implementing ``Transport``. Failures are reported as DeliveryError, with
``permanent=True`` when the platform says the recipient can never be reached.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from .errors import DeliveryError

logger = logging.getLogger(__name__)

# Discord JSON error codes meaning "this user cannot receive messages from us"
CANNOT_MESSAGE_CODES = {50007, 10013, 50278}


@dataclass
class EmbedField:
    name: str
    value: str
    inline: bool = False


@dataclass
class NotificationPayload:
    """Structured notification, shaped like a chat embed."""
    title: str
    description: str
    fields: List[EmbedField] = field(default_factory=list)
    footer: Optional[str] = None
    timestamp: Optional[str] = None
    color: Optional[int] = None
    url: Optional[str] = None

    def to_embed(self) -> Dict[str, Any]:
        embed: Dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "fields": [asdict(f) for f in self.fields],
        }
        if self.footer:
            embed["footer"] = {"text": self.footer}
        if self.timestamp:
            embed["timestamp"] = self.timestamp
        if self.color is not None:
            embed["color"] = self.color
        if self.url:
            embed["url"] = self.url
        return embed


class Transport(Protocol):
    async def send(self, recipient_id: str, payload: NotificationPayload) -> None:
        """Deliver ``payload``; raise DeliveryError on failure."""
        ...


class DiscordDMTransport:
    """Sends payloads as Discord direct messages over the REST API."""

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://discord.com/api/v10",
        timeout: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bot {self.bot_token}",
            "Content-Type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def _post(self, recipient_id: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(f"{self.api_url}{path}", json=body, headers=self._headers()) as response:
                if response.status in (200, 201):
                    return await response.json()
                try:
                    error = await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    error = {"message": await response.text()}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(f"Discord request failed: {exc}", recipient_id) from exc

        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", "") if isinstance(error, dict) else str(error)
        permanent = code in CANNOT_MESSAGE_CODES or response.status == 403
        raise DeliveryError(
            f"Discord returned {response.status} (code {code}): {message}",
            recipient_id,
            permanent=permanent,
        )

    async def send(self, recipient_id: str, payload: NotificationPayload) -> None:
        channel = await self._post(recipient_id, "/users/@me/channels", {"recipient_id": recipient_id})
        channel_id = channel.get("id")
        if not channel_id:
            raise DeliveryError("Discord did not return a DM channel", recipient_id)
        await self._post(recipient_id, f"/channels/{channel_id}/messages", {"embeds": [payload.to_embed()]})
        logger.debug(f"Sent DM to {recipient_id}")
