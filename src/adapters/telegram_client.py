from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

import requests

from src.adapters.base import (
    AdapterEvent,
    ChannelAdapter,
    ChannelKind,
    InboundEvent,
    InboundMessage,
    OutboundMessage,
    Paired,
    chunk_buttons,
)
from src.errors import AuthFailed, ChannelTransportError

logger = logging.getLogger(__name__)

START_COMMAND = "/start"


class TelegramAdapter(ChannelAdapter):
    """Telegram Bot API over HTTPS long polling."""

    kind = ChannelKind.TELEGRAM

    def __init__(
        self,
        api_base: str = "https://api.telegram.org",
        poll_timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._poll_timeout = poll_timeout
        self._session = session or requests.Session()
        self._token: Optional[str] = None
        self._me: Dict[str, Any] = {}
        self._offset = 0
        self._closed = False

    def _call(self, token: str, method: str, payload: Optional[dict] = None, timeout: float = 10) -> Any:
        url = f"{self._api_base}/bot{token}/{method}"
        try:
            response = self._session.post(url, json=payload or {}, timeout=timeout)
        except requests.RequestException as exc:
            raise ChannelTransportError(f"Telegram {method} failed: {exc}") from exc

        if response.status_code in (401, 404):
            raise AuthFailed("Telegram rejected the bot token")
        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelTransportError(f"Telegram {method} returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise ChannelTransportError(f"Telegram {method} returned invalid JSON") from exc
        if not data.get("ok"):
            raise ChannelTransportError(data.get("description") or f"Telegram {method} failed")
        return data.get("result")

    async def _request(self, method: str, payload: Optional[dict] = None, timeout: float = 10) -> Any:
        if not self._token:
            raise AuthFailed("No bot token configured")
        return await asyncio.to_thread(self._call, self._token, method, payload, timeout)

    async def _get_me(self, token: str) -> Dict[str, Any]:
        token = (token or "").strip()
        if not token:
            raise AuthFailed("Bot token is empty")
        me = await asyncio.to_thread(self._call, token, "getMe")
        return me or {}

    async def validate(self, credential: str) -> str:
        me = await self._get_me(credential)
        return me.get("username", "")

    async def open(self, credential: Optional[str]) -> None:
        self._me = await self._get_me(credential or "")
        self._token = (credential or "").strip()
        self._closed = False
        logger.info("Telegram bot authorized", extra={"bot_name": self._me.get("username")})

    async def events(self) -> AsyncIterator[AdapterEvent]:
        yield Paired(
            identity=f"@{self._me.get('username', '')}",
            display_name=self._me.get("first_name", ""),
            credential=self._token,
        )
        while not self._closed:
            updates = await self._request(
                "getUpdates",
                {
                    "offset": self._offset,
                    "timeout": self._poll_timeout,
                    "allowed_updates": ["message", "callback_query"],
                },
                timeout=self._poll_timeout + 10,
            )
            for update in updates or []:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                event = await self._to_event(update)
                if event is not None:
                    yield InboundMessage(event=event)

    async def _to_event(self, update: Dict[str, Any]) -> Optional[InboundEvent]:
        callback = update.get("callback_query")
        if callback:
            try:
                await self._request("answerCallbackQuery", {"callback_query_id": callback.get("id")})
            except ChannelTransportError:
                logger.warning("Could not acknowledge callback query", extra={"callback_id": callback.get("id")})
            message = callback.get("message") or {}
            chat = message.get("chat") or {}
            return InboundEvent(
                chat_id=str(chat.get("id", "")),
                kind="callback",
                callback_data=callback.get("data"),
                sender_name=(callback.get("from") or {}).get("first_name", ""),
            )

        message = update.get("message")
        if not message or "text" not in message:
            return None
        text = message["text"].strip()
        command = text.split("@", 1)[0].lower()
        return InboundEvent(
            chat_id=str((message.get("chat") or {}).get("id", "")),
            text=text,
            kind="session_start" if command == START_COMMAND else "message",
            sender_name=(message.get("from") or {}).get("first_name", ""),
        )

    async def refresh_pairing(self) -> None:
        return None

    async def send(self, message: OutboundMessage) -> None:
        payload: Dict[str, Any] = {"chat_id": message.chat_id, "text": message.text}
        if message.buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [{"text": button.label, "callback_data": button.token} for button in row]
                    for row in chunk_buttons(message.buttons)
                ]
            }
        await self._request("sendMessage", payload)

    async def close(self, logout: bool = False) -> None:
        self._closed = True
        if logout:
            self._token = None
        await asyncio.to_thread(self._session.close)
