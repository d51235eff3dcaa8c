from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import requests

from src.adapters.base import (
    AdapterEvent,
    ChannelAdapter,
    ChannelKind,
    InboundEvent,
    InboundMessage,
    OutboundMessage,
    Paired,
    PairingCode,
    Terminated,
)
from src.errors import AuthFailed, ChannelTransportError

logger = logging.getLogger(__name__)


def render_numbered(message: OutboundMessage) -> str:
    if not message.buttons:
        return message.text
    lines = [f"{index}. {button.label}" for index, button in enumerate(message.buttons, start=1)]
    return f"{message.text}\n\n" + "\n".join(lines)


class WhatsAppBridgeAdapter(ChannelAdapter):
    """WhatsApp multi-device session hosted by an HTTP pairing bridge.

    The bridge owns the device protocol; this adapter starts a session keyed
    by tenant, long-polls its event feed and relays sends.
    """

    kind = ChannelKind.WHATSAPP

    def __init__(
        self,
        bridge_url: str,
        session_key: str,
        poll_timeout: int = 25,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = f"{bridge_url.rstrip('/')}/sessions/{session_key}"
        self._bridge_url = bridge_url.rstrip("/")
        self._poll_timeout = poll_timeout
        self._session = session or requests.Session()
        self._closed = False
        self._opened = False

    def _call(self, method: str, url: str, payload: Optional[dict] = None, timeout: float = 10) -> Any:
        try:
            response = self._session.request(method, url, json=payload, timeout=timeout)
        except requests.RequestException as exc:
            raise ChannelTransportError(f"WhatsApp bridge unreachable: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthFailed("WhatsApp session credential rejected")
        if response.status_code >= 400:
            raise ChannelTransportError(f"WhatsApp bridge returned {response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ChannelTransportError("WhatsApp bridge returned invalid JSON") from exc

    async def _request(self, method: str, path: str = "", payload: Optional[dict] = None, timeout: float = 10) -> Any:
        return await asyncio.to_thread(self._call, method, f"{self._base}{path}", payload, timeout)

    async def validate(self, credential: str) -> str:
        result = await asyncio.to_thread(
            self._call, "POST", f"{self._bridge_url}/credentials/validate", {"credential": credential}
        )
        if not result.get("valid"):
            raise AuthFailed(result.get("error") or "WhatsApp credential is not valid")
        return result.get("phone", "")

    async def open(self, credential: Optional[str]) -> None:
        self._closed = False
        self._opened = True
        await self._request("POST", "", {"credential": credential})

    async def events(self) -> AsyncIterator[AdapterEvent]:
        while not self._closed:
            batch: List[Dict[str, Any]] = await self._request(
                "GET",
                f"/events?timeout={self._poll_timeout}",
                timeout=self._poll_timeout + 10,
            ) or []
            for raw in batch:
                event = self._to_event(raw)
                if event is None:
                    continue
                yield event
                if isinstance(event, Terminated):
                    return

    @staticmethod
    def _to_event(raw: Dict[str, Any]) -> Optional[AdapterEvent]:
        kind = raw.get("type")
        if kind == "qr":
            return PairingCode(payload=raw.get("code", ""))
        if kind == "paired":
            return Paired(
                identity=raw.get("phone", ""),
                display_name=raw.get("name", ""),
                credential=raw.get("credential"),
            )
        if kind == "message":
            text = (raw.get("text") or "").strip()
            if not text:
                return None
            return InboundMessage(
                event=InboundEvent(
                    chat_id=str(raw.get("chat_id", "")),
                    text=text,
                    sender_name=raw.get("sender_name", ""),
                )
            )
        if kind == "terminated":
            return Terminated(
                reason=raw.get("reason", "terminated"),
                auth_failure=bool(raw.get("logged_out")),
            )
        logger.debug("Ignoring bridge event", extra={"event_type": kind})
        return None

    async def refresh_pairing(self) -> None:
        await self._request("POST", "/qr/refresh")

    async def send(self, message: OutboundMessage) -> None:
        await self._request(
            "POST",
            "/messages",
            {"chat_id": message.chat_id, "text": render_numbered(message)},
        )

    async def close(self, logout: bool = False) -> None:
        self._closed = True
        try:
            if self._opened:
                await self._request("DELETE", f"?logout={'true' if logout else 'false'}")
        finally:
            await asyncio.to_thread(self._session.close)
