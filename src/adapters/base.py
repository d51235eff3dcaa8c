from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import AsyncIterator, List, Optional, Union


class ChannelKind(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"

    @property
    def uses_pairing(self) -> bool:
        return self is ChannelKind.WHATSAPP


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self in (SessionState.CONNECTING, SessionState.AWAITING_PAIRING, SessionState.CONNECTED)


@dataclass
class InboundEvent:
    chat_id: str
    text: str = ""
    kind: str = "message"  # message | callback | session_start
    callback_data: Optional[str] = None
    sender_name: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class Button:
    label: str
    token: str


@dataclass
class OutboundMessage:
    chat_id: str
    text: str
    buttons: List[Button] = field(default_factory=list)


@dataclass(frozen=True)
class PairingCode:
    payload: str


@dataclass(frozen=True)
class Paired:
    identity: str
    display_name: str = ""
    credential: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    event: InboundEvent


@dataclass(frozen=True)
class Terminated:
    reason: str
    auth_failure: bool = False


AdapterEvent = Union[PairingCode, Paired, InboundMessage, Terminated]


class ChannelAdapter(ABC):
    """One live connection to an external chat network.

    ``events`` yields adapter events until the connection ends. ``send`` and
    ``open`` raise :class:`~src.errors.AuthFailed` for rejected credentials and
    :class:`~src.errors.ChannelTransportError` for retryable failures.
    """

    kind: ChannelKind

    @abstractmethod
    async def validate(self, credential: str) -> str:
        """Return the external identity for ``credential`` without side effects."""

    @abstractmethod
    async def open(self, credential: Optional[str]) -> None:
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[AdapterEvent]:
        ...

    @abstractmethod
    async def refresh_pairing(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        ...

    @abstractmethod
    async def close(self, logout: bool = False) -> None:
        ...


def chunk_buttons(buttons: List[Button], per_row: int = 2) -> List[List[Button]]:
    return [buttons[index:index + per_row] for index in range(0, len(buttons), per_row)]
