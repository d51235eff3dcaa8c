from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class TokenPayload(BaseModel):
    token: str = Field(default="", description="Telegram bot token from BotFather")


class WhatsAppStatus(BaseModel):
    connected: bool
    initialized: bool
    state: str
    phone: str = ""
    name: str = ""
    hasQR: bool = False
    session_id: Optional[str] = None
    last_error: Optional[str] = None


class TelegramStatus(BaseModel):
    has_token: bool
    connected: bool
    state: str
    bot_name: str = ""
    session_id: Optional[str] = None
    last_error: Optional[str] = None
