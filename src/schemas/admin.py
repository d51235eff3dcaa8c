from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class UserStatusPayload(BaseModel):
    is_active: bool


class WhatsAppAccessPayload(BaseModel):
    wa_enabled: bool


class LimitsPayload(BaseModel):
    daily_limit: int = Field(..., ge=0)
    monthly_limit: int = Field(..., ge=0)


class AdminUser(BaseModel):
    id: str
    username: str
    role: str
    is_active: bool
    wa_enabled: bool
    wa_connected: bool
    telegram_connected: bool
    created_at: Optional[str] = None
    daily_limit: int
    monthly_limit: int
    today_sent: int
    month_sent: int


class AdminStats(BaseModel):
    total_users: int
    active_users: int
    wa_enabled_users: int
    active_wa_connections: int
    active_telegram_connections: int
    admin_count: int
