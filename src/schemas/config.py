from __future__ import annotations

from pydantic import BaseModel, Field


class ConfigPayload(BaseModel):
    key: str = Field(..., description="Setting name such as welcome_message")
    value: str = Field(default="")
