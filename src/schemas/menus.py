from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class MenuItemPayload(BaseModel):
    label: str = Field(..., description="Button label shown to chat users")
    action: str = Field(default="reply", description="reply, view_table, calculate_from_table or a custom kind")
    payload: str = Field(default="", description="Reply text or table reference")
    column: Optional[str] = None
    aggregation: Optional[str] = None


class MenuPayload(BaseModel):
    slug: str
    title: str
    items: List[MenuItemPayload] = Field(default_factory=list)


class MenuUpdatePayload(BaseModel):
    title: str
    items: List[MenuItemPayload] = Field(default_factory=list)
