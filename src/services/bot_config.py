from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Dict, Optional

from src.errors import DataError
from src.services.menus import clean_text

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_]{1,64}$")
MAX_VALUE_LENGTH = 50000

DEFAULTS: Dict[str, str] = {
    "welcome_message": "Welcome! Type a number or tap a button to choose an option.",
    "default_reply": "Sorry, I didn't understand that. Type 'menu' to see what I can do.",
    "quota_exceeded_message": "Sorry, this bot has reached its message limit. Please try again later.",
    "ai_system_prompt": "",
}


class BotConfigStore:
    """Keyed text settings per tenant."""

    def __init__(self, collection) -> None:
        self._collection = collection

    def get_all(self, tenant_id: str) -> Dict[str, str]:
        documents = self._collection.find({"tenant_id": tenant_id})
        return {document["key"]: document.get("value", "") for document in documents}

    def get(self, tenant_id: str, key: str, default: Optional[str] = None) -> str:
        document = self._collection.find_one({"tenant_id": tenant_id, "key": key})
        if document and document.get("value"):
            return document["value"]
        if default is not None:
            return default
        return DEFAULTS.get(key, "")

    def set(self, tenant_id: str, key: str, value: str) -> Dict[str, str]:
        key = clean_text(key).strip()
        if not KEY_PATTERN.match(key):
            raise DataError("Config key must match ^[a-zA-Z0-9_]+$ and be at most 64 characters")
        value = clean_text(value)
        if len(value) > MAX_VALUE_LENGTH:
            raise DataError(f"Config value exceeds {MAX_VALUE_LENGTH} characters")
        self._collection.update_one(
            {"tenant_id": tenant_id, "key": key},
            {"$set": {"value": value, "updated_at": datetime.now(UTC)}},
            upsert=True,
        )
        logger.info("Bot config updated", extra={"tenant_id": tenant_id, "key": key})
        return {"key": key, "value": value}

    def count(self, tenant_id: str) -> int:
        return self._collection.count_documents({"tenant_id": tenant_id})
