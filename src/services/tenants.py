from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from src.errors import NotFound

logger = logging.getLogger(__name__)


@dataclass
class TenantAccount:
    tenant_id: str
    username: str
    role: str = "user"
    is_active: bool = True
    wa_enabled: bool = True
    telegram_token: str = ""
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TenantDirectory:
    """Tenant account records, provisioned on first authenticated call."""

    def __init__(self, collection) -> None:
        self._collection = collection

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> TenantAccount:
        return TenantAccount(
            tenant_id=document["tenant_id"],
            username=document.get("username") or document["tenant_id"],
            role=document.get("role", "user"),
            is_active=bool(document.get("is_active", True)),
            wa_enabled=bool(document.get("wa_enabled", True)),
            telegram_token=document.get("telegram_token", ""),
            created_at=document.get("created_at"),
        )

    def ensure(self, tenant_id: str, username: Optional[str] = None, role: str = "user") -> TenantAccount:
        document = self._collection.find_one({"tenant_id": tenant_id})
        if document is None:
            document = {
                "tenant_id": tenant_id,
                "username": username or tenant_id,
                "role": role,
                "is_active": True,
                "wa_enabled": True,
                "telegram_token": "",
                "created_at": datetime.now(UTC),
            }
            self._collection.insert_one(dict(document))
            logger.info("Tenant provisioned", extra={"tenant_id": tenant_id, "role": role})
        return self._from_document(document)

    def get(self, tenant_id: str) -> TenantAccount:
        document = self._collection.find_one({"tenant_id": tenant_id})
        if document is None:
            raise NotFound(f"User '{tenant_id}' not found")
        return self._from_document(document)

    def list_accounts(self) -> List[TenantAccount]:
        accounts = [self._from_document(document) for document in self._collection.find({})]
        return sorted(accounts, key=lambda account: account.created_at or datetime.min.replace(tzinfo=UTC))

    def _update(self, tenant_id: str, fields: Dict[str, Any]) -> TenantAccount:
        result = self._collection.update_one({"tenant_id": tenant_id}, {"$set": fields})
        if not result.matched_count:
            raise NotFound(f"User '{tenant_id}' not found")
        return self.get(tenant_id)

    def set_active(self, tenant_id: str, is_active: bool) -> TenantAccount:
        logger.info("Tenant status changed", extra={"tenant_id": tenant_id, "is_active": is_active})
        return self._update(tenant_id, {"is_active": is_active})

    def set_wa_enabled(self, tenant_id: str, wa_enabled: bool) -> TenantAccount:
        logger.info("WhatsApp access changed", extra={"tenant_id": tenant_id, "wa_enabled": wa_enabled})
        return self._update(tenant_id, {"wa_enabled": wa_enabled})

    def set_telegram_token(self, tenant_id: str, token: str) -> TenantAccount:
        return self._update(tenant_id, {"telegram_token": token})

    def telegram_token(self, tenant_id: str) -> str:
        return self.get(tenant_id).telegram_token
