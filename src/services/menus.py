from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Union

from pymongo.errors import DuplicateKeyError

from src.errors import Conflict, DataError, NotFound

logger = logging.getLogger(__name__)

MAIN_MENU = "main_menu"
SLUG_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MAX_TITLE_LENGTH = 256
MAX_PAYLOAD_LENGTH = 10000
AGGREGATIONS = ("sum", "average", "count")


def clean_text(value: Any) -> str:
    return str(value if value is not None else "").replace("\x00", "")


@dataclass(frozen=True)
class ReplyAction:
    text: str
    kind: str = field(default="reply", init=False)


@dataclass(frozen=True)
class ViewTableAction:
    table_ref: str
    kind: str = field(default="view_table", init=False)


@dataclass(frozen=True)
class CalculateFromTableAction:
    table_ref: str
    column: str = "price"
    aggregation: str = "sum"
    kind: str = field(default="calculate_from_table", init=False)


@dataclass(frozen=True)
class CustomAction:
    kind: str
    raw_payload: str


Action = Union[ReplyAction, ViewTableAction, CalculateFromTableAction, CustomAction]


@dataclass(frozen=True)
class MenuItem:
    label: str
    action: Action

    def to_wire(self) -> Dict[str, Any]:
        action = self.action
        wire: Dict[str, Any] = {"label": self.label, "action": action.kind}
        if isinstance(action, ReplyAction):
            wire["payload"] = action.text
        elif isinstance(action, ViewTableAction):
            wire["payload"] = action.table_ref
        elif isinstance(action, CalculateFromTableAction):
            wire.update(
                payload=action.table_ref,
                column=action.column,
                aggregation=action.aggregation,
            )
        else:
            wire["payload"] = action.raw_payload
        return wire


@dataclass(frozen=True)
class Menu:
    slug: str
    title: str
    items: List[MenuItem]
    updated_at: datetime

    def to_wire(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "title": self.title,
            "items": [item.to_wire() for item in self.items],
            "updated_at": self.updated_at.isoformat(),
        }


def parse_action(
    kind: str,
    payload: str = "",
    column: Optional[str] = None,
    aggregation: Optional[str] = None,
) -> Action:
    kind = (kind or "reply").strip()
    payload = clean_text(payload)
    if len(payload) > MAX_PAYLOAD_LENGTH:
        raise DataError(f"Payload exceeds {MAX_PAYLOAD_LENGTH} characters")
    if kind == "reply":
        return ReplyAction(text=payload)
    if kind == "view_table":
        return ViewTableAction(table_ref=payload.strip())
    if kind == "calculate_from_table":
        aggregation = (aggregation or "sum").strip().lower()
        if aggregation not in AGGREGATIONS:
            raise DataError(f"Unsupported aggregation '{aggregation}'")
        return CalculateFromTableAction(
            table_ref=payload.strip(),
            column=(column or "price").strip() or "price",
            aggregation=aggregation,
        )
    return CustomAction(kind=kind, raw_payload=payload)


def parse_item(raw: Dict[str, Any]) -> MenuItem:
    label = clean_text(raw.get("label")).strip()
    if not label or len(label) > MAX_TITLE_LENGTH:
        raise DataError(f"Item label must be 1..{MAX_TITLE_LENGTH} characters")
    action = parse_action(
        raw.get("action") or "reply",
        raw.get("payload") or "",
        column=raw.get("column"),
        aggregation=raw.get("aggregation"),
    )
    return MenuItem(label=label, action=action)


def validate_slug(slug: str) -> str:
    slug = clean_text(slug).strip()
    if not SLUG_PATTERN.match(slug):
        raise DataError("Slug must match ^[a-zA-Z0-9_-]+$ and be at most 64 characters")
    return slug


def validate_title(title: str) -> str:
    title = clean_text(title).strip()
    if not title or len(title) > MAX_TITLE_LENGTH:
        raise DataError(f"Title must be 1..{MAX_TITLE_LENGTH} characters")
    return title


class MenuRegistry:
    """Per-tenant menus persisted in MongoDB; a menu is replaced as a whole."""

    def __init__(self, collection) -> None:
        self._collection = collection

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> Menu:
        updated_at = document.get("updated_at") or datetime.now(UTC)
        return Menu(
            slug=document["slug"],
            title=document.get("title", document["slug"]),
            items=[parse_item(item) for item in document.get("items", [])],
            updated_at=updated_at,
        )

    def list_menus(self, tenant_id: str) -> List[Menu]:
        documents = self._collection.find({"tenant_id": tenant_id})
        menus = [self._from_document(document) for document in documents]
        return sorted(menus, key=lambda menu: menu.slug)

    def find_menu(self, tenant_id: str, slug: str) -> Optional[Menu]:
        document = self._collection.find_one({"tenant_id": tenant_id, "slug": slug})
        return self._from_document(document) if document else None

    def get_menu(self, tenant_id: str, slug: str) -> Menu:
        menu = self.find_menu(tenant_id, slug)
        if menu is None:
            raise NotFound(f"Menu '{slug}' not found")
        return menu

    def _document(self, tenant_id: str, slug: str, title: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        parsed = [parse_item(item) for item in items]
        return {
            "tenant_id": tenant_id,
            "slug": validate_slug(slug),
            "title": validate_title(title),
            "items": [item.to_wire() for item in parsed],
            "updated_at": datetime.now(UTC),
        }

    def create_menu(self, tenant_id: str, slug: str, title: str, items: List[Dict[str, Any]]) -> Menu:
        document = self._document(tenant_id, slug, title, items)
        if self._collection.find_one({"tenant_id": tenant_id, "slug": document["slug"]}):
            raise Conflict(f"Menu '{document['slug']}' already exists")
        try:
            self._collection.insert_one(dict(document))
        except DuplicateKeyError as exc:
            raise Conflict(f"Menu '{document['slug']}' already exists") from exc
        logger.info("Menu created", extra={"tenant_id": tenant_id, "slug": document["slug"]})
        return self._from_document(document)

    def update_menu(self, tenant_id: str, slug: str, title: str, items: List[Dict[str, Any]]) -> Menu:
        document = self._document(tenant_id, slug, title, items)
        result = self._collection.replace_one({"tenant_id": tenant_id, "slug": document["slug"]}, document)
        if not result.matched_count:
            raise NotFound(f"Menu '{slug}' not found")
        logger.info("Menu replaced", extra={"tenant_id": tenant_id, "slug": document["slug"]})
        return self._from_document(document)

    def delete_menu(self, tenant_id: str, slug: str) -> None:
        result = self._collection.delete_one({"tenant_id": tenant_id, "slug": slug})
        if not result.deleted_count:
            raise NotFound(f"Menu '{slug}' not found")
        logger.info("Menu deleted", extra={"tenant_id": tenant_id, "slug": slug})

    def count(self, tenant_id: str) -> int:
        return self._collection.count_documents({"tenant_id": tenant_id})
