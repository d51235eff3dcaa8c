from __future__ import annotations

import asyncio
import copy
import threading
import time
import uuid
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Set

import jwt
import pytest

from src.adapters.base import (
    ChannelAdapter,
    ChannelKind,
    OutboundMessage,
    Paired,
    PairingCode,
)
from src.errors import AuthFailed, NotFound
from src.orchestrator.graph import ActionDispatcher, DispatchResult
from src.orchestrator.intents import Outcome
from src.services.bot_config import BotConfigStore
from src.services.datasets import DatasetStore
from src.services.menus import MenuRegistry
from src.services.quota import QuotaLedger
from src.services.tenants import TenantDirectory


class MemoryCollection:
    """Just enough of a pymongo collection for the stores.

    Supports equality plus ``$ne``/``$in``/``$lt``/``$lte``/``$gt``/``$gte``
    filters and ``$set``/``$inc``/``$setOnInsert`` updates with upsert.
    Every call holds one lock, like a single-document write on the server.
    """

    def __init__(self) -> None:
        self.documents: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

    @staticmethod
    def _condition(value: Any, condition: Any) -> bool:
        if not (isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition)):
            return value == condition
        for operator, operand in condition.items():
            if operator == "$ne":
                matched = value != operand
            elif operator == "$in":
                matched = value in operand
            elif value is None:
                matched = False
            elif operator == "$lt":
                matched = value < operand
            elif operator == "$lte":
                matched = value <= operand
            elif operator == "$gt":
                matched = value > operand
            elif operator == "$gte":
                matched = value >= operand
            else:
                raise NotImplementedError(operator)
            if not matched:
                return False
        return True

    @classmethod
    def _matches(cls, document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
        return all(cls._condition(document.get(key), condition) for key, condition in (query or {}).items())

    @staticmethod
    def _assign(document: Dict[str, Any], path: str, value: Any) -> None:
        *parents, leaf = path.split(".")
        target = document
        for part in parents:
            target = target.setdefault(part, {})
        target[leaf] = value

    @staticmethod
    def _lookup(document: Dict[str, Any], path: str, default: Any = None) -> Any:
        target: Any = document
        for part in path.split("."):
            if not isinstance(target, dict) or part not in target:
                return default
            target = target[part]
        return target

    def _apply(self, document: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> None:
        for path, value in update.get("$set", {}).items():
            self._assign(document, path, copy.deepcopy(value))
        for path, amount in update.get("$inc", {}).items():
            self._assign(document, path, self._lookup(document, path, 0) + amount)
        if inserting:
            for path, value in update.get("$setOnInsert", {}).items():
                self._assign(document, path, copy.deepcopy(value))

    def _upsert(self, query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        document: Dict[str, Any] = {"_id": str(uuid.uuid4())}
        for key, condition in query.items():
            if not (isinstance(condition, dict) and any(name.startswith("$") for name in condition)):
                document[key] = copy.deepcopy(condition)
        self._apply(document, update, inserting=True)
        self.documents.append(document)
        return document

    def find(self, query=None, projection=None, sort=None):
        with self._lock:
            found = [copy.deepcopy(document) for document in self.documents if self._matches(document, query)]
        for key, direction in reversed(sort or []):
            found.sort(key=lambda document: document.get(key), reverse=direction < 0)
        return found

    def find_one(self, query=None):
        with self._lock:
            for document in self.documents:
                if self._matches(document, query):
                    return copy.deepcopy(document)
        return None

    def insert_one(self, payload):
        inserted_id = str(uuid.uuid4())
        with self._lock:
            self.documents.append({"_id": inserted_id, **copy.deepcopy(payload)})
        return SimpleNamespace(inserted_id=inserted_id)

    def insert_many(self, payloads):
        return SimpleNamespace(inserted_ids=[self.insert_one(payload).inserted_id for payload in payloads])

    def replace_one(self, query, replacement):
        with self._lock:
            for index, document in enumerate(self.documents):
                if self._matches(document, query):
                    self.documents[index] = {"_id": document["_id"], **copy.deepcopy(replacement)}
                    return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    def update_one(self, query, update, upsert=False):
        with self._lock:
            for document in self.documents:
                if self._matches(document, query):
                    self._apply(document, update, inserting=False)
                    return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
            if upsert:
                document = self._upsert(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=document["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    def find_one_and_update(self, query, update, upsert=False, return_document=False):
        with self._lock:
            for document in self.documents:
                if self._matches(document, query):
                    before = copy.deepcopy(document)
                    self._apply(document, update, inserting=False)
                    return copy.deepcopy(document) if return_document else before
            if upsert:
                document = self._upsert(query, update)
                return copy.deepcopy(document) if return_document else None
        return None

    def delete_one(self, query):
        with self._lock:
            for index, document in enumerate(self.documents):
                if self._matches(document, query):
                    del self.documents[index]
                    return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    def delete_many(self, query):
        with self._lock:
            kept = [document for document in self.documents if not self._matches(document, query)]
            deleted = len(self.documents) - len(kept)
            self.documents = kept
        return SimpleNamespace(deleted_count=deleted)

    def count_documents(self, query):
        with self._lock:
            return sum(1 for document in self.documents if self._matches(document, query))


class FakeChannelAdapter(ChannelAdapter):
    """Scripted adapter: tests push adapter events and inspect what was sent."""

    def __init__(self, kind: ChannelKind) -> None:
        self.kind = kind
        self.valid_tokens = {"123:valid-token"}
        self.bot_username = "demo_bot"
        self.on_open: List[Any] = []
        self.open_error: Optional[Exception] = None
        self.emit_code_on_refresh = True
        self.send_delay = 0.0
        self.opened_with: List[Optional[str]] = []
        self.validated: List[str] = []
        self.sent: List[OutboundMessage] = []
        self.refresh_calls = 0
        self.closed = False
        self.logged_out = False
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def push(self, event: Any) -> None:
        self._queue.put_nowait(event)

    async def validate(self, credential: str) -> str:
        self.validated.append(credential)
        if credential not in self.valid_tokens:
            raise AuthFailed("Telegram rejected the bot token")
        return self.bot_username

    async def open(self, credential: Optional[str]) -> None:
        self.opened_with.append(credential)
        if self.open_error is not None:
            raise self.open_error
        for event in self.on_open:
            self.push(event)

    async def events(self):
        while True:
            event = await self._queue.get()
            if isinstance(event, Exception):
                raise event
            yield event

    async def refresh_pairing(self) -> None:
        self.refresh_calls += 1
        if self.emit_code_on_refresh:
            self.push(PairingCode(payload=f"qr-refresh-{self.refresh_calls}"))

    async def send(self, message: OutboundMessage) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(message)

    async def close(self, logout: bool = False) -> None:
        self.closed = True
        self.logged_out = logout


class FakeAdapterFactory:
    def __init__(self, configure: Optional[Callable[[FakeChannelAdapter, int], None]] = None) -> None:
        self.created: List[FakeChannelAdapter] = []
        self.configure = configure

    def __call__(self, tenant_id: str, channel: ChannelKind) -> FakeChannelAdapter:
        adapter = FakeChannelAdapter(channel)
        if channel == ChannelKind.TELEGRAM:
            adapter.on_open = [Paired(identity="@demo_bot", display_name="Demo Bot")]
        else:
            adapter.on_open = [PairingCode(payload="qr-initial")]
        if self.configure is not None:
            self.configure(adapter, len(self.created))
        self.created.append(adapter)
        return adapter

    @property
    def last(self) -> FakeChannelAdapter:
        return self.created[-1]


class EchoDispatcher:
    """Dispatcher double that echoes text, optionally slowly, in call order."""

    def __init__(self, delays: Optional[Dict[str, float]] = None, fail_on: Optional[Set[str]] = None) -> None:
        self.calls: List[str] = []
        self.delays = delays or {}
        self.fail_on = fail_on or set()

    def dispatch(self, tenant_id, channel, event, current_menu="main_menu") -> DispatchResult:
        text = event.text or event.callback_data or ""
        self.calls.append(text)
        if text in self.delays:
            time.sleep(self.delays[text])
        if text in self.fail_on:
            raise NotFound(f"Menu for '{text}' vanished")
        return DispatchResult(
            message=OutboundMessage(chat_id=event.chat_id, text=f"echo:{text}"),
            outcome=Outcome.REPLY,
            next_menu=current_menu,
        )

    def fallback(self, tenant_id, event) -> OutboundMessage:
        return OutboundMessage(chat_id=event.chat_id, text="default-reply")


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def memory_dataset_store() -> DatasetStore:
    return DatasetStore(tables=MemoryCollection(), rows=MemoryCollection())


def memory_quota_ledger(
    daily: int = 200,
    monthly: int = 5000,
    tenants: Optional[MemoryCollection] = None,
    **kwargs: Any,
) -> QuotaLedger:
    return QuotaLedger(
        counters=MemoryCollection(),
        history=MemoryCollection(),
        tenants=tenants if tenants is not None else MemoryCollection(),
        default_daily_limit=daily,
        default_monthly_limit=monthly,
        **kwargs,
    )


@pytest.fixture()
def stores():
    tenant_collection = MemoryCollection()
    menus = MenuRegistry(MemoryCollection())
    datasets = memory_dataset_store()
    quota = memory_quota_ledger(tenants=tenant_collection)
    bot_config = BotConfigStore(MemoryCollection())
    tenants = TenantDirectory(tenant_collection)
    dispatcher = ActionDispatcher(
        menus=menus,
        datasets=datasets,
        quota=quota,
        bot_config=bot_config,
        greeting_keywords=["/start", "start", "hi", "hello"],
        view_table_row_cap=10,
        search_result_cap=5,
    )
    return SimpleNamespace(
        menus=menus,
        datasets=datasets,
        quota=quota,
        bot_config=bot_config,
        tenants=tenants,
        dispatcher=dispatcher,
    )


@pytest.fixture()
def make_token():
    from src.app.config import get_settings

    def _make(tenant_id: str, role: str = "user", username: Optional[str] = None) -> str:
        settings = get_settings()
        claims = {
            "tenant_id": tenant_id,
            "role": role,
            "username": username or tenant_id,
            "iat": int(time.time()),
            "exp": int(time.time()) + 3600,
        }
        return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    return _make
