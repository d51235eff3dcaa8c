from __future__ import annotations

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import MemoryCollection
from src.errors import Conflict, DataError, NotFound
from src.services.bot_config import BotConfigStore
from src.services.menus import (
    CalculateFromTableAction,
    CustomAction,
    MenuRegistry,
    ReplyAction,
    ViewTableAction,
    parse_action,
)

ITEMS = [
    {"label": "Opening hours", "action": "reply", "payload": "Mon-Fri 9-17"},
    {"label": "Price list", "action": "view_table", "payload": "Products"},
]


def test_parse_action_variants():
    assert parse_action("reply", "hi") == ReplyAction(text="hi")
    assert parse_action("view_table", " Products ") == ViewTableAction(table_ref="Products")
    calc = parse_action("calculate_from_table", "Products")
    assert calc == CalculateFromTableAction(table_ref="Products", column="price", aggregation="sum")
    custom = parse_action("open_ticket", '{"queue": "sales"}')
    assert isinstance(custom, CustomAction)
    assert custom.kind == "open_ticket"
    assert custom.raw_payload == '{"queue": "sales"}'


def test_parse_action_rejects_bad_aggregation_and_long_payload():
    with pytest.raises(DataError):
        parse_action("calculate_from_table", "Products", aggregation="median")
    with pytest.raises(DataError):
        parse_action("reply", "x" * 10001)


def test_menu_crud_round_trip():
    registry = MenuRegistry(MemoryCollection())

    created = registry.create_menu("tenant-a", "main_menu", "Main menu", ITEMS)
    fetched = registry.get_menu("tenant-a", "main_menu")

    assert created.to_wire()["items"] == fetched.to_wire()["items"]
    assert [item.label for item in fetched.items] == ["Opening hours", "Price list"]
    assert fetched.items[1].action == ViewTableAction(table_ref="Products")

    registry.update_menu("tenant-a", "main_menu", "Start", ITEMS[:1])
    replaced = registry.get_menu("tenant-a", "main_menu")
    assert replaced.title == "Start"
    assert len(replaced.items) == 1

    registry.delete_menu("tenant-a", "main_menu")
    with pytest.raises(NotFound):
        registry.get_menu("tenant-a", "main_menu")


def test_duplicate_slug_conflicts_within_tenant_only():
    registry = MenuRegistry(MemoryCollection())
    registry.create_menu("tenant-a", "main_menu", "Main", ITEMS)

    with pytest.raises(Conflict):
        registry.create_menu("tenant-a", "main_menu", "Again", ITEMS)
    registry.create_menu("tenant-b", "main_menu", "Other tenant", ITEMS)

    assert registry.count("tenant-a") == 1
    assert registry.count("tenant-b") == 1


class RacingCollection(MemoryCollection):
    """A concurrent writer inserts the same slug between the check and the insert."""

    def insert_one(self, payload):
        raise DuplicateKeyError("E11000 duplicate key error collection: menus index: tenant_id_1_slug_1")


def test_unique_index_violation_becomes_conflict():
    registry = MenuRegistry(RacingCollection())

    with pytest.raises(Conflict) as excinfo:
        registry.create_menu("tenant-a", "main_menu", "Main", ITEMS)

    assert excinfo.value.status_code == 409


def test_update_and_delete_missing_menu():
    registry = MenuRegistry(MemoryCollection())

    with pytest.raises(NotFound):
        registry.update_menu("tenant-a", "ghost", "Ghost", [])
    with pytest.raises(NotFound):
        registry.delete_menu("tenant-a", "ghost")


@pytest.mark.parametrize("slug", ["has space", "", "x" * 65, "emoji🙂"])
def test_invalid_slugs_rejected(slug):
    registry = MenuRegistry(MemoryCollection())

    with pytest.raises(DataError):
        registry.create_menu("tenant-a", slug, "Title", [])


def test_nul_bytes_are_stripped():
    registry = MenuRegistry(MemoryCollection())

    menu = registry.create_menu("tenant-a", "promo", "Pro\x00mo", [{"label": "A\x00", "payload": "x\x00y"}])

    assert menu.title == "Promo"
    assert menu.items[0].label == "A"
    assert menu.items[0].action == ReplyAction(text="xy")


def test_bot_config_defaults_and_overrides():
    store = BotConfigStore(MemoryCollection())

    assert "didn't understand" in store.get("tenant-a", "default_reply")
    store.set("tenant-a", "default_reply", "Pardon?")
    store.set("tenant-a", "default_reply", "Say again?")

    assert store.get("tenant-a", "default_reply") == "Say again?"
    assert store.get_all("tenant-a") == {"default_reply": "Say again?"}
    assert store.count("tenant-b") == 0


def test_bot_config_validation():
    store = BotConfigStore(MemoryCollection())

    with pytest.raises(DataError):
        store.set("tenant-a", "bad key", "x")
    with pytest.raises(DataError):
        store.set("tenant-a", "welcome_message", "x" * 50001)
