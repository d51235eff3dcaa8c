from __future__ import annotations

from enum import Enum


class Intent(str, Enum):
    SESSION_START = "SESSION_START"
    MENU_LIST = "MENU_LIST"
    OPEN_MENU = "OPEN_MENU"
    SEARCH = "SEARCH"
    QUOTE = "QUOTE"
    CALCULATION_HINT = "CALCULATION_HINT"
    ACTION = "ACTION"
    FALLBACK = "FALLBACK"


class Outcome(str, Enum):
    WELCOME = "welcome"
    MENU_LIST = "menu_list"
    OPEN_MENU = "open_menu"
    SEARCH = "search"
    QUOTE = "quote"
    CALCULATION_HINT = "calculation_hint"
    REPLY = "reply"
    VIEW_TABLE = "view_table"
    CALCULATE = "calculate_from_table"
    CUSTOM = "custom"
    FALLBACK = "fallback"
    QUOTA_EXCEEDED = "quota_exceeded"
