from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, is_dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from langgraph.graph import END, StateGraph

from src.adapters.base import Button, ChannelKind, InboundEvent, OutboundMessage
from src.errors import DataError, NotFound, QuotaExceeded, TenantMismatch
from src.orchestrator.intents import Intent, Outcome
from src.orchestrator.state import DispatchState, Quote
from src.services.bot_config import BotConfigStore
from src.services.datasets import DatasetStore
from src.services.menus import (
    MAIN_MENU,
    CalculateFromTableAction,
    CustomAction,
    Menu,
    MenuRegistry,
    ReplyAction,
    ViewTableAction,
)
from src.services.quota import QuotaLedger

logger = logging.getLogger(__name__)

MENU_COMMANDS = {"menu", "help", "?"}
SEARCH_PREFIXES = ("search ", "cari ", "harga ")
TOKEN_PATTERN = re.compile(r"^dyn:([a-zA-Z0-9_-]{1,64}):(\d+)$")
_CURRENCY_PATTERN = re.compile(r"(?i)rp|\$|,|\s")
# "30 tumbler", "30 tumbler 30kg", "50 steel rod 500g"
QUOTE_PATTERN = re.compile(r"^(\d+)\s+(.+?)(?:\s*(\d+)\s*(kg|g))?$")
WEIGHT_PATTERN = re.compile(r"\d+\s*(kg|g)\b")
NAME_COLUMNS = ("name", "nama", "product", "produk", "item")
PRICE_COLUMNS = ("price", "harga", "unit_price", "cost")
CURRENCY_COLUMNS = ("currency", "mata_uang")
CALCULATION_HINT = (
    "To calculate a price, pick a product from the MENU and then enter the quantity, "
    "for example \"30 tumbler\" or \"30 tumbler 30kg\".\n\nType MENU to see the options."
)


@dataclass
class DispatchResult:
    message: OutboundMessage
    outcome: Outcome
    next_menu: Optional[str]


def button_token(slug: str, index: int) -> str:
    return f"dyn:{slug}:{index}"


def parse_button_token(value: Optional[str]) -> Optional[Tuple[str, int]]:
    match = TOKEN_PATTERN.match((value or "").strip())
    if not match:
        return None
    return match.group(1), int(match.group(2))


def menu_buttons(menu: Menu) -> List[Button]:
    return [Button(label=item.label, token=button_token(menu.slug, index)) for index, item in enumerate(menu.items)]


def parse_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise DataError(f"'{value}' is not a number")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = _CURRENCY_PATTERN.sub("", str(value if value is not None else ""))
        if not cleaned:
            raise DataError("Empty value where a number was expected")
        try:
            number = float(cleaned)
        except ValueError as exc:
            raise DataError(f"'{value}' is not a number") from exc
    if not math.isfinite(number):
        raise DataError(f"'{value}' is not a finite number")
    return number


def aggregate(rows: Sequence[Dict[str, Any]], columns: Iterable[str], column: str, aggregation: str) -> float:
    if column not in columns:
        raise DataError(f"Column '{column}' does not exist")
    if aggregation == "count":
        return float(len(rows))
    values = [parse_amount(row.get(column)) for row in rows]
    if aggregation == "sum":
        return sum(values)
    if aggregation == "average":
        if not values:
            raise DataError("Table has no rows to average")
        return sum(values) / len(values)
    raise DataError(f"Unsupported aggregation '{aggregation}'")


def format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def format_row(row: Dict[str, Any]) -> str:
    return ", ".join(f"{key}: {value}" for key, value in row.items() if key != "id")


def parse_quote(text: str) -> Optional[Tuple[int, str, int]]:
    """Split "30 tumbler 30kg" into (quantity, product, weight in grams)."""
    match = QUOTE_PATTERN.match(text.strip().lower())
    if not match:
        return None
    quantity, product, weight, unit = match.groups()
    grams = 0
    if weight:
        grams = int(weight) * 1000 if unit == "kg" else int(weight)
    return int(quantity), product.strip(), grams


def price_of(row: Dict[str, Any]) -> Optional[float]:
    for column in PRICE_COLUMNS:
        if column not in row:
            continue
        try:
            return parse_amount(row[column])
        except DataError:
            continue
    return None


class ActionDispatcher:
    """LangGraph state machine resolving one inbound event into one reply."""

    def __init__(
        self,
        menus: MenuRegistry,
        datasets: DatasetStore,
        quota: QuotaLedger,
        bot_config: BotConfigStore,
        greeting_keywords: Iterable[str] = ("/start", "start", "hi", "hello"),
        view_table_row_cap: int = 10,
        search_result_cap: int = 5,
    ) -> None:
        self._menus = menus
        self._datasets = datasets
        self._quota = quota
        self._bot_config = bot_config
        self._greetings = {keyword.strip().lower() for keyword in greeting_keywords}
        self._row_cap = view_table_row_cap
        self._search_cap = search_result_cap
        self._graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DispatchState)

        graph.add_node("classify", self._classify_node)
        graph.add_node("quota_gate", self._quota_node)
        graph.add_node("welcome", self._welcome_node)
        graph.add_node("menu_list", self._menu_list_node)
        graph.add_node("open_menu", self._open_menu_node)
        graph.add_node("search", self._search_node)
        graph.add_node("quote", self._quote_node)
        graph.add_node("calculation_hint", self._calculation_hint_node)
        graph.add_node("reply", self._reply_node)
        graph.add_node("view_table", self._view_table_node)
        graph.add_node("calculate_from_table", self._calculate_node)
        graph.add_node("custom", self._custom_node)
        graph.add_node("fallback", self._fallback_node)
        graph.add_node("quota_exceeded", self._quota_exceeded_node)

        graph.set_entry_point("classify")
        graph.add_edge("classify", "quota_gate")

        handlers = [
            "welcome",
            "menu_list",
            "open_menu",
            "search",
            "quote",
            "calculation_hint",
            "reply",
            "view_table",
            "calculate_from_table",
            "custom",
            "fallback",
            "quota_exceeded",
        ]
        graph.add_conditional_edges(
            "quota_gate",
            self._route,
            {name: name for name in handlers},
        )
        for name in handlers:
            graph.add_edge(name, END)
        return graph

    # classification

    def _match_current_menu(self, tenant_id: str, current: str, text: str) -> Optional[Tuple[Menu, int]]:
        menu = self._menus.find_menu(tenant_id, current)
        if menu is None and current != MAIN_MENU:
            menu = self._menus.find_menu(tenant_id, MAIN_MENU)
        if menu is None:
            return None
        for index, item in enumerate(menu.items):
            if item.label == text:
                return menu, index
        if text.isdigit():
            number = int(text)
            if 1 <= number <= len(menu.items):
                return menu, number - 1
        return None

    def _classify_node(self, state: DispatchState) -> Dict[str, Any]:
        event = state.event
        text = (event.text or "").strip()
        lowered = text.lower()

        if event.kind == "session_start" or (text and lowered in self._greetings):
            return {"intent": Intent.SESSION_START, "target_menu": MAIN_MENU}

        token = parse_button_token(event.callback_data if event.kind == "callback" else text)
        if token is not None:
            slug, index = token
            menu = self._menus.find_menu(state.tenant_id, slug)
            if menu is not None and 0 <= index < len(menu.items):
                return {"intent": Intent.ACTION, "target_menu": slug, "action": menu.items[index].action}
            return {"intent": Intent.FALLBACK}
        if event.kind == "callback" or not text:
            return {"intent": Intent.FALLBACK}

        if lowered in MENU_COMMANDS:
            return {"intent": Intent.MENU_LIST}

        matched = self._match_current_menu(state.tenant_id, state.current_menu, text)
        if matched is not None:
            menu, index = matched
            return {"intent": Intent.ACTION, "target_menu": menu.slug, "action": menu.items[index].action}

        for menu in self._menus.list_menus(state.tenant_id):
            if text == menu.slug or text == menu.title:
                return {"intent": Intent.OPEN_MENU, "target_menu": menu.slug}

        for prefix in SEARCH_PREFIXES:
            if lowered.startswith(prefix) and text[len(prefix):].strip():
                return {"intent": Intent.SEARCH, "query": text[len(prefix):].strip()}

        parsed = parse_quote(text)
        if parsed is not None:
            quote = self._find_quote(state.tenant_id, *parsed)
            if quote is not None:
                return {"intent": Intent.QUOTE, "quote": quote}

        if WEIGHT_PATTERN.search(lowered):
            return {"intent": Intent.CALCULATION_HINT}

        return {"intent": Intent.FALLBACK}

    def _find_quote(self, tenant_id: str, quantity: int, product: str, weight_grams: int) -> Optional[Quote]:
        for table in self._datasets.list_tables(tenant_id):
            for row in self._datasets.list_rows(tenant_id, table.table_id):
                names = [str(row[column]) for column in NAME_COLUMNS if row.get(column) not in (None, "")]
                if not any(product in name.lower() for name in names):
                    continue
                currency = next((str(row[column]) for column in CURRENCY_COLUMNS if row.get(column)), "")
                return Quote(
                    product=names[0],
                    quantity=quantity,
                    weight_grams=weight_grams,
                    price=price_of(row),
                    currency=currency,
                )
        return None

    def _quota_node(self, state: DispatchState) -> Dict[str, Any]:
        try:
            self._quota.consume(state.tenant_id)
        except QuotaExceeded as exc:
            logger.info(
                "Outbound message blocked by quota",
                extra={"tenant_id": state.tenant_id, "reason": exc.message},
            )
            return {"allowed": False}
        return {"allowed": True}

    def _route(self, state: DispatchState) -> str:
        if not state.allowed:
            return "quota_exceeded"
        if state.intent == Intent.SESSION_START:
            return "welcome"
        if state.intent == Intent.MENU_LIST:
            return "menu_list"
        if state.intent == Intent.OPEN_MENU:
            return "open_menu"
        if state.intent == Intent.SEARCH:
            return "search"
        if state.intent == Intent.QUOTE:
            return "quote"
        if state.intent == Intent.CALCULATION_HINT:
            return "calculation_hint"
        if state.intent == Intent.ACTION:
            action = state.action
            if isinstance(action, ReplyAction):
                return "reply"
            if isinstance(action, ViewTableAction):
                return "view_table"
            if isinstance(action, CalculateFromTableAction):
                return "calculate_from_table"
            return "custom"
        return "fallback"

    # handlers

    def _welcome_node(self, state: DispatchState) -> Dict[str, Any]:
        menu = self._menus.find_menu(state.tenant_id, MAIN_MENU)
        return {
            "outcome": Outcome.WELCOME,
            "reply": self._bot_config.get(state.tenant_id, "welcome_message"),
            "buttons": menu_buttons(menu) if menu else [],
            "next_menu": MAIN_MENU,
        }

    def _menu_list_node(self, state: DispatchState) -> Dict[str, Any]:
        menus = self._menus.list_menus(state.tenant_id)
        if not menus:
            text = "No menus have been configured yet."
        else:
            lines = ["Available menus:", ""]
            for number, menu in enumerate(menus, start=1):
                lines.append(f"{number}. {menu.title}")
                lines.extend(f"   • {item.label}" for item in menu.items)
                lines.append("")
            lines.append("Type a menu name or option to continue.")
            text = "\n".join(lines)
        return {"outcome": Outcome.MENU_LIST, "reply": text, "next_menu": state.current_menu}

    def _open_menu_node(self, state: DispatchState) -> Dict[str, Any]:
        menu = self._menus.get_menu(state.tenant_id, state.target_menu)
        return {
            "outcome": Outcome.OPEN_MENU,
            "reply": menu.title,
            "buttons": menu_buttons(menu),
            "next_menu": menu.slug,
        }

    def _search_node(self, state: DispatchState) -> Dict[str, Any]:
        hits = self._datasets.search(state.tenant_id, state.query, limit=self._search_cap)
        if not hits:
            text = f'No results found for "{state.query}".\n\nType MENU to see the options.'
        else:
            lines = [f'Search results for "{state.query}":', ""]
            lines.extend(f"• {hit.display_name}: {format_row(hit.row)}" for hit in hits)
            text = "\n".join(lines)
        return {"outcome": Outcome.SEARCH, "reply": text, "next_menu": state.current_menu}

    def _quote_node(self, state: DispatchState) -> Dict[str, Any]:
        quote = state.quote
        result: Dict[str, Any] = {"outcome": Outcome.QUOTE, "next_menu": state.current_menu}
        if quote.price is None:
            result["reply"] = f"No price is listed for {quote.product}. Add a price or harga column to the table."
            return result

        suffix = f" {quote.currency}" if quote.currency else ""
        if quote.weight_grams:
            kilograms = quote.weight_grams / 1000
            total = quote.price * kilograms
            calculation = f"{format_number(quote.price)} × {format_number(kilograms)} kg"
        else:
            total = quote.price * quote.quantity
            calculation = f"{format_number(quote.price)} × {quote.quantity} units"
        result["reply"] = "\n".join(
            [
                "Price calculation",
                "",
                f"Product: {quote.product}",
                f"Quantity: {quote.quantity}",
                f"Price: {format_number(quote.price)}{suffix}",
                f"Calculation: {calculation}",
                "",
                f"Total: {format_number(total)}{suffix}",
            ]
        )
        return result

    def _calculation_hint_node(self, state: DispatchState) -> Dict[str, Any]:
        return {"outcome": Outcome.CALCULATION_HINT, "reply": CALCULATION_HINT, "next_menu": state.current_menu}

    def _reply_node(self, state: DispatchState) -> Dict[str, Any]:
        return {"outcome": Outcome.REPLY, "reply": state.action.text, "next_menu": state.target_menu}

    def _view_table_node(self, state: DispatchState) -> Dict[str, Any]:
        reference = state.action.table_ref
        result: Dict[str, Any] = {"outcome": Outcome.VIEW_TABLE, "next_menu": state.target_menu}
        try:
            table = self._datasets.find_table(state.tenant_id, reference)
            rows = self._datasets.list_rows(state.tenant_id, table.table_id)
        except (NotFound, TenantMismatch):
            result["reply"] = f"Table '{reference}' was not found."
            return result

        if not rows:
            result["reply"] = f"Table '{table.display_name}' is empty."
            return result

        lines = [f"{table.display_name} data:", ""]
        lines.extend(f"- {format_row(row)}" for row in rows[: self._row_cap])
        if len(rows) > self._row_cap:
            lines.append("")
            lines.append(f"...and {len(rows) - self._row_cap} more rows.")
        result["reply"] = "\n".join(lines)
        return result

    def _calculate_node(self, state: DispatchState) -> Dict[str, Any]:
        action = state.action
        result: Dict[str, Any] = {"outcome": Outcome.CALCULATE, "next_menu": state.target_menu}
        try:
            table = self._datasets.find_table(state.tenant_id, action.table_ref)
            rows = self._datasets.list_rows(state.tenant_id, table.table_id)
        except (NotFound, TenantMismatch):
            result["reply"] = f"Table '{action.table_ref}' was not found."
            return result

        try:
            value = aggregate(rows, table.columns, action.column, action.aggregation)
        except DataError as exc:
            result["reply"] = f"Cannot calculate {action.aggregation} of '{action.column}': {exc.message}"
            return result

        result["reply"] = (
            f"{action.aggregation.capitalize()} of {action.column} in {table.display_name}: "
            f"{format_number(value)}"
        )
        return result

    def _custom_node(self, state: DispatchState) -> Dict[str, Any]:
        action = state.action
        kind = action.kind if isinstance(action, CustomAction) else "unknown"
        return {
            "outcome": Outcome.CUSTOM,
            "reply": f"Action '{kind}' is not supported yet.",
            "next_menu": state.target_menu,
        }

    def _fallback_node(self, state: DispatchState) -> Dict[str, Any]:
        return {
            "outcome": Outcome.FALLBACK,
            "reply": self._bot_config.get(state.tenant_id, "default_reply"),
            "next_menu": state.current_menu,
        }

    def _quota_exceeded_node(self, state: DispatchState) -> Dict[str, Any]:
        return {
            "outcome": Outcome.QUOTA_EXCEEDED,
            "reply": self._bot_config.get(state.tenant_id, "quota_exceeded_message"),
            "buttons": [],
            "next_menu": state.current_menu,
        }

    def fallback(self, tenant_id: str, event: InboundEvent) -> OutboundMessage:
        """Tenant's default reply, sent when dispatching an event failed."""
        return OutboundMessage(chat_id=event.chat_id, text=self._bot_config.get(tenant_id, "default_reply"))

    def dispatch(
        self,
        tenant_id: str,
        channel: ChannelKind,
        event: InboundEvent,
        current_menu: str = MAIN_MENU,
    ) -> DispatchResult:
        self._quota.record_received(tenant_id)
        state = DispatchState(tenant_id=tenant_id, channel=channel, event=event, current_menu=current_menu)
        result = self._graph.invoke(state.as_input())
        if is_dataclass(result):
            result = result.as_input()
        if not isinstance(result, dict):
            raise TypeError(f"Unsupported state result from graph: {type(result)!r}")

        outcome = result.get("outcome", Outcome.FALLBACK)
        if not isinstance(outcome, Outcome):
            outcome = Outcome(outcome)
        logger.debug(
            "Dispatched event",
            extra={"tenant_id": tenant_id, "channel": channel.value, "outcome": outcome.value},
        )
        return DispatchResult(
            message=OutboundMessage(
                chat_id=event.chat_id,
                text=result.get("reply", ""),
                buttons=list(result.get("buttons") or []),
            ),
            outcome=outcome,
            next_menu=result.get("next_menu") or current_menu,
        )
