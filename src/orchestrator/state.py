from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.adapters.base import Button, ChannelKind, InboundEvent
from src.orchestrator.intents import Intent, Outcome
from src.services.menus import MAIN_MENU, Action


@dataclass
class Quote:
    product: str
    quantity: int
    weight_grams: int = 0
    price: Optional[float] = None
    currency: str = ""


@dataclass
class DispatchState:
    tenant_id: str = ""
    channel: ChannelKind = ChannelKind.TELEGRAM
    event: Optional[InboundEvent] = None
    current_menu: str = MAIN_MENU
    intent: Intent = Intent.FALLBACK
    # Menu and action resolved by classification.
    target_menu: Optional[str] = None
    action: Optional[Action] = None
    query: str = ""
    quote: Optional[Quote] = None
    allowed: bool = True
    outcome: Outcome = Outcome.FALLBACK
    reply: str = ""
    buttons: List[Button] = field(default_factory=list)
    next_menu: Optional[str] = None

    def as_input(self) -> Dict[str, Any]:
        # Shallow: nested dataclasses reach the nodes unconverted.
        return {name: getattr(self, name) for name in self.__dataclass_fields__}
