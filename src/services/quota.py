from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from src.errors import QuotaExceeded

logger = logging.getLogger(__name__)

UNLIMITED = -1
_ROLLOVER_ATTEMPTS = 3


@dataclass
class QuotaDecision:
    allowed: bool
    remaining_daily: int
    remaining_monthly: int
    reason: Optional[str] = None


@dataclass
class QuotaStatus:
    daily_limit: int
    monthly_limit: int
    today_sent: int
    month_sent: int
    daily_remaining: int
    monthly_remaining: int
    daily_percent: int
    monthly_percent: int
    today_received: int = 0
    month_received: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _remaining(limit: int, sent: int) -> int:
    if limit <= 0:
        return UNLIMITED
    return max(limit - sent, 0)


def _percent(limit: int, sent: int) -> int:
    if limit <= 0:
        return 0
    return min((sent * 100) // limit, 100)


class QuotaLedger:
    """Per-tenant daily/monthly outbound message accounting backed by MongoDB.

    Each tenant owns one counter document carrying the day and month it
    belongs to. Rollover resets are conditional updates, and the limit check
    is part of the ``find_one_and_update`` filter, so concurrent consumers
    never push a counter past its limit. Limits are stored on the tenant
    record; per-day totals go to a separate history collection.
    """

    def __init__(
        self,
        counters,
        history,
        tenants,
        default_daily_limit: int,
        default_monthly_limit: int,
        timezone: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._counters = counters
        self._history = history
        self._tenants = tenants
        self._default_daily = default_daily_limit
        self._default_monthly = default_monthly_limit
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))

    def _today(self) -> date:
        now = self._clock()
        if now.tzinfo is not None:
            now = now.astimezone(self._tz)
        return now.date()

    def _keys(self) -> Tuple[str, str]:
        today = self._today()
        return today.isoformat(), today.strftime("%Y-%m")

    def limits(self, tenant_id: str) -> Tuple[int, int]:
        document = self._tenants.find_one({"tenant_id": tenant_id}) or {}
        daily = document.get("daily_limit")
        monthly = document.get("monthly_limit")
        return (
            self._default_daily if daily is None else int(daily),
            self._default_monthly if monthly is None else int(monthly),
        )

    def _roll(self, tenant_id: str, day: str, month: str) -> None:
        try:
            self._counters.update_one(
                {"tenant_id": tenant_id},
                {
                    "$setOnInsert": {
                        "day": day,
                        "month": month,
                        "today_sent": 0,
                        "month_sent": 0,
                        "today_received": 0,
                        "month_received": 0,
                    }
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # Another writer created the counter first.
            pass

        rolled = self._counters.update_one(
            {"tenant_id": tenant_id, "month": {"$lt": month}},
            {
                "$set": {
                    "day": day,
                    "month": month,
                    "today_sent": 0,
                    "month_sent": 0,
                    "today_received": 0,
                    "month_received": 0,
                }
            },
        )
        if not rolled.modified_count:
            rolled = self._counters.update_one(
                {"tenant_id": tenant_id, "day": {"$lt": day}},
                {"$set": {"day": day, "today_sent": 0, "today_received": 0}},
            )
        if rolled.modified_count:
            logger.info("Quota rollover", extra={"tenant_id": tenant_id, "day": day})

    def try_consume(self, tenant_id: str, n: int = 1) -> QuotaDecision:
        if n < 1:
            raise ValueError("n must be a positive integer")
        daily_limit, monthly_limit = self.limits(tenant_id)
        current: Dict[str, Any] = {}
        for attempt in range(_ROLLOVER_ATTEMPTS):
            day, month = self._keys()
            self._roll(tenant_id, day, month)

            query: Dict[str, Any] = {"tenant_id": tenant_id, "day": day, "month": month}
            if daily_limit > 0:
                query["today_sent"] = {"$lte": daily_limit - n}
            if monthly_limit > 0:
                query["month_sent"] = {"$lte": monthly_limit - n}
            document = self._counters.find_one_and_update(
                query,
                {"$inc": {"today_sent": n, "month_sent": n}},
                return_document=ReturnDocument.AFTER,
            )
            if document is not None:
                self._history.update_one(
                    {"tenant_id": tenant_id, "date": day},
                    {"$inc": {"messages_sent": n}},
                    upsert=True,
                )
                return QuotaDecision(
                    allowed=True,
                    remaining_daily=_remaining(daily_limit, document["today_sent"]),
                    remaining_monthly=_remaining(monthly_limit, document["month_sent"]),
                )

            current = self._counters.find_one({"tenant_id": tenant_id}) or {}
            if (current.get("day"), current.get("month")) == (day, month):
                break
            logger.debug("Counter rolled over during consume", extra={"tenant_id": tenant_id, "attempt": attempt})

        today_sent = current.get("today_sent", 0)
        month_sent = current.get("month_sent", 0)
        if daily_limit > 0 and today_sent + n > daily_limit:
            reason = "Daily message limit reached"
        else:
            reason = "Monthly message limit reached"
        return QuotaDecision(
            allowed=False,
            remaining_daily=_remaining(daily_limit, today_sent),
            remaining_monthly=_remaining(monthly_limit, month_sent),
            reason=reason,
        )

    def consume(self, tenant_id: str, n: int = 1) -> QuotaDecision:
        """Like ``try_consume`` but raises ``QuotaExceeded`` when the message is refused."""
        decision = self.try_consume(tenant_id, n)
        if not decision.allowed:
            raise QuotaExceeded(decision.reason or "Message limit reached")
        return decision

    def record_received(self, tenant_id: str) -> None:
        day, month = self._keys()
        self._roll(tenant_id, day, month)
        self._counters.update_one(
            {"tenant_id": tenant_id, "day": day, "month": month},
            {"$inc": {"today_received": 1, "month_received": 1}},
        )
        self._history.update_one(
            {"tenant_id": tenant_id, "date": day},
            {"$inc": {"messages_received": 1}},
            upsert=True,
        )

    def status(self, tenant_id: str) -> QuotaStatus:
        daily_limit, monthly_limit = self.limits(tenant_id)
        day, month = self._keys()
        document = self._counters.find_one({"tenant_id": tenant_id}) or {}
        # Display only; a stale counter is reset by the next write.
        same_month = document.get("month") == month
        same_day = same_month and document.get("day") == day
        today_sent = document.get("today_sent", 0) if same_day else 0
        month_sent = document.get("month_sent", 0) if same_month else 0
        return QuotaStatus(
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            today_sent=today_sent,
            month_sent=month_sent,
            daily_remaining=_remaining(daily_limit, today_sent),
            monthly_remaining=_remaining(monthly_limit, month_sent),
            daily_percent=_percent(daily_limit, today_sent),
            monthly_percent=_percent(monthly_limit, month_sent),
            today_received=document.get("today_received", 0) if same_day else 0,
            month_received=document.get("month_received", 0) if same_month else 0,
        )

    def usage_history(self, tenant_id: str, days: int = 7) -> List[Dict[str, Any]]:
        """Sent/received totals for the last ``days`` days, oldest first, zero-filled."""
        if days < 1:
            raise ValueError("days must be a positive integer")
        today = self._today()
        dates = [(today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]
        recorded = {
            document["date"]: document
            for document in self._history.find({"tenant_id": tenant_id, "date": {"$gte": dates[0]}})
        }
        return [
            {
                "date": key,
                "messages_sent": recorded.get(key, {}).get("messages_sent", 0),
                "messages_received": recorded.get(key, {}).get("messages_received", 0),
            }
            for key in dates
        ]

    def set_limits(self, tenant_id: str, daily_limit: int, monthly_limit: int) -> QuotaStatus:
        if daily_limit < 0 or monthly_limit < 0:
            raise ValueError("Limits cannot be negative")
        self._tenants.update_one(
            {"tenant_id": tenant_id},
            {"$set": {"daily_limit": daily_limit, "monthly_limit": monthly_limit}},
            upsert=True,
        )
        logger.info(
            "Quota limits updated",
            extra={"tenant_id": tenant_id, "daily_limit": daily_limit, "monthly_limit": monthly_limit},
        )
        return self.status(tenant_id)
