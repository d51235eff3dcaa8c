from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from conftest import MemoryCollection, memory_quota_ledger
from src.errors import QuotaExceeded
from src.services.quota import QuotaLedger


class MutableClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _ledger(daily: int = 3, monthly: int = 10, clock=None, timezone: str = "UTC", tenants=None) -> QuotaLedger:
    return memory_quota_ledger(daily=daily, monthly=monthly, tenants=tenants, timezone=timezone, clock=clock)


def test_consume_until_daily_limit():
    ledger = _ledger(daily=3, monthly=10)

    decisions = [ledger.try_consume("tenant-a") for _ in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert decisions[2].remaining_daily == 0
    assert decisions[2].remaining_monthly == 7
    assert decisions[3].reason == "Daily message limit reached"
    assert ledger.status("tenant-a").today_sent == 3


def test_monthly_limit_blocks_before_daily():
    ledger = _ledger(daily=10, monthly=2)

    assert ledger.try_consume("tenant-a").allowed
    assert ledger.try_consume("tenant-a").allowed
    blocked = ledger.try_consume("tenant-a")

    assert not blocked.allowed
    assert blocked.reason == "Monthly message limit reached"


def test_zero_limit_means_unlimited():
    ledger = _ledger(daily=0, monthly=0)

    for _ in range(50):
        decision = ledger.try_consume("tenant-a")
        assert decision.allowed
    assert decision.remaining_daily == -1
    status = ledger.status("tenant-a")
    assert status.daily_remaining == -1
    assert status.daily_percent == 0
    assert status.today_sent == 50


def test_tenants_are_counted_separately():
    ledger = _ledger(daily=1, monthly=5)

    assert ledger.try_consume("tenant-a").allowed
    assert ledger.try_consume("tenant-b").allowed
    assert not ledger.try_consume("tenant-a").allowed


def test_daily_rollover_resets_only_daily_counter():
    clock = MutableClock(datetime(2024, 3, 10, 23, 59, tzinfo=ZoneInfo("UTC")))
    ledger = _ledger(daily=2, monthly=10, clock=clock)
    ledger.try_consume("tenant-a")
    ledger.try_consume("tenant-a")
    assert not ledger.try_consume("tenant-a").allowed

    clock.advance(minutes=2)
    decision = ledger.try_consume("tenant-a")

    assert decision.allowed
    status = ledger.status("tenant-a")
    assert status.today_sent == 1
    assert status.month_sent == 3


def test_monthly_rollover_resets_both_counters():
    clock = MutableClock(datetime(2024, 1, 31, 12, 0, tzinfo=ZoneInfo("UTC")))
    ledger = _ledger(daily=5, monthly=5, clock=clock)
    for _ in range(5):
        ledger.try_consume("tenant-a")
    assert not ledger.try_consume("tenant-a").allowed

    clock.advance(days=1)

    assert ledger.try_consume("tenant-a").allowed
    status = ledger.status("tenant-a")
    assert status.today_sent == 1
    assert status.month_sent == 1


def test_status_reports_zero_after_period_without_mutating():
    clock = MutableClock(datetime(2024, 5, 1, 8, 0, tzinfo=ZoneInfo("UTC")))
    ledger = _ledger(daily=5, monthly=50, clock=clock)
    ledger.try_consume("tenant-a", n=3)

    clock.advance(days=1)
    status = ledger.status("tenant-a")

    assert status.today_sent == 0
    assert status.month_sent == 3
    assert status.daily_remaining == 5
    # the stored counter still belongs to the previous day
    stored = ledger._counters.find_one({"tenant_id": "tenant-a"})
    assert stored["day"] == "2024-05-01"
    assert stored["today_sent"] == 3


def test_rollover_follows_configured_time_zone():
    # 23:30 UTC on the 10th is already the 11th in Jakarta
    clock = MutableClock(datetime(2024, 3, 10, 16, 30, tzinfo=ZoneInfo("UTC")))
    ledger = _ledger(daily=1, monthly=10, clock=clock, timezone="Asia/Jakarta")
    assert ledger.try_consume("tenant-a").allowed

    clock.advance(hours=7)

    assert ledger.try_consume("tenant-a").allowed


def test_percent_is_capped():
    ledger = _ledger(daily=4, monthly=10)
    ledger.try_consume("tenant-a", n=4)
    ledger.set_limits("tenant-a", daily_limit=2, monthly_limit=10)

    status = ledger.status("tenant-a")

    assert status.daily_percent == 100
    assert status.daily_remaining == 0
    assert status.monthly_percent == 40


def test_set_limits_rejects_negative_values():
    ledger = _ledger()

    with pytest.raises(ValueError):
        ledger.set_limits("tenant-a", daily_limit=-1, monthly_limit=10)


def test_consume_requires_positive_amount():
    ledger = _ledger()

    with pytest.raises(ValueError):
        ledger.try_consume("tenant-a", n=0)


def test_concurrent_consumers_never_exceed_limit():
    ledger = _ledger(daily=100, monthly=1000)

    with ThreadPoolExecutor(max_workers=16) as pool:
        decisions = list(pool.map(lambda _: ledger.try_consume("tenant-a"), range(500)))

    assert sum(1 for decision in decisions if decision.allowed) == 100
    assert ledger.status("tenant-a").today_sent == 100


def test_consume_raises_quota_exceeded_when_refused():
    ledger = _ledger(daily=1, monthly=10)
    ledger.consume("tenant-a")

    with pytest.raises(QuotaExceeded) as excinfo:
        ledger.consume("tenant-a")

    assert excinfo.value.message == "Daily message limit reached"
    assert excinfo.value.status_code == 429


def test_limits_are_read_from_the_tenant_record():
    tenants = MemoryCollection()
    tenants.insert_one({"tenant_id": "tenant-a", "username": "shop", "daily_limit": 1, "monthly_limit": 0})
    ledger = _ledger(daily=50, monthly=500, tenants=tenants)

    assert ledger.try_consume("tenant-a").allowed
    assert not ledger.try_consume("tenant-a").allowed
    assert ledger.limits("tenant-b") == (50, 500)

    ledger.set_limits("tenant-a", daily_limit=5, monthly_limit=20)

    stored = tenants.find_one({"tenant_id": "tenant-a"})
    assert (stored["daily_limit"], stored["monthly_limit"]) == (5, 20)
    assert stored["username"] == "shop"
    assert ledger.try_consume("tenant-a").allowed


def test_counters_survive_a_new_ledger_instance():
    counters, history, tenants = MemoryCollection(), MemoryCollection(), MemoryCollection()

    def build() -> QuotaLedger:
        return QuotaLedger(counters, history, tenants, default_daily_limit=2, default_monthly_limit=10)

    build().try_consume("tenant-a")
    build().try_consume("tenant-a")

    assert not build().try_consume("tenant-a").allowed
    assert build().status("tenant-a").today_sent == 2


def test_received_messages_are_counted_without_consuming_quota():
    ledger = _ledger(daily=1, monthly=10)

    ledger.record_received("tenant-a")
    ledger.record_received("tenant-a")
    status = ledger.status("tenant-a")

    assert status.today_received == 2
    assert status.month_received == 2
    assert status.today_sent == 0
    assert ledger.try_consume("tenant-a").allowed


def test_usage_history_is_zero_filled_and_ascending():
    clock = MutableClock(datetime(2024, 6, 10, 9, 0, tzinfo=ZoneInfo("UTC")))
    ledger = _ledger(daily=0, monthly=0, clock=clock)
    ledger.try_consume("tenant-a", n=2)
    ledger.record_received("tenant-a")
    clock.advance(days=2)
    ledger.try_consume("tenant-a")
    ledger.try_consume("tenant-b", n=7)

    history = ledger.usage_history("tenant-a", days=4)

    assert history == [
        {"date": "2024-06-09", "messages_sent": 0, "messages_received": 0},
        {"date": "2024-06-10", "messages_sent": 2, "messages_received": 1},
        {"date": "2024-06-11", "messages_sent": 0, "messages_received": 0},
        {"date": "2024-06-12", "messages_sent": 1, "messages_received": 0},
    ]
    with pytest.raises(ValueError):
        ledger.usage_history("tenant-a", days=0)
