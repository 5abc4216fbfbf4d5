"""
Tests for the daily usage ledger.
"""

from datetime import datetime, timedelta, timezone

import pytest

from iching_gateway.ledger import UsageLedger


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 23, 59, 0, tzinfo=timezone.utc))


def test_ledger_starts_empty(clock):
    ledger = UsageLedger(clock=clock)
    snap = ledger.snapshot()
    assert snap.day == "2026-03-01"
    assert (snap.tokens_used, snap.call_count, snap.spent_usd) == (0, 0, 0.0)


def test_record_usage_exact_cost(clock):
    ledger = UsageLedger(clock=clock)
    cost = ledger.record_usage(1200, 800, 0.15 / 1e6, 0.60 / 1e6)
    ledger.record_usage(10, 5, 0.001, 0.002)

    snap = ledger.snapshot()
    assert cost == pytest.approx(1200 * 0.15e-6 + 800 * 0.60e-6)
    assert snap.tokens_used == 2015
    assert snap.call_count == 2
    assert snap.spent_usd == pytest.approx(cost + 10 * 0.001 + 5 * 0.002)


def test_rollover_on_first_operation_after_midnight(clock):
    ledger = UsageLedger(clock=clock)
    ledger.record_usage(100, 100, 0.01, 0.01)

    clock.now += timedelta(seconds=30)  # still 23:59:30
    ledger.rollover()
    assert ledger.snapshot().call_count == 1

    clock.now += timedelta(minutes=1)  # 2026-03-02 00:00:30
    snap = ledger.snapshot()
    assert snap.day == "2026-03-02"
    assert (snap.tokens_used, snap.call_count, snap.spent_usd) == (0, 0, 0.0)


def test_rollover_is_idempotent(clock):
    ledger = UsageLedger(clock=clock)
    clock.now += timedelta(days=1)
    ledger.rollover()
    ledger.record_usage(1, 1, 1.0, 1.0)
    ledger.rollover()
    assert ledger.snapshot().spent_usd == pytest.approx(2.0)


def test_record_usage_after_midnight_starts_fresh_day(clock):
    ledger = UsageLedger(clock=clock)
    ledger.record_usage(5, 5, 1.0, 1.0)
    clock.now += timedelta(days=1)
    ledger.record_usage(1, 0, 1.0, 1.0)
    snap = ledger.snapshot()
    assert snap.call_count == 1
    assert snap.spent_usd == pytest.approx(1.0)


def test_day_follows_reference_timezone():
    # 16:00 UTC is already the next day in Seoul
    clock = Clock(datetime(2026, 3, 1, 16, 0, tzinfo=timezone.utc))
    assert UsageLedger(timezone="Asia/Seoul", clock=clock).snapshot().day == "2026-03-02"
    assert UsageLedger(timezone="UTC", clock=clock).snapshot().day == "2026-03-01"


def test_over_budget_threshold(clock):
    ledger = UsageLedger(clock=clock)
    assert ledger.is_over_budget(1.0) is False
    ledger.record_usage(1, 0, 0.999, 0.0)
    assert ledger.is_over_budget(1.0) is False
    ledger.record_usage(1, 0, 0.001, 0.0)
    assert ledger.is_over_budget(1.0) is True


def test_over_budget_resets_next_day(clock):
    ledger = UsageLedger(clock=clock)
    ledger.record_usage(1, 0, 5.0, 0.0)
    assert ledger.is_over_budget(1.0) is True
    clock.now += timedelta(days=1)
    assert ledger.is_over_budget(1.0) is False


@pytest.mark.parametrize("ceiling", [None, float("inf"), float("nan"), "abc", ""])
def test_unset_budget_is_unlimited(clock, ceiling):
    ledger = UsageLedger(clock=clock)
    ledger.record_usage(10**9, 10**9, 1.0, 1.0)
    assert ledger.is_over_budget(ceiling) is False


def test_zero_budget_blocks_immediately(clock):
    assert UsageLedger(clock=clock).is_over_budget(0) is True
