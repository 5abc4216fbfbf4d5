"""
Usage Ledger — process-wide daily counters of tokens, calls and spend.

The ledger belongs to one calendar day in a reference timezone (UTC by
default).  Every read or write first rolls it over: if the stored day is no
longer today, the counters start again from zero.  Rounding only happens when
a report is built, never inside the ledger.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    day: str
    tokens_used: int
    call_count: int
    spent_usd: float


class UsageLedger:
    """
    Daily usage counters.

    Args:
        timezone: IANA name of the timezone whose midnight starts a new day
        clock:    Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ):
        tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(tz))
        self._tz = tz
        self._lock = threading.Lock()
        self._day = self._today()
        self._tokens_used = 0
        self._call_count = 0
        self._spent_usd = 0.0

    def _today(self) -> date:
        now = self._clock()
        if now.tzinfo is not None:
            now = now.astimezone(self._tz)
        return now.date()

    def _rollover_locked(self):
        today = self._today()
        if today != self._day:
            logger.info(
                "Usage ledger rollover %s → %s (spent=$%.6f, calls=%d)",
                self._day, today, self._spent_usd, self._call_count,
            )
            self._day = today
            self._tokens_used = 0
            self._call_count = 0
            self._spent_usd = 0.0

    def rollover(self):
        """Reset the counters if the calendar day has changed.  Idempotent."""
        with self._lock:
            self._rollover_locked()

    def record_usage(
        self,
        input_units: int,
        output_units: int,
        price_in: float,
        price_out: float,
    ) -> float:
        """Account for one provider call.  Returns the cost of this call."""
        cost = input_units * price_in + output_units * price_out
        with self._lock:
            self._rollover_locked()
            self._tokens_used += input_units + output_units
            self._call_count += 1
            self._spent_usd += cost
        return cost

    def is_over_budget(self, ceiling: float | None) -> bool:
        """True once today's spend reaches ``ceiling``.  No ceiling = unlimited."""
        if ceiling is None or isinstance(ceiling, bool):
            return False
        try:
            ceiling = float(ceiling)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(ceiling):
            return False
        with self._lock:
            self._rollover_locked()
            return self._spent_usd >= ceiling

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            self._rollover_locked()
            return LedgerSnapshot(
                day=self._day.isoformat(),
                tokens_used=self._tokens_used,
                call_count=self._call_count,
                spent_usd=self._spent_usd,
            )
