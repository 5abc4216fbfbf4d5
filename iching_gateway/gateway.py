"""
Reading Gateway — the request lifecycle in front of the provider.

Pipeline:
  1. Fingerprint the request
  2. Check the response cache → return immediately on a hit
  3. Try the single-flight gate → reject as busy if taken
  4. Check the daily budget → reject if spent
  5. Call the provider (spacing, one throttle retry, self-throttle)
  6. Store the reading in the cache and return it

The gate is released exactly once, in a ``finally``, on every path past
step 3.  Rejections and failures are raised as ``GatewayError``.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from iching_gateway.cache import ResponseCache
from iching_gateway.errors import BudgetExceeded, Busy
from iching_gateway.fingerprint import build_fingerprint
from iching_gateway.ledger import UsageLedger
from iching_gateway.models import AppConfig, ReadingRequest, ReadingResponse
from iching_gateway.prompt_loader import ReadingPrompt, build_messages
from iching_gateway.single_flight import KeyedSingleFlightGate, SingleFlightGate
from iching_gateway.upstream import UpstreamCaller

logger = logging.getLogger(__name__)


class ReadingGateway:
    """Composes cache, gate, ledger and caller.  All collaborators injected."""

    def __init__(
        self,
        config: AppConfig,
        prompt: ReadingPrompt,
        cache: ResponseCache | None,
        ledger: UsageLedger,
        gate: SingleFlightGate | KeyedSingleFlightGate,
        caller: UpstreamCaller,
    ):
        self.config = config
        self.prompt = prompt
        self.cache = cache
        self.ledger = ledger
        self.gate = gate
        self.caller = caller

    def fingerprint(self, request: ReadingRequest) -> str:
        return build_fingerprint(request, self.prompt.version)

    async def handle(self, request: ReadingRequest) -> ReadingResponse:
        start_time = time.monotonic()

        if not self.config.llm.enabled:
            logger.warning("Stub mode: provider disabled, returning stub reading")
            return ReadingResponse(source="stub", reading=dict(self.prompt.stub_reading))

        key = self.fingerprint(request)

        # ── Cache check ──────────────────────────────────────────────────
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.info("Cache HIT %r (%.1fms)", key, (time.monotonic() - start_time) * 1000)
                return ReadingResponse(source="cache", reading=cached)

        # ── Admission ────────────────────────────────────────────────────
        if not self.gate.try_acquire(key):
            logger.warning("Busy: rejected %r", key)
            raise Busy("A reading is already in progress.")

        try:
            # ── Budget ───────────────────────────────────────────────────
            ceiling = self.config.budget.daily_budget_usd
            if self.ledger.is_over_budget(ceiling):
                snapshot = self.ledger.snapshot()
                logger.warning(
                    "Budget block: spent=$%.6f budget=$%.6f",
                    snapshot.spent_usd, ceiling,
                )
                raise BudgetExceeded("Daily AI budget exceeded.")

            # ── Provider ─────────────────────────────────────────────────
            messages = build_messages(self.prompt, request)
            result = await self.caller.call(
                messages,
                response_schema=self.prompt.response_schema,
                result_field=self.prompt.result_field,
            )
            response = ReadingResponse(
                source="provider", reading=result.payload[self.prompt.result_field]
            )

            if self.cache is not None:
                await self.cache.set(key, response.reading, ttl=self.config.cache.ttl_seconds)

            logger.info(
                "Provider reading %r (%.0fms, attempts=%d, id=%s)",
                key,
                (time.monotonic() - start_time) * 1000,
                result.attempts,
                result.response_id,
            )
            return response
        finally:
            self.gate.release(key)

    def usage_report(self) -> dict[str, Any]:
        """Ledger snapshot plus configured limits and remaining headroom."""
        budget = self.config.budget
        snapshot = self.ledger.snapshot()
        ceiling = budget.daily_budget_usd

        report: dict[str, Any] = {
            "ok": True,
            "day": snapshot.day,
            "limits": {
                "tokens": budget.daily_token_limit,
                "requests": budget.daily_request_limit,
                "usd": ceiling,
            },
            "used": {
                "tokens": snapshot.tokens_used,
                "requests": snapshot.call_count,
                "usd": round(snapshot.spent_usd, 6),
            },
            "remaining": {
                "tokens": max(0, budget.daily_token_limit - snapshot.tokens_used),
                "requests": max(0, budget.daily_request_limit - snapshot.call_count),
                "usd": round(max(0.0, ceiling - snapshot.spent_usd), 6) if ceiling is not None else None,
            },
            "tokens_last_60s": self.caller.tokens_in_window,
            "reset_hint": f"daily at 00:00 {budget.timezone}",
        }
        if self.cache is not None:
            report["cache"] = self.cache.stats
        return report


def build_gateway(config: AppConfig, prompt: ReadingPrompt, **caller_kwargs: Any) -> ReadingGateway:
    """Wire up a gateway from config.  ``caller_kwargs`` go to ``UpstreamCaller``."""
    cache = ResponseCache(default_ttl=config.cache.ttl_seconds) if config.cache.enabled else None
    ledger = UsageLedger(timezone=config.budget.timezone)
    gate = KeyedSingleFlightGate() if config.admission.per_fingerprint else SingleFlightGate()
    caller = UpstreamCaller(
        config.llm,
        config.budget,
        config.throttle,
        ledger,
        **caller_kwargs,
    )
    return ReadingGateway(config, prompt, cache, ledger, gate, caller)
