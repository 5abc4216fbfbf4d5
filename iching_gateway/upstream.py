"""
Upstream Caller — the single path to the generation provider.

Each call:
  1. Waits out a minimum spacing since the previous provider call
  2. Calls the provider through litellm with a structured-output schema
  3. On a rate-limit error, retries exactly once after a fixed cooldown
  4. Records token usage and cost in the Usage Ledger
  5. Pauses voluntarily when the provider reports low remaining capacity
  6. Parses the result object out of the completion

``completion``, ``sleep`` and ``clock`` are injectable so tests can drive
the retry and throttle paths without a network or real delays.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import litellm
from litellm.exceptions import RateLimitError

from iching_gateway.errors import (
    UpstreamInvalidPayload,
    UpstreamThrottled,
    UpstreamTransportError,
)
from iching_gateway.ledger import UsageLedger
from iching_gateway.models import BudgetConfig, LLMConfig, ThrottleConfig

logger = logging.getLogger(__name__)

# A second rate-limit after this many retries is terminal
MAX_RATE_LIMIT_RETRIES = 1

REMAINING_TOKENS_HEADERS = (
    "x-ratelimit-remaining-tokens",
    "llm_provider-x-ratelimit-remaining-tokens",
)


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a litellm object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def is_rate_limit_error(e: BaseException) -> bool:
    """Checks if the exception is a provider rate-limit (HTTP 429)."""
    if isinstance(e, RateLimitError):
        return True
    status = getattr(e, "status_code", None)
    if status is None:
        status = getattr(getattr(e, "response", None), "status_code", None)
    return status == 429


def extract_usage(response: Any) -> tuple[int, int]:
    """Return ``(input_tokens, output_tokens)``; missing fields count as 0."""
    usage = _field(response, "usage")
    input_tokens = _field(usage, "prompt_tokens")
    if input_tokens is None:
        input_tokens = _field(usage, "input_tokens")
    output_tokens = _field(usage, "completion_tokens")
    if output_tokens is None:
        output_tokens = _field(usage, "output_tokens")
    return int(input_tokens or 0), int(output_tokens or 0)


def remaining_capacity(response: Any) -> int | None:
    """
    Remaining-token rate-limit telemetry, or None if the provider sent none.

    litellm exposes provider headers under ``_hidden_params`` and, for some
    providers, ``_response_headers``.
    """
    headers: dict[str, Any] = {}
    hidden = _field(response, "_hidden_params") or {}
    if isinstance(hidden, dict):
        headers.update(hidden.get("additional_headers") or {})
    raw = _field(response, "_response_headers")
    if raw:
        headers.update({str(k).lower(): v for k, v in dict(raw).items()})

    for name in REMAINING_TOKENS_HEADERS:
        value = headers.get(name)
        if value in (None, ""):
            continue
        try:
            return int(float(value))
        except (TypeError, ValueError):
            continue
    return None


def extract_json_object(text: str) -> Any | None:
    """Parse the first balanced top-level ``{...}`` block found in ``text``."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def parse_result(message: Any, result_field: str) -> dict[str, Any]:
    """
    Pull the structured payload out of a completion message.

    Tries the provider's native parsed object, then the content as JSON,
    then the first balanced object inside the content.
    """
    parsed = _field(message, "parsed")
    if hasattr(parsed, "model_dump"):
        parsed = parsed.model_dump()

    if not isinstance(parsed, dict) or result_field not in parsed:
        content = _field(message, "content") or ""
        try:
            parsed = json.loads(content)
        except (json.JSONDecodeError, TypeError):
            parsed = extract_json_object(content) if isinstance(content, str) else None

    if not isinstance(parsed, dict) or result_field not in parsed:
        raise UpstreamInvalidPayload(
            f"Provider response has no '{result_field}' object"
        )
    if not isinstance(parsed[result_field], dict) or not parsed[result_field]:
        raise UpstreamInvalidPayload(
            f"Provider '{result_field}' is not a non-empty object"
        )
    return parsed


# ---------------------------------------------------------------------------
# Rolling token window (diagnostic only)
# ---------------------------------------------------------------------------

class TokenWindow:
    """Sum of tokens observed over the last ``seconds``."""

    def __init__(self, seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._seconds = seconds
        self._clock = clock
        self._events: deque[tuple[float, int]] = deque()

    def _trim(self, now: float):
        while self._events and now - self._events[0][0] > self._seconds:
            self._events.popleft()

    def add(self, tokens: int) -> int:
        now = self._clock()
        self._events.append((now, tokens))
        self._trim(now)
        return self.total

    @property
    def total(self) -> int:
        self._trim(self._clock())
        return sum(tokens for _, tokens in self._events)


# ---------------------------------------------------------------------------
# Caller
# ---------------------------------------------------------------------------

@dataclass
class UpstreamResult:
    payload: dict[str, Any]
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    remaining_tokens: int | None = None
    response_id: str | None = None
    attempts: int = 1


class UpstreamCaller:
    """
    Calls the generation provider with spacing, one throttle retry and a
    voluntary low-capacity pause.

    Args:
        llm_config: Model, credentials and per-call token ceiling
        budget:     Unit prices used for accounting
        throttle:   Spacing, cooldown and low-water settings
        ledger:     Usage Ledger updated after every successful call
    """

    def __init__(
        self,
        llm_config: LLMConfig,
        budget: BudgetConfig,
        throttle: ThrottleConfig,
        ledger: UsageLedger,
        *,
        completion: Callable[..., Awaitable[Any]] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._llm = llm_config
        self._budget = budget
        self._throttle = throttle
        self._ledger = ledger
        self._completion = completion or litellm.acompletion
        self._sleep = sleep
        self._clock = clock
        self._last_call_at: float | None = None
        self._window = TokenWindow(throttle.window_seconds, clock)

    @property
    def tokens_in_window(self) -> int:
        return self._window.total

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        response_schema: dict[str, Any] | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._llm.model,
            "messages": messages,
            "max_tokens": self._llm.max_tokens,
        }
        if self._llm.temperature is not None:
            kwargs["temperature"] = self._llm.temperature
        if response_schema:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": response_schema,
            }
        if self._llm.api_key:
            kwargs["api_key"] = self._llm.api_key
        if self._llm.api_base:
            kwargs["api_base"] = self._llm.api_base

        kwargs.update(self._llm.extra)
        return kwargs

    async def _wait_for_gap(self):
        gap = self._throttle.min_gap_seconds
        if self._last_call_at is not None and gap > 0:
            elapsed = self._clock() - self._last_call_at
            if elapsed < gap:
                await self._sleep(gap - elapsed)
        self._last_call_at = self._clock()

    async def _complete_with_retry(self, kwargs: dict[str, Any]) -> tuple[Any, int]:
        attempts = 0
        while True:
            await self._wait_for_gap()
            attempts += 1
            try:
                response = await self._completion(**kwargs)
            except Exception as e:
                if not is_rate_limit_error(e):
                    logger.warning("Provider call failed: %s", e)
                    raise UpstreamTransportError(f"Provider call failed: {e}") from e
                if attempts > MAX_RATE_LIMIT_RETRIES:
                    logger.warning("Provider still rate limited after retry, giving up")
                    raise UpstreamThrottled(f"Provider rate limited: {e}") from e
                cooldown = self._throttle.retry_cooldown_seconds
                logger.warning("Provider rate limited: retrying once in %.0fs", cooldown)
                await self._sleep(cooldown)
            else:
                return response, attempts

    def _account(self, response: Any) -> tuple[int, int, float]:
        input_tokens, output_tokens = extract_usage(response)
        cost = self._ledger.record_usage(
            input_tokens,
            output_tokens,
            self._budget.price_in_per_token,
            self._budget.price_out_per_token,
        )
        window_total = self._window.add(input_tokens + output_tokens)
        snapshot = self._ledger.snapshot()

        logger.info(
            "Provider usage: in=%d out=%d cost=$%.6f spent_today=$%.6f",
            input_tokens, output_tokens, cost, snapshot.spent_usd,
        )
        logger.info("Tokens in last %.0fs: %d", self._throttle.window_seconds, window_total)
        alert = self._throttle.window_alert_tokens
        if alert is not None and window_total > alert:
            logger.warning(
                "Token usage in last %.0fs is %d (alert at %d)",
                self._throttle.window_seconds, window_total, alert,
            )
        return input_tokens, output_tokens, cost

    async def call(
        self,
        messages: list[dict[str, Any]],
        response_schema: dict[str, Any] | None = None,
        result_field: str = "reading",
    ) -> UpstreamResult:
        """Run one provider completion and return its parsed payload."""
        kwargs = self._build_kwargs(messages, response_schema)
        response, attempts = await self._complete_with_retry(kwargs)

        input_tokens, output_tokens, cost = self._account(response)

        remaining = remaining_capacity(response)
        if remaining is not None and remaining < self._throttle.low_capacity_tokens:
            logger.warning(
                "Provider remaining tokens low (%d), pausing %.0fs",
                remaining, self._throttle.low_capacity_cooldown_seconds,
            )
            await self._sleep(self._throttle.low_capacity_cooldown_seconds)

        choices = _field(response, "choices") or []
        if not choices:
            raise UpstreamInvalidPayload("Provider response has no choices")
        payload = parse_result(_field(choices[0], "message"), result_field)

        return UpstreamResult(
            payload=payload,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            remaining_tokens=remaining,
            response_id=_field(response, "id"),
            attempts=attempts,
        )
