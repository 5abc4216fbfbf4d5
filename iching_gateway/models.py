"""
Core data models for the reading gateway.

Defines the inbound reading request, the response envelope, and the
application configuration (provider, cache, budget, throttle, admission).
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


THREE_DAYS = 60 * 60 * 24 * 3


# ---------------------------------------------------------------------------
# Request / response wrappers
# ---------------------------------------------------------------------------

class HexagramRef(BaseModel):
    """A cast hexagram as sent by the client.  Only ``number`` is keyed on."""
    number: int | str | None = None
    name: str | None = None

    model_config = ConfigDict(extra="allow")


class ReadingRequest(BaseModel):
    """Inbound body of ``POST /api/read``."""
    question: str = ""
    method: str | None = None
    primary: HexagramRef | None = None
    relating: HexagramRef | None = None
    changing_lines: list[Any] = Field(default_factory=list, alias="changingLines")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("question", mode="before")
    @classmethod
    def _none_question(cls, v: Any) -> Any:
        return "" if v is None else v


class ReadingResponse(BaseModel):
    """Success envelope returned by the gateway."""
    ok: bool = True
    source: str
    reading: dict[str, Any]


# ---------------------------------------------------------------------------
# App-level configuration
# ---------------------------------------------------------------------------

class LLMConfig(BaseModel):
    enabled: bool = True  # False = stub mode, the provider is never called
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    api_base: str | None = Field(None, description="Override provider base URL")
    max_tokens: int = 1000
    temperature: float | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class CacheConfig(BaseModel):
    """Response caching settings."""
    enabled: bool = True
    ttl_seconds: float = THREE_DAYS


class BudgetConfig(BaseModel):
    """Daily spend ceiling and unit prices (USD per 1M tokens)."""
    daily_budget_usd: float | None = None  # None = unlimited
    price_in_per_m: float = 0.15
    price_out_per_m: float = 0.60
    timezone: str = "UTC"
    # Advisory, only shown in the usage report
    daily_token_limit: int = 200_000
    daily_request_limit: int = 200

    @field_validator("daily_budget_usd", mode="before")
    @classmethod
    def _coerce_budget(cls, v: Any) -> float | None:
        if v is None or isinstance(v, bool):
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return value if math.isfinite(value) else None

    @property
    def price_in_per_token(self) -> float:
        return self.price_in_per_m / 1_000_000

    @property
    def price_out_per_token(self) -> float:
        return self.price_out_per_m / 1_000_000


class ThrottleConfig(BaseModel):
    """Upstream spacing, retry and self-throttle settings."""
    min_gap_seconds: float = 0.3
    retry_cooldown_seconds: float = 65.0
    low_capacity_tokens: int = 2000
    low_capacity_cooldown_seconds: float = 60.0
    window_seconds: float = 60.0
    window_alert_tokens: int | None = None


class AdmissionConfig(BaseModel):
    per_fingerprint: bool = False


class AppConfig(BaseModel):
    """Top-level application configuration."""
    app_name: str = "I Ching Reading Gateway"
    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    prompt_file: str = "prompts/reading.yaml"
    admin_key: str | None = None
    llm: LLMConfig = Field(default_factory=LLMConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
