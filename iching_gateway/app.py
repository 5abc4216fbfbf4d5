"""
Reading gateway — main application entry point.

Boots the FastAPI server, loads config and the prompt definition, wires the
gateway (cache, ledger, gate, upstream caller) and registers the routes.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import yaml
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from iching_gateway.gateway import ReadingGateway, build_gateway
from iching_gateway.models import AppConfig
from iching_gateway.prompt_loader import load_reading_prompt
from iching_gateway.router import create_router

logger = logging.getLogger("iching_gateway")


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------

def _resolve_env(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} placeholders; unset variables become None."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_key = value[2:-1]
        return os.environ.get(env_key)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


# (section, field, env var, converter)
_ENV_FIELDS: list[tuple[str | None, str, str, Any]] = [
    ("llm", "enabled", "USE_OPENAI", lambda v: v.strip().lower() == "true"),
    ("llm", "api_key", "OPENAI_API_KEY", str),
    ("llm", "api_base", "OPENAI_BASE_URL", str),
    ("llm", "model", "OPENAI_MODEL", str),
    ("llm", "max_tokens", "OPENAI_MAX_TOKENS", int),
    ("budget", "daily_budget_usd", "DAILY_BUDGET_USD", str),
    ("budget", "price_in_per_m", "PRICE_IN_PER_M", float),
    ("budget", "price_out_per_m", "PRICE_OUT_PER_M", float),
    ("budget", "timezone", "USAGE_TIMEZONE", str),
    ("cache", "ttl_seconds", "CACHE_TTL_SECONDS", float),
    ("throttle", "min_gap_seconds", "MIN_GAP_MS", lambda v: float(v) / 1000),
    ("throttle", "retry_cooldown_seconds", "RETRY_COOLDOWN_SECONDS", float),
    ("throttle", "low_capacity_tokens", "LOW_CAPACITY_TOKENS", int),
    ("throttle", "low_capacity_cooldown_seconds", "LOW_CAPACITY_COOLDOWN_SECONDS", float),
    ("admission", "per_fingerprint", "PER_FINGERPRINT_ADMISSION", lambda v: v.strip().lower() == "true"),
    (None, "admin_key", "ADMIN_KEY", str),
    (None, "host", "HOST", str),
    (None, "port", "PORT", int),
    (None, "log_level", "LOG_LEVEL", str),
    (None, "prompt_file", "PROMPT_FILE", str),
]


def config_from_env(environ: dict[str, str] | None = None) -> AppConfig:
    """Build an ``AppConfig`` from environment variables over the defaults."""
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    for section, name, env_key, convert in _ENV_FIELDS:
        value = environ.get(env_key)
        if value is None or value == "":
            continue
        target = raw.setdefault(section, {}) if section else raw
        try:
            target[name] = convert(value)
        except ValueError:
            logger.warning("Ignoring non-numeric %s=%r", env_key, value)
    return AppConfig.model_validate(raw)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """
    Load app config from a YAML file.  Falls back to env vars and defaults.
    """
    path = Path(config_path) if config_path else Path("gateway.yaml")

    if path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        raw = _resolve_env(raw)
        return AppConfig.model_validate(raw)
    else:
        logger.warning("No config file found at %s — using defaults + env vars.", path)
        return config_from_env()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    config: AppConfig = app.state.config
    gateway: ReadingGateway = app.state.gateway

    budget = config.budget.daily_budget_usd
    logger.info(
        "Gateway is live on http://%s:%s (model=%s, provider=%s, budget=%s, prompt=%s)",
        config.host,
        config.port,
        config.llm.model,
        "on" if config.llm.enabled else "stub",
        f"${budget:.2f}/day" if budget is not None else "unlimited",
        gateway.prompt.version,
    )

    yield

    if gateway.cache is not None:
        await gateway.cache.clear()
    logger.info("Gateway shut down.")


def create_app(
    config_path: str | Path | None = None,
    *,
    config: AppConfig | None = None,
    gateway: ReadingGateway | None = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    config = config or load_config(config_path)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    if gateway is None:
        prompt = load_reading_prompt(config.prompt_file)
        gateway = build_gateway(config, prompt)

    app = FastAPI(
        title=config.app_name,
        description=(
            "Cached, budgeted, single-flight gateway in front of an LLM "
            "that writes I Ching readings."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.gateway = gateway

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(create_router(gateway, admin_key=config.admin_key))

    @app.get("/healthz", tags=["system"], response_class=PlainTextResponse)
    @app.get("/health", tags=["system"], response_class=PlainTextResponse)
    @app.get("/", tags=["system"], response_class=PlainTextResponse)
    async def health():
        return "ok"

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    """Run the server from the command line."""
    import uvicorn

    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    config = load_config(config_path)

    uvicorn.run(
        create_app(config=config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
