"""Runtime constants and environment-driven settings."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ── Simulation limits ─────────────────────────────────────────────

DEFAULT_MODEL = "google/gemini-2.5-flash"
MAX_STEPS_DEFAULT = 30
MAX_STEPS_LIMIT = 30
MAX_REASONING_ATTEMPTS = 3
MAX_CONSECUTIVE_ACTION_FAILURES = 3
MAX_SAME_SCREEN_STEPS = 3
MAX_SCROLLS_ON_FRAME = 2

# ── Provider defaults ─────────────────────────────────────────────

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_LLM_TIMEOUT_S = 90.0
REASONING_TEMPERATURE = 0.3
FIX_MAX_TOKENS = 300

_ENV_PREFIX = "PERSONA_LAB_"
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env(name: str) -> str:
    return os.getenv(_ENV_PREFIX + name, "").strip()


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s%s=%r (not an integer)", _ENV_PREFIX, name, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring %s%s=%d (must be >= %d)", _ENV_PREFIX, name, value, minimum)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s%s=%r (not a number)", _ENV_PREFIX, name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s%s=%s (must be positive)", _ENV_PREFIX, name, raw)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    if raw:
        logger.warning("Ignoring %s%s=%r (expected a boolean)", _ENV_PREFIX, name, raw)
    return default


def _env_path(name: str) -> Path | None:
    raw = _env(name)
    return Path(raw).expanduser() if raw else None


class Settings(BaseModel):
    """Worker and provider settings.

    Every field can be overridden through a ``PERSONA_LAB_<FIELD>`` environment
    variable; see :meth:`from_env`.
    """

    llm_provider: Literal["openrouter", "openai", "anthropic"] = "openrouter"
    # Empty means the provider default (OpenRouter for "openrouter").
    llm_base_url: str = ""
    llm_timeout_s: float = DEFAULT_LLM_TIMEOUT_S
    simulate_concurrency: int = Field(default=2, ge=1)
    agent_concurrency: int = Field(default=2, ge=1)
    aggregate_concurrency: int = Field(default=1, ge=1)
    max_deliveries: int = Field(default=3, ge=1)
    data_dir: Path | None = None
    screenshots_dir: Path | None = None
    headless: bool = True

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from ``PERSONA_LAB_*`` variables, falling back to defaults."""
        provider = _env("LLM_PROVIDER").lower() or "openrouter"
        if provider not in ("openrouter", "openai", "anthropic"):
            logger.warning("Unknown %sLLM_PROVIDER=%r; using openrouter", _ENV_PREFIX, provider)
            provider = "openrouter"
        return cls(
            llm_provider=provider,
            llm_base_url=_env("LLM_BASE_URL"),
            llm_timeout_s=_env_float("LLM_TIMEOUT_S", DEFAULT_LLM_TIMEOUT_S),
            simulate_concurrency=_env_int("SIMULATE_CONCURRENCY", 2),
            agent_concurrency=_env_int("AGENT_CONCURRENCY", 2),
            aggregate_concurrency=_env_int("AGGREGATE_CONCURRENCY", 1),
            max_deliveries=_env_int("MAX_DELIVERIES", 3),
            data_dir=_env_path("DATA_DIR"),
            screenshots_dir=_env_path("SCREENSHOTS_DIR"),
            headless=_env_bool("HEADLESS", True),
        )
