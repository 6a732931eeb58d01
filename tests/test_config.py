"""Tests for environment-driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from persona_lab.config import Settings

pytestmark = pytest.mark.unit

_VARS = (
    "LLM_PROVIDER",
    "LLM_BASE_URL",
    "LLM_TIMEOUT_S",
    "SIMULATE_CONCURRENCY",
    "AGENT_CONCURRENCY",
    "AGGREGATE_CONCURRENCY",
    "MAX_DELIVERIES",
    "DATA_DIR",
    "SCREENSHOTS_DIR",
    "HEADLESS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(f"PERSONA_LAB_{name}", raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()
    assert settings.llm_provider == "openrouter"
    assert settings.llm_base_url == ""
    assert settings.simulate_concurrency == 2
    assert settings.agent_concurrency == 2
    assert settings.aggregate_concurrency == 1
    assert settings.max_deliveries == 3
    assert settings.data_dir is None
    assert settings.headless is True


def test_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PERSONA_LAB_LLM_PROVIDER", "Anthropic")
    monkeypatch.setenv("PERSONA_LAB_LLM_TIMEOUT_S", "30")
    monkeypatch.setenv("PERSONA_LAB_SIMULATE_CONCURRENCY", "8")
    monkeypatch.setenv("PERSONA_LAB_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PERSONA_LAB_HEADLESS", "no")

    settings = Settings.from_env()

    assert settings.llm_provider == "anthropic"
    assert settings.llm_timeout_s == 30.0
    assert settings.simulate_concurrency == 8
    assert settings.data_dir == tmp_path
    assert settings.headless is False


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LLM_PROVIDER", "mystery"),
        ("SIMULATE_CONCURRENCY", "lots"),
        ("AGENT_CONCURRENCY", "0"),
        ("LLM_TIMEOUT_S", "-5"),
        ("HEADLESS", "maybe"),
    ],
)
def test_invalid_values_fall_back_with_warning(monkeypatch: pytest.MonkeyPatch, caplog, name: str, value: str) -> None:
    monkeypatch.setenv(f"PERSONA_LAB_{name}", value)

    settings = Settings.from_env()

    assert settings == Settings()
    assert f"PERSONA_LAB_{name}" in caplog.text
