"""Tests for cached recommended fixes."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from persona_lab.errors import NotFoundError
from persona_lab.fixes import FixAdvisor
from persona_lab.reasoning.client import ReasoningClient, StepInput
from persona_lab.schemas import Episode, Finding, ReportJson, Run
from persona_lab.store import SimulationStore

pytestmark = pytest.mark.unit


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


class _TextClient(ReasoningClient):
    def __init__(self, answers: list[str]) -> None:
        self.model = "fix-model"
        self.answers = list(answers)
        self.prompts: list[tuple[str, int]] = []

    async def reason(self, step: StepInput) -> Any:
        raise AssertionError("not used")

    async def complete_text(self, prompt: str, *, max_tokens: int = 300) -> str:
        self.prompts.append((prompt, max_tokens))
        return self.answers.pop(0)


def _store_with_finding() -> SimulationStore:
    store = SimulationStore()
    run = Run(id="run-1", flow_id="flow-1", mode="SCREENSHOT")
    store.create_run_with_episodes(run, [Episode(id="ep-1", run_id=run.id, persona_id="p1")])
    finding = Finding(
        id="fnd_1",
        run_id=run.id,
        issue="Cannot find submit button",
        evidence="Button sits below the fold",
        severity=0.8,
        frequency=2,
        affected_personas=["p1", "p2"],
        element_ref="btn-1",
        screen_index=1,
    )
    store.save_report(run.id, ReportJson(findings=[finding]))
    return store


def test_first_call_generates_and_caches() -> None:
    store = _store_with_finding()
    client = _TextClient(["Move the submit button above the fold."])
    models: list[str] = []

    def factory(model: str) -> ReasoningClient:
        models.append(model)
        return client

    advisor = FixAdvisor(store, factory, model="openai/gpt-4o-mini")

    assert _run(advisor.recommend("fnd_1")) == "Move the submit button above the fold."
    assert _run(advisor.recommend("fnd_1")) == "Move the submit button above the fold."
    assert len(client.prompts) == 1
    assert models == ["openai/gpt-4o-mini"]

    prompt, max_tokens = client.prompts[0]
    assert max_tokens == 300
    assert "Issue: Cannot find submit button" in prompt
    assert "on screen 2" in prompt
    assert "Element: btn-1" in prompt
    assert "2 persona(s)" in prompt
    assert store.get_run("run-1").report_json.findings[0].recommended_fix.startswith("Move")


def test_regenerate_replaces_cached_fix() -> None:
    store = _store_with_finding()
    client = _TextClient(["First idea.", "Second idea."])
    advisor = FixAdvisor(store, lambda model: client)

    assert advisor.recommend_sync("fnd_1") == "First idea."
    assert advisor.recommend_sync("fnd_1", regenerate=True) == "Second idea."
    assert store.get_finding("fnd_1").recommended_fix == "Second idea."


def test_unknown_finding_raises() -> None:
    advisor = FixAdvisor(SimulationStore(), lambda model: _TextClient([]))
    with pytest.raises(NotFoundError):
        advisor.recommend_sync("fnd_missing")
