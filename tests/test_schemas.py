"""Unit tests for schemas module."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from persona_lab.reasoning.outputs import ReasoningFailure, ScreenshotReasoning
from persona_lab.schemas import (
    AgentObservation,
    EpisodeStatus,
    Flow,
    FlowMode,
    Frame,
    Persona,
    RunConfig,
    ScreenshotObservation,
    StepTrace,
)

pytestmark = pytest.mark.unit

TRAITS = {
    "patience": 0.2,
    "exploration": 0.5,
    "frustrationSensitivity": 0.8,
    "forgiveness": 0.3,
    "helpSeeking": 0.9,
}


class TestFlow:
    def test_frames_sorted_by_position(self):
        flow = Flow(
            id="f1",
            mode=FlowMode.SCREENSHOT,
            frames=[Frame(id="b", position=1), Frame(id="a", position=0)],
        )
        assert [f.id for f in flow.frames] == ["a", "b"]

    def test_screenshot_flow_needs_frames(self):
        with pytest.raises(ValidationError):
            Flow(id="f1", mode=FlowMode.SCREENSHOT)

    def test_agent_flow_needs_url_and_goal(self):
        with pytest.raises(ValidationError):
            Flow(id="f1", mode=FlowMode.AGENT, url="https://example.com")
        flow = Flow(id="f1", mode="AGENT", url="https://example.com", goal="Buy socks")
        assert flow.mode == FlowMode.AGENT

    def test_flow_is_immutable(self):
        flow = Flow(id="f1", mode=FlowMode.AGENT, url="https://example.com", goal="Buy socks")
        with pytest.raises(ValidationError):
            flow.goal = "Buy shoes"


class TestPersona:
    def test_camel_case_input_and_output(self):
        persona = Persona.model_validate(
            {"id": "p1", "name": "Ada", "traits": TRAITS, "ageGroup": "25-34", "gender": "woman"}
        )
        assert persona.traits.frustration_sensitivity == 0.8
        dumped = persona.model_dump(by_alias=True)
        assert dumped["ageGroup"] == "25-34"
        assert dumped["traits"]["helpSeeking"] == 0.9

    def test_trait_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Persona.model_validate({"id": "p1", "name": "Ada", "traits": {**TRAITS, "patience": 1.5}})


class TestRunConfig:
    def test_defaults(self):
        config = RunConfig()
        assert config.model == "google/gemini-2.5-flash"
        assert config.max_steps == 30
        assert config.seed is None

    @pytest.mark.parametrize("max_steps", [0, 31, -1])
    def test_max_steps_bounds(self, max_steps):
        with pytest.raises(ValidationError):
            RunConfig(max_steps=max_steps)

    def test_alias_input(self):
        assert RunConfig.model_validate({"maxSteps": 5, "seed": 7}).max_steps == 5


class TestStepTrace:
    def _reasoning(self) -> ScreenshotReasoning:
        return ScreenshotReasoning(
            salient="x",
            confusions=[],
            likely_action="SCROLL",
            confidence=0.5,
            friction=0.5,
            dropoff_risk=0.5,
        )

    def test_round_trips_tagged_unions(self):
        trace = StepTrace(
            episode_id="e1",
            step_index=0,
            observation=ScreenshotObservation(frame_id="fr1", frame_index=0),
            reasoning=self._reasoning(),
            friction=0.5,
            confidence=0.5,
            dropoff_risk=0.5,
        )
        data = json.loads(trace.model_dump_json(by_alias=True))
        assert data["observation"]["kind"] == "screenshot"
        assert data["reasoning"]["kind"] == "screenshot"
        assert data["dropoffRisk"] == 0.5
        restored = StepTrace.model_validate(data)
        assert isinstance(restored.reasoning, ScreenshotReasoning)
        assert isinstance(restored.observation, ScreenshotObservation)

    def test_failure_reasoning(self):
        trace = StepTrace(
            episode_id="e1",
            step_index=3,
            observation=AgentObservation(url="https://example.com/cart"),
            reasoning=ReasoningFailure(error="boom", attempts=3),
            friction=0.0,
            confidence=0.0,
            dropoff_risk=0.0,
        )
        restored = StepTrace.model_validate(json.loads(trace.model_dump_json(by_alias=True)))
        assert isinstance(restored.reasoning, ReasoningFailure)
        assert restored.reasoning.error == "boom"

    def test_trace_is_immutable(self):
        trace = StepTrace(
            episode_id="e1",
            step_index=0,
            observation=ScreenshotObservation(frame_id="fr1", frame_index=0),
            reasoning=self._reasoning(),
            friction=0.5,
            confidence=0.5,
            dropoff_risk=0.5,
        )
        with pytest.raises(ValidationError):
            trace.step_index = 1


def test_terminal_statuses():
    assert not EpisodeStatus.PENDING.is_terminal
    assert not EpisodeStatus.RUNNING.is_terminal
    assert EpisodeStatus.COMPLETED.is_terminal
    assert EpisodeStatus.ABANDONED.is_terminal
    assert EpisodeStatus.FAILED.is_terminal
