"""Unit tests for reasoning-output validation."""

from __future__ import annotations

import json
import math
from typing import Any

import pytest

from persona_lab.errors import ReasoningValidationError
from persona_lab.reasoning.outputs import (
    Action,
    AgentReasoning,
    DoneAction,
    ScreenshotReasoning,
    ScrollAction,
    TypeAction,
)
from persona_lab.reasoning.validator import strip_json_wrappers, validate_reasoning
from persona_lab.schemas import FlowMode

pytestmark = pytest.mark.unit


def _screenshot_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "salient": "A big green Sign up button",
        "confusions": [
            {"issue": "Cannot find submit button", "evidence": "Button below fold", "elementRef": "btn-1"}
        ],
        "likelyAction": "CLICK_PRIMARY_CTA",
        "confidence": 0.7,
        "friction": 0.3,
        "dropoffRisk": 0.2,
    }
    payload.update(overrides)
    return payload


def _agent_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "salient": "Search bar at the top",
        "confusions": [],
        "browserAction": {"type": "click", "elementIndex": 3},
        "intent": "CLICK_PRIMARY_CTA",
        "confidence": 0.6,
        "friction": 0.4,
        "dropoffRisk": 0.1,
    }
    payload.update(overrides)
    return payload


class TestScreenshotReasoning:
    def test_valid_payload(self):
        result = validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload())
        assert isinstance(result, ScreenshotReasoning)
        assert result.likely_action == Action.CLICK_PRIMARY_CTA
        assert result.confusions[0].element_ref == "btn-1"
        assert result.dropoff_risk == 0.2
        assert result.memory_update is None

    def test_empty_confusions_allowed(self):
        result = validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload(confusions=[]))
        assert result.confusions == []

    @pytest.mark.parametrize("score", [0, 1, 0.0, 1.0])
    def test_boundary_scores_accepted(self, score):
        result = validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload(friction=score))
        assert result.friction == score

    @pytest.mark.parametrize("field", ["confidence", "friction", "dropoffRisk"])
    @pytest.mark.parametrize("value", [1.01, -0.01, 5])
    def test_out_of_range_scores_rejected(self, field, value):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload(**{field: value}))

    @pytest.mark.parametrize("value", ["0.5", True, None, math.nan])
    def test_non_numeric_scores_rejected(self, value):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload(friction=value))

    @pytest.mark.parametrize("field", ["salient", "confusions", "likelyAction", "confidence", "friction", "dropoffRisk"])
    def test_missing_required_field_rejected(self, field):
        payload = _screenshot_payload()
        del payload[field]
        with pytest.raises(ReasoningValidationError) as excinfo:
            validate_reasoning(FlowMode.SCREENSHOT, payload)
        assert field in str(excinfo.value)

    def test_unknown_action_rejected(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, _screenshot_payload(likelyAction="DANCE"))

    def test_confusion_without_issue_rejected(self):
        payload = _screenshot_payload(confusions=[{"evidence": "something"}])
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, payload)

    def test_extra_keys_ignored_and_reserved_keys_dropped(self):
        payload = _screenshot_payload(mood="grumpy", error="injected", kind="agent")
        result = validate_reasoning(FlowMode.SCREENSHOT, payload)
        assert result.error is None
        assert result.kind == "screenshot"


class TestAgentReasoning:
    def test_valid_payload(self):
        result = validate_reasoning(FlowMode.AGENT, _agent_payload())
        assert isinstance(result, AgentReasoning)
        assert result.browser_action.type == "click"
        assert result.intent == Action.CLICK_PRIMARY_CTA
        assert result.likely_action is None
        assert result.completes_goal is None

    def test_type_action_defaults_submit_false(self):
        action = {"type": "type", "elementIndex": 1, "text": "running shoes"}
        result = validate_reasoning(FlowMode.AGENT, _agent_payload(browserAction=action))
        assert isinstance(result.browser_action, TypeAction)
        assert result.browser_action.submit is False

    def test_scroll_direction_must_be_up_or_down(self):
        bad = {"type": "scroll", "direction": "left"}
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.AGENT, _agent_payload(browserAction=bad))
        ok = validate_reasoning(
            FlowMode.AGENT, _agent_payload(browserAction={"type": "scroll", "direction": "down"})
        )
        assert isinstance(ok.browser_action, ScrollAction)

    def test_done_action_requires_success_and_reason(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.AGENT, _agent_payload(browserAction={"type": "done"}))
        result = validate_reasoning(
            FlowMode.AGENT,
            _agent_payload(browserAction={"type": "done", "success": True, "reason": "Order placed"}),
        )
        assert isinstance(result.browser_action, DoneAction)
        assert result.browser_action.success is True

    def test_unknown_browser_action_rejected(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.AGENT, _agent_payload(browserAction={"type": "teleport"}))

    def test_missing_confusions_rejected(self):
        payload = _agent_payload()
        del payload["confusions"]
        with pytest.raises(ReasoningValidationError) as excinfo:
            validate_reasoning(FlowMode.AGENT, payload)
        assert "confusions" in str(excinfo.value)

    def test_screenshot_payload_is_not_valid_agent_output(self):
        with pytest.raises(ReasoningValidationError) as excinfo:
            validate_reasoning(FlowMode.AGENT, _screenshot_payload())
        assert "browserAction" in str(excinfo.value)

    def test_agent_payload_is_not_valid_screenshot_output(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, _agent_payload())


class TestRawText:
    def test_json_string_accepted(self):
        result = validate_reasoning(FlowMode.SCREENSHOT, json.dumps(_screenshot_payload()))
        assert result.friction == 0.3

    def test_fenced_json_accepted(self):
        text = "```json\n" + json.dumps(_screenshot_payload()) + "\n```"
        result = validate_reasoning(FlowMode.SCREENSHOT, text)
        assert result.salient.startswith("A big green")

    def test_invalid_json_rejected(self):
        with pytest.raises(ReasoningValidationError) as excinfo:
            validate_reasoning(FlowMode.SCREENSHOT, "{not json")
        assert excinfo.value.raw == "{not json"

    def test_non_object_rejected(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning(FlowMode.SCREENSHOT, "[1, 2, 3]")

    def test_unknown_mode_rejected(self):
        with pytest.raises(ReasoningValidationError):
            validate_reasoning("HOLOGRAM", _screenshot_payload())

    def test_strip_json_wrappers(self):
        assert strip_json_wrappers('~~~json\n{"a": 1}\n~~~') == '{"a": 1}'
        assert strip_json_wrappers('  {"a": 1}  ') == '{"a": 1}'
