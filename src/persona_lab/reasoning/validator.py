"""Validate raw model output against the reasoning schema for a flow mode."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from persona_lab.errors import ReasoningValidationError
from persona_lab.reasoning.outputs import AgentReasoning, ScreenshotReasoning
from persona_lab.schemas import FlowMode

logger = logging.getLogger(__name__)

_SCHEMAS: dict[FlowMode, type[ScreenshotReasoning] | type[AgentReasoning]] = {
    FlowMode.SCREENSHOT: ScreenshotReasoning,
    FlowMode.AGENT: AgentReasoning,
}

# Keys owned by the engine; model output must not be able to set them.
_RESERVED_KEYS = frozenset({"kind", "error"})

_FENCE_RE = re.compile(r"(```|~~~)json\s*(.*?)\1", re.DOTALL | re.IGNORECASE)


def strip_json_wrappers(text: str) -> str:
    """Remove ```json ... ``` or ~~~json ... ~~~ wrappers."""
    stripped = re.sub(_FENCE_RE, lambda m: m.group(2).strip(), text)
    return stripped.strip()


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            raw = json.loads(strip_json_wrappers(text))
        except json.JSONDecodeError as exc:
            raise ReasoningValidationError(f"output is not valid JSON: {exc}", raw=text) from exc
    if not isinstance(raw, Mapping):
        raise ReasoningValidationError(
            f"output must be a JSON object, got {type(raw).__name__}", raw=raw
        )
    return raw


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    extra = exc.error_count() - len(parts)
    if extra > 0:
        parts.append(f"(+{extra} more)")
    return "; ".join(parts)


def validate_reasoning(mode: FlowMode, raw: Any) -> ScreenshotReasoning | AgentReasoning:
    """Validate *raw* (a mapping or JSON text) as reasoning for *mode*.

    Scores must already be numbers in ``[0, 1]``; nothing is clamped or
    coerced. Unknown keys are ignored.

    Raises
    ------
    ReasoningValidationError
        When the output is not an object, misses a required field, carries an
        unknown action, or has a score outside the unit interval.
    """
    try:
        mode = FlowMode(mode)
    except ValueError as exc:
        raise ReasoningValidationError(f"no reasoning schema for mode {mode!r}", raw=raw) from exc
    schema = _SCHEMAS[mode]
    payload = {k: v for k, v in _as_mapping(raw).items() if k not in _RESERVED_KEYS}
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        message = _summarize(exc)
        logger.debug("Rejected %s reasoning: %s", mode.value, message)
        raise ReasoningValidationError(message, raw=raw) from exc
