"""Exception hierarchy for persona simulation runs."""

from __future__ import annotations


class PersonaLabError(Exception):
    """Base class for all persona-lab errors."""


class NotFoundError(PersonaLabError):
    """A flow, persona, run, episode or finding lookup failed."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ReasoningValidationError(PersonaLabError):
    """Model output does not match the reasoning schema for the flow mode."""

    def __init__(self, message: str, *, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


class ProviderError(PersonaLabError):
    """The reasoning provider failed (network, quota, malformed transport)."""


class ActionError(PersonaLabError):
    """A browser action could not be executed on the live page."""

    def __init__(self, action_type: str, message: str) -> None:
        super().__init__(f"{action_type}: {message}")
        self.action_type = action_type


class StepSequenceError(PersonaLabError):
    """A step trace was appended out of order for its episode."""


class AggregationError(PersonaLabError):
    """Report aggregation could not complete; nothing was persisted."""


class DuplicateTriggerError(PersonaLabError):
    """Aggregation for a run was already triggered by another notifier."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"aggregation already triggered for run {run_id}")
        self.run_id = run_id
