"""Pydantic models for flows, personas, runs, episodes, traces and reports.

Attributes are snake_case in Python and camelCase on the wire; dump with
``model_dump(mode="json", by_alias=True)`` to get the external shape.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from persona_lab.config import DEFAULT_MODEL, MAX_STEPS_DEFAULT, MAX_STEPS_LIMIT
from persona_lab.reasoning.outputs import StepReasoning

Unit = Annotated[float, Field(ge=0.0, le=1.0)]


def _utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Inputs: flows and personas
# ---------------------------------------------------------------------------


class FlowMode(str, Enum):
    SCREENSHOT = "SCREENSHOT"
    AGENT = "AGENT"


class Frame(FrozenCamelModel):
    """One static screen of a screenshot-mode flow."""

    id: str
    position: int = Field(ge=0)
    image_path: str = ""


class Flow(FrozenCamelModel):
    """The thing under test. Immutable once a run has started."""

    id: str
    name: str = ""
    mode: FlowMode
    frames: tuple[Frame, ...] = ()
    url: str | None = None
    goal: str | None = None

    @field_validator("frames")
    @classmethod
    def _order_frames(cls, frames: tuple[Frame, ...]) -> tuple[Frame, ...]:
        return tuple(sorted(frames, key=lambda f: f.position))

    @model_validator(mode="after")
    def _check_mode_inputs(self) -> Flow:
        if self.mode == FlowMode.SCREENSHOT and not self.frames:
            raise ValueError("screenshot flows need at least one frame")
        if self.mode == FlowMode.AGENT and not (self.url and self.goal):
            raise ValueError("agent flows need both url and goal")
        return self


class PersonaTraits(CamelModel):
    patience: Unit
    exploration: Unit
    frustration_sensitivity: Unit
    forgiveness: Unit
    help_seeking: Unit


class Persona(CamelModel):
    """A synthetic user profile. Read-only input to a run."""

    id: str
    name: str
    traits: PersonaTraits
    age_group: str = ""
    gender: str = ""
    knobs: dict[str, Any] = Field(default_factory=dict)
    accessibility_needs: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Runs and episodes
# ---------------------------------------------------------------------------


class RunConfig(CamelModel):
    model: str = DEFAULT_MODEL
    max_steps: int = Field(default=MAX_STEPS_DEFAULT, ge=1, le=MAX_STEPS_LIMIT)
    seed: int | None = None


class RunStatus(str, Enum):
    PENDING = "PENDING"
    SIMULATING = "SIMULATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EpisodeStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EPISODE_STATUSES


TERMINAL_EPISODE_STATUSES = frozenset(
    {EpisodeStatus.COMPLETED, EpisodeStatus.ABANDONED, EpisodeStatus.FAILED}
)


class Episode(CamelModel):
    """One persona's simulated session within a run."""

    id: str
    run_id: str
    persona_id: str
    seed: int | None = None
    status: EpisodeStatus = EpisodeStatus.PENDING
    step_count: int = 0
    failure_reason: str | None = None
    created_at: str = Field(default_factory=_utcnow)


class Run(CamelModel):
    """One execution of a flow against a set of personas."""

    id: str
    flow_id: str
    mode: FlowMode
    config: RunConfig = Field(default_factory=RunConfig)
    status: RunStatus = RunStatus.PENDING
    report_json: ReportJson | None = None
    aggregation_triggered: bool = False
    created_at: str = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Step traces
# ---------------------------------------------------------------------------


class ScreenshotObservation(FrozenCamelModel):
    kind: Literal["screenshot"] = "screenshot"
    frame_id: str
    frame_index: int = Field(ge=0)


class AgentObservation(FrozenCamelModel):
    kind: Literal["agent"] = "agent"
    url: str | None = None
    page_title: str | None = None
    element_count: int | None = None


Observation = Annotated[
    Union[ScreenshotObservation, AgentObservation],
    Field(discriminator="kind"),
]


class StepTrace(FrozenCamelModel):
    """Immutable record of one step; append-only per episode."""

    episode_id: str
    step_index: int = Field(ge=0)
    observation: Observation
    reasoning: StepReasoning
    friction: Unit
    confidence: Unit
    dropoff_risk: Unit
    screenshot_path: str | None = None
    created_at: str = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Findings and reports
# ---------------------------------------------------------------------------


class Finding(CamelModel):
    """A clustered usability issue with its severity and reach."""

    id: str
    run_id: str
    issue: str
    evidence: str
    severity: Unit
    frequency: int = Field(ge=1)
    affected_personas: list[str] = Field(default_factory=list)
    element_ref: str | None = None
    step_index: int | None = None
    screen_index: int | None = None
    screen_label: str | None = None
    recommended_fix: str | None = None


class ScreenStats(CamelModel):
    screen_index: int
    screen_label: str | None = None
    avg_friction: float = 0.0
    max_friction: float = 0.0
    avg_dropoff_risk: float = 0.0
    confusion_count: int = 0
    finding_count: int = 0
    total_steps: int = 0


class PersonaConfusion(CamelModel):
    issue: str
    evidence: str
    element_ref: str | None = None
    step_index: int
    screen_index: int | None = None


class PersonaRollup(CamelModel):
    """Per-episode statistics for one persona."""

    episode_id: str
    persona_id: str
    persona_name: str = ""
    age_group: str = ""
    gender: str = ""
    traits: PersonaTraits | None = None
    episode_status: EpisodeStatus
    avg_friction: float = 0.0
    avg_confidence: float = 0.0
    steps_count: int = 0
    confusions: list[PersonaConfusion] = Field(default_factory=list)


class ReportSummary(CamelModel):
    total_episodes: int = 0
    completed_episodes: int = 0
    abandoned_episodes: int = 0
    avg_friction: float = 0.0
    avg_dropoff_risk: float = 0.0


class ReportJson(CamelModel):
    """The final aggregated report of a run."""

    summary: ReportSummary = Field(default_factory=ReportSummary)
    findings: list[Finding] = Field(default_factory=list)
    per_screen: list[ScreenStats] = Field(default_factory=list)
    per_persona: list[PersonaRollup] = Field(default_factory=list)


Run.model_rebuild()
