"""Typed reasoning outputs produced once per episode step.

Two shapes exist and are selected by the flow mode, never guessed from which
optional keys happen to be present:

* :class:`ScreenshotReasoning` for static frame walkthroughs.
* :class:`AgentReasoning` for live-page sessions; it adds the concrete
  :data:`BrowserAction` to perform and the intent behind it.

A step whose reasoning never validated is recorded as a
:class:`ReasoningFailure` so the trace sequence stays gapless.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Score = Annotated[float, Field(ge=0.0, le=1.0, strict=True, allow_inf_nan=False)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Action(str, Enum):
    """What the persona would most likely do next."""

    CLICK_PRIMARY_CTA = "CLICK_PRIMARY_CTA"
    CLICK_SECONDARY_CTA = "CLICK_SECONDARY_CTA"
    OPEN_NAV = "OPEN_NAV"
    SCROLL = "SCROLL"
    BACK = "BACK"
    SEEK_INFO = "SEEK_INFO"
    HESITATE = "HESITATE"
    ABANDON = "ABANDON"


FORWARD_ACTIONS = frozenset({Action.CLICK_PRIMARY_CTA, Action.CLICK_SECONDARY_CTA, Action.OPEN_NAV})
STAY_ACTIONS = frozenset({Action.SCROLL, Action.HESITATE, Action.SEEK_INFO})


class Confusion(_CamelModel):
    """One usability problem the persona noticed on the current screen."""

    issue: str = Field(min_length=1)
    evidence: str
    element_ref: str | None = None


# ── Browser actions (agent mode) ─────────────────────────────────


class ClickAction(_CamelModel):
    type: Literal["click"]
    element_index: int = Field(ge=0)


class ClickCoordinatesAction(_CamelModel):
    type: Literal["click_coordinates"]
    x: float = Field(ge=0)
    y: float = Field(ge=0)


class TypeAction(_CamelModel):
    type: Literal["type"]
    element_index: int = Field(ge=0)
    text: str
    submit: bool = False


class ScrollAction(_CamelModel):
    type: Literal["scroll"]
    direction: Literal["up", "down"]
    # Fraction of the page height.
    amount: float | None = Field(default=None, gt=0, le=1)


class NavigateBackAction(_CamelModel):
    type: Literal["navigate_back"]


class WaitAction(_CamelModel):
    type: Literal["wait"]
    reason: str


class DoneAction(_CamelModel):
    type: Literal["done"]
    success: bool
    reason: str


BrowserAction = Annotated[
    Union[
        ClickAction,
        ClickCoordinatesAction,
        TypeAction,
        ScrollAction,
        NavigateBackAction,
        WaitAction,
        DoneAction,
    ],
    Field(discriminator="type"),
]


# ── Reasoning shapes ─────────────────────────────────────────────


class _ReasoningBase(_CamelModel):
    salient: str
    confusions: list[Confusion]
    confidence: Score
    friction: Score
    dropoff_risk: Score
    memory_update: str | None = None
    # Set by the engine, never by the model.
    error: str | None = None


class ScreenshotReasoning(_ReasoningBase):
    """Reasoning for one static frame."""

    kind: Literal["screenshot"] = "screenshot"
    likely_action: Action


class AgentReasoning(_ReasoningBase):
    """Reasoning for one live-page step, including the action to execute."""

    kind: Literal["agent"] = "agent"
    likely_action: Action | None = None
    browser_action: BrowserAction
    intent: Action
    completes_goal: bool | None = None


class ReasoningFailure(_CamelModel):
    """Placeholder reasoning for a step whose model output never validated."""

    kind: Literal["failure"] = "failure"
    error: str
    attempts: int = Field(ge=1)


StepReasoning = Annotated[
    Union[ScreenshotReasoning, AgentReasoning, ReasoningFailure],
    Field(discriminator="kind"),
]
