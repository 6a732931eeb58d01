"""Finding aggregator: turn a run's step traces into its report.

Confusions are clustered by exact ``(issue, elementRef)``. A cluster's
severity is the highest friction among its contributing steps, its frequency
is the number of distinct contributing steps, and its evidence and location
come from the highest-friction step (the earliest one on ties). The whole
computation is a pure function of the stored traces, so rerunning it over
the same inputs yields a byte-identical report.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from persona_lab.errors import AggregationError
from persona_lab.reasoning.outputs import ReasoningFailure
from persona_lab.schemas import (
    AgentObservation,
    Episode,
    EpisodeStatus,
    Finding,
    Persona,
    PersonaConfusion,
    PersonaRollup,
    ReportJson,
    ReportSummary,
    Run,
    RunStatus,
    ScreenStats,
    StepTrace,
)
from persona_lab.store import SimulationStore

logger = logging.getLogger(__name__)


def screen_label_for_url(url: str | None) -> str:
    """URL path used to group agent-mode steps into screens."""
    if not url:
        return "unknown"
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if parts.scheme and parts.netloc:
        return parts.path or "/"
    return url


def finding_id(run_id: str, issue: str, element_ref: str | None) -> str:
    digest = hashlib.sha1(f"{run_id}\x1f{issue}\x1f{element_ref or ''}".encode()).hexdigest()
    return f"fnd_{digest[:16]}"


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


@dataclass
class _Cluster:
    issue: str
    element_ref: str | None
    order: int
    steps: set[tuple[str, int]] = field(default_factory=set)
    personas: set[str] = field(default_factory=set)
    severity: float = -1.0
    evidence: str = ""
    step_index: int | None = None
    screen_index: int | None = None
    screen_label: str | None = None


@dataclass
class _ScreenAcc:
    label: str | None
    frictions: list[float] = field(default_factory=list)
    dropoffs: list[float] = field(default_factory=list)
    confusions: int = 0
    steps: int = 0


class _ScreenIndexer:
    """Assign a screen index to each trace observation."""

    def __init__(self) -> None:
        self._agent_paths: dict[str, int] = {}

    def locate(self, trace: StepTrace) -> tuple[int, str | None]:
        observation = trace.observation
        if isinstance(observation, AgentObservation):
            label = screen_label_for_url(observation.url)
            index = self._agent_paths.setdefault(label, len(self._agent_paths))
            return index, label
        return observation.frame_index, None


def build_report(
    run: Run,
    episodes: list[Episode],
    traces: dict[str, list[StepTrace]],
    personas: dict[str, Persona],
) -> ReportJson:
    """Compute the report for *run* from its episodes (in creation order) and traces."""
    indexer = _ScreenIndexer()
    clusters: dict[tuple[str, str | None], _Cluster] = {}
    screens: dict[int, _ScreenAcc] = {}
    rollups: list[PersonaRollup] = []
    all_frictions: list[float] = []
    all_dropoffs: list[float] = []

    for episode in episodes:
        persona = personas.get(episode.persona_id)
        frictions: list[float] = []
        confidences: list[float] = []
        confusions: list[PersonaConfusion] = []
        episode_traces = sorted(traces.get(episode.id, []), key=lambda t: t.step_index)

        for trace in episode_traces:
            screen_index, label = indexer.locate(trace)
            screen = screens.setdefault(screen_index, _ScreenAcc(label=label))
            screen.steps += 1
            if isinstance(trace.reasoning, ReasoningFailure):
                continue

            screen.frictions.append(trace.friction)
            screen.dropoffs.append(trace.dropoff_risk)
            screen.confusions += len(trace.reasoning.confusions)
            frictions.append(trace.friction)
            confidences.append(trace.confidence)
            all_frictions.append(trace.friction)
            all_dropoffs.append(trace.dropoff_risk)

            for confusion in trace.reasoning.confusions:
                confusions.append(
                    PersonaConfusion(
                        issue=confusion.issue,
                        evidence=confusion.evidence,
                        element_ref=confusion.element_ref,
                        step_index=trace.step_index,
                        screen_index=screen_index,
                    )
                )
                key = (confusion.issue, confusion.element_ref)
                cluster = clusters.get(key)
                if cluster is None:
                    cluster = _Cluster(confusion.issue, confusion.element_ref, order=len(clusters))
                    clusters[key] = cluster
                cluster.steps.add((episode.id, trace.step_index))
                cluster.personas.add(episode.persona_id)
                if trace.friction > cluster.severity:
                    cluster.severity = trace.friction
                    cluster.evidence = confusion.evidence
                    cluster.step_index = trace.step_index
                    cluster.screen_index = screen_index
                    cluster.screen_label = label

        rollups.append(
            PersonaRollup(
                episode_id=episode.id,
                persona_id=episode.persona_id,
                persona_name=persona.name if persona else "",
                age_group=persona.age_group if persona else "",
                gender=persona.gender if persona else "",
                traits=persona.traits if persona else None,
                episode_status=episode.status,
                avg_friction=_mean(frictions),
                avg_confidence=_mean(confidences),
                steps_count=len(episode_traces),
                confusions=confusions,
            )
        )

    ranked = sorted(
        clusters.values(),
        key=lambda c: (-c.severity, -len(c.steps), c.order),
    )
    findings = [
        Finding(
            id=finding_id(run.id, c.issue, c.element_ref),
            run_id=run.id,
            issue=c.issue,
            evidence=c.evidence,
            severity=c.severity,
            frequency=len(c.steps),
            affected_personas=sorted(c.personas),
            element_ref=c.element_ref,
            step_index=c.step_index,
            screen_index=c.screen_index,
            screen_label=c.screen_label,
        )
        for c in ranked
    ]

    findings_per_screen: dict[int, int] = {}
    for finding in findings:
        if finding.screen_index is not None:
            findings_per_screen[finding.screen_index] = findings_per_screen.get(finding.screen_index, 0) + 1

    per_screen = [
        ScreenStats(
            screen_index=index,
            screen_label=acc.label,
            avg_friction=_mean(acc.frictions),
            max_friction=max(acc.frictions, default=0.0),
            avg_dropoff_risk=_mean(acc.dropoffs),
            confusion_count=acc.confusions,
            finding_count=findings_per_screen.get(index, 0),
            total_steps=acc.steps,
        )
        for index, acc in sorted(screens.items())
    ]

    summary = ReportSummary(
        total_episodes=len(episodes),
        completed_episodes=sum(1 for e in episodes if e.status == EpisodeStatus.COMPLETED),
        abandoned_episodes=sum(1 for e in episodes if e.status == EpisodeStatus.ABANDONED),
        avg_friction=_mean(all_frictions),
        avg_dropoff_risk=_mean(all_dropoffs),
    )
    return ReportJson(summary=summary, findings=findings, per_screen=per_screen, per_persona=rollups)


class FindingAggregator:
    """Builds and stores the report once every episode of a run is terminal."""

    def __init__(self, store: SimulationStore) -> None:
        self.store = store

    def aggregate(self, run_id: str) -> ReportJson:
        """Aggregate *run_id* and complete the run.

        A run that is already COMPLETED is left untouched and its stored
        report is returned.

        Raises
        ------
        AggregationError
            If an episode is not terminal yet or the computation fails. Nothing
            is written and the run keeps its status.
        """
        run = self.store.get_run(run_id)
        if run.status == RunStatus.COMPLETED and run.report_json is not None:
            logger.info("Run %s already aggregated", run_id)
            return run.report_json

        episodes = self.store.list_episodes(run_id)
        waiting = [e.id for e in episodes if not e.status.is_terminal]
        if waiting:
            raise AggregationError(f"run {run_id} has {len(waiting)} non-terminal episode(s)")

        try:
            traces = {e.id: self.store.list_steps(e.id) for e in episodes}
            personas: dict[str, Persona] = {}
            for episode in episodes:
                persona = self.store.find_persona(episode.persona_id)
                if persona is not None:
                    personas[persona.id] = persona
            report = build_report(run, episodes, traces, personas)
        except Exception as exc:
            logger.error("Aggregation of run %s failed: %s", run_id, exc)
            raise AggregationError(f"aggregation of run {run_id} failed: {exc}") from exc

        if not self.store.save_report(run_id, report):
            logger.info("Run %s was completed concurrently; returning stored report", run_id)
            stored = self.store.get_run(run_id).report_json
            return stored if stored is not None else report

        logger.info(
            "Run %s aggregated: %d finding(s) from %d episode(s), avg friction %.2f",
            run_id, len(report.findings), report.summary.total_episodes, report.summary.avg_friction,
        )
        return report
