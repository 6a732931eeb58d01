"""Simulation store: runs, episodes, step traces, findings and reports.

State lives in memory behind one re-entrant lock. When a data directory is
given, every write is mirrored as an append-only JSONL event and replayed on
start-up (last occurrence per id wins; traces are appended in order).

Each public method is one atomic unit. The lock is never held by callers
across a reasoning call or a browser action.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from persona_lab.errors import DuplicateTriggerError, NotFoundError, StepSequenceError
from persona_lab.file_io import append_jsonl, iter_jsonl
from persona_lab.schemas import (
    Episode,
    EpisodeStatus,
    Finding,
    Flow,
    Persona,
    ReportJson,
    Run,
    RunStatus,
    StepTrace,
    TERMINAL_EPISODE_STATUSES,
)

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "flow": Flow,
    "persona": Persona,
    "run": Run,
    "episode": Episode,
    "trace": StepTrace,
    "finding": Finding,
}


class SimulationStore:
    """Thread-safe in-process store with optional JSONL persistence.

    Parameters
    ----------
    data_dir:
        Directory for ``events.jsonl``. ``None`` keeps everything in memory.
    """

    def __init__(self, data_dir: str | Path | None = None) -> None:
        self._lock = threading.RLock()
        self._flows: dict[str, Flow] = {}
        self._personas: dict[str, Persona] = {}
        self._runs: dict[str, Run] = {}
        self._episodes: dict[str, Episode] = {}
        self._run_episodes: dict[str, list[str]] = {}
        self._traces: dict[str, list[StepTrace]] = {}
        self._findings: dict[str, Finding] = {}
        self._run_findings: dict[str, list[str]] = {}
        self.events_path: Path | None = None
        if data_dir is not None:
            self.events_path = Path(data_dir).resolve() / EVENTS_FILE
            self._load(self.events_path)

    # ── persistence ──────────────────────────────────────────────

    def _persist(self, kind: str, model: BaseModel) -> None:
        # Caller must hold ``self._lock``.
        if self.events_path is None:
            return
        append_jsonl(
            self.events_path,
            {"type": kind, "data": model.model_dump(mode="json", by_alias=True)},
        )

    def _load(self, events_path: Path) -> None:
        loaded = 0
        with self._lock:
            for record in iter_jsonl(events_path):
                kind = record.get("type", "")
                model_cls = _EVENT_MODELS.get(kind)
                if model_cls is None:
                    logger.warning("Skip unknown store event type: %r", kind)
                    continue
                try:
                    model = model_cls.model_validate(record.get("data") or {})
                except ValidationError as exc:
                    logger.warning("Skip invalid %s event: %s", kind, exc.error_count())
                    continue
                self._apply(kind, model)
                loaded += 1
        if loaded:
            logger.info("Store replayed %d events from %s", loaded, events_path)

    def _apply(self, kind: str, model: Any) -> None:
        if kind == "flow":
            self._flows[model.id] = model
        elif kind == "persona":
            self._personas[model.id] = model
        elif kind == "run":
            self._runs[model.id] = model
            self._run_episodes.setdefault(model.id, [])
        elif kind == "episode":
            if model.id not in self._episodes:
                self._run_episodes.setdefault(model.run_id, []).append(model.id)
            self._episodes[model.id] = model
        elif kind == "trace":
            self._traces.setdefault(model.episode_id, []).append(model)
        elif kind == "finding":
            if model.id not in self._findings:
                self._run_findings.setdefault(model.run_id, []).append(model.id)
            self._findings[model.id] = model

    def _write(self, kind: str, model: BaseModel) -> None:
        self._apply(kind, model)
        self._persist(kind, model)

    # ── flows and personas ───────────────────────────────────────

    def put_flow(self, flow: Flow) -> Flow:
        with self._lock:
            self._write("flow", flow)
        return flow

    def find_flow(self, flow_id: str) -> Flow | None:
        with self._lock:
            return self._flows.get(flow_id)

    def get_flow(self, flow_id: str) -> Flow:
        flow = self.find_flow(flow_id)
        if flow is None:
            raise NotFoundError("flow", flow_id)
        return flow

    def put_persona(self, persona: Persona) -> Persona:
        with self._lock:
            self._write("persona", persona)
        return persona

    def find_persona(self, persona_id: str) -> Persona | None:
        with self._lock:
            persona = self._personas.get(persona_id)
            return persona.model_copy(deep=True) if persona else None

    def get_persona(self, persona_id: str) -> Persona:
        persona = self.find_persona(persona_id)
        if persona is None:
            raise NotFoundError("persona", persona_id)
        return persona

    # ── runs and episodes ────────────────────────────────────────

    def create_run_with_episodes(self, run: Run, episodes: Iterable[Episode]) -> Run:
        """Write a run and all of its episodes as one unit."""
        episodes = list(episodes)
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"run already exists: {run.id}")
            for episode in episodes:
                if episode.run_id != run.id:
                    raise ValueError(f"episode {episode.id} does not belong to run {run.id}")
                if episode.id in self._episodes:
                    raise ValueError(f"episode already exists: {episode.id}")
            self._write("run", run)
            for episode in episodes:
                self._write("episode", episode)
        logger.debug("Created run %s with %d episodes", run.id, len(episodes))
        return run.model_copy(deep=True)

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            return run.model_copy(deep=True)

    def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        expected: Iterable[RunStatus] | None = None,
    ) -> bool:
        """Set the run status, optionally only when it is currently in *expected*."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            if expected is not None and run.status not in frozenset(expected):
                return False
            self._write("run", run.model_copy(update={"status": status}))
        return True

    def get_episode(self, episode_id: str) -> Episode:
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None:
                raise NotFoundError("episode", episode_id)
            return episode.model_copy()

    def list_episodes(self, run_id: str) -> list[Episode]:
        """Episodes of a run in creation order."""
        with self._lock:
            if run_id not in self._runs:
                raise NotFoundError("run", run_id)
            return [self._episodes[eid].model_copy() for eid in self._run_episodes.get(run_id, [])]

    def transition_episode(
        self,
        episode_id: str,
        status: EpisodeStatus,
        *,
        expected: Iterable[EpisodeStatus],
        failure_reason: str | None = None,
    ) -> bool:
        """Compare-and-set the episode status. Returns False if it was not in *expected*."""
        allowed = frozenset(expected)
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None:
                raise NotFoundError("episode", episode_id)
            if episode.status not in allowed:
                return False
            update: dict[str, Any] = {"status": status}
            if failure_reason is not None:
                update["failure_reason"] = failure_reason
            self._write("episode", episode.model_copy(update=update))
        return True

    def terminal_counts(self, run_id: str) -> tuple[int, int]:
        """Return ``(terminal, total)`` episode counts for a run."""
        with self._lock:
            ids = self._run_episodes.get(run_id)
            if ids is None:
                raise NotFoundError("run", run_id)
            terminal = sum(1 for eid in ids if self._episodes[eid].status in TERMINAL_EPISODE_STATUSES)
            return terminal, len(ids)

    # ── step traces ──────────────────────────────────────────────

    def append_step(self, trace: StepTrace) -> StepTrace:
        """Append a trace; the index must extend the episode's sequence by exactly one."""
        with self._lock:
            episode = self._episodes.get(trace.episode_id)
            if episode is None:
                raise NotFoundError("episode", trace.episode_id)
            if episode.status != EpisodeStatus.RUNNING:
                raise StepSequenceError(
                    f"episode {episode.id} is {episode.status.value}, not RUNNING"
                )
            expected_index = len(self._traces.get(episode.id, []))
            if trace.step_index != expected_index:
                raise StepSequenceError(
                    f"episode {episode.id} expects step {expected_index}, got {trace.step_index}"
                )
            self._write("trace", trace)
            self._write("episode", episode.model_copy(update={"step_count": expected_index + 1}))
        return trace

    def list_steps(self, episode_id: str) -> list[StepTrace]:
        with self._lock:
            return list(self._traces.get(episode_id, []))

    # ── aggregation ──────────────────────────────────────────────

    def mark_aggregation_triggered(self, run_id: str) -> None:
        """Set the run's trigger flag, raising if another caller already set it."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            if run.aggregation_triggered:
                raise DuplicateTriggerError(run_id)
            self._write("run", run.model_copy(update={"aggregation_triggered": True}))

    def save_report(self, run_id: str, report: ReportJson) -> bool:
        """Persist findings and report and complete the run as one unit.

        Returns False without writing when the run is already COMPLETED.
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            if run.status == RunStatus.COMPLETED:
                return False
            for finding in report.findings:
                self._write("finding", finding)
            self._write(
                "run",
                run.model_copy(update={"report_json": report, "status": RunStatus.COMPLETED}),
            )
        return True

    def get_finding(self, finding_id: str) -> Finding:
        with self._lock:
            finding = self._findings.get(finding_id)
            if finding is None:
                raise NotFoundError("finding", finding_id)
            return finding.model_copy()

    def list_findings(self, run_id: str) -> list[Finding]:
        with self._lock:
            return [self._findings[fid].model_copy() for fid in self._run_findings.get(run_id, [])]

    def update_finding_fix(self, finding_id: str, fix: str) -> Finding:
        """Cache a recommended fix on the finding and on the run's report copy."""
        with self._lock:
            finding = self._findings.get(finding_id)
            if finding is None:
                raise NotFoundError("finding", finding_id)
            updated = finding.model_copy(update={"recommended_fix": fix})
            self._write("finding", updated)
            run = self._runs.get(finding.run_id)
            if run is not None and run.report_json is not None:
                findings = [
                    updated if f.id == finding_id else f for f in run.report_json.findings
                ]
                report = run.report_json.model_copy(update={"findings": findings})
                self._write("run", run.model_copy(update={"report_json": report}))
        return updated.model_copy()
