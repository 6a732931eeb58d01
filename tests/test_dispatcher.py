"""Tests for run creation and episode job dispatch."""

from __future__ import annotations

import pytest

from persona_lab.dispatcher import JobDispatcher
from persona_lab.errors import NotFoundError
from persona_lab.jobs import JobQueue, QueueName, SimulateAgentEpisodeJob, SimulateEpisodeJob
from persona_lab.schemas import (
    EpisodeStatus,
    Flow,
    FlowMode,
    Frame,
    Persona,
    PersonaTraits,
    RunConfig,
    RunStatus,
)
from persona_lab.store import SimulationStore

pytestmark = pytest.mark.unit

TRAITS = PersonaTraits(patience=0.5, exploration=0.5, frustration_sensitivity=0.5, forgiveness=0.5, help_seeking=0.5)


def _store() -> SimulationStore:
    store = SimulationStore()
    store.put_flow(
        Flow(id="shots", name="Checkout", mode=FlowMode.SCREENSHOT, frames=[Frame(id="fr0", position=0)])
    )
    store.put_flow(Flow(id="live", name="Shop", mode=FlowMode.AGENT, url="https://shop.test", goal="Buy socks"))
    for pid in ("p1", "p2", "p3"):
        store.put_persona(Persona(id=pid, name=pid.upper(), traits=TRAITS))
    return store


def test_screenshot_run_enqueues_one_job_per_persona() -> None:
    store, queue = _store(), JobQueue()
    run = JobDispatcher(store, queue).create_run("shots", ["p1", "p2", "p3"], RunConfig(max_steps=5, seed=42))

    assert run.status == RunStatus.SIMULATING
    assert run.mode == FlowMode.SCREENSHOT
    episodes = store.list_episodes(run.id)
    assert [e.persona_id for e in episodes] == ["p1", "p2", "p3"]
    assert all(e.status == EpisodeStatus.PENDING and e.seed == 42 for e in episodes)

    assert queue.pending(QueueName.SIMULATE_EPISODE) == 3
    assert queue.pending(QueueName.SIMULATE_AGENT_EPISODE) == 0
    delivery = queue.get(QueueName.SIMULATE_EPISODE, timeout=0)
    assert isinstance(delivery.job, SimulateEpisodeJob)
    assert delivery.job.episode_id == episodes[0].id
    assert delivery.job.max_steps == 5
    assert delivery.job.seed == 42


def test_agent_run_uses_agent_queue_with_url_and_goal() -> None:
    store, queue = _store(), JobQueue()
    run = JobDispatcher(store, queue).create_run("live", ["p1"], {"model": "openai/gpt-4o", "maxSteps": 10})

    delivery = queue.get(QueueName.SIMULATE_AGENT_EPISODE, timeout=0)
    assert isinstance(delivery.job, SimulateAgentEpisodeJob)
    assert delivery.job.url == "https://shop.test"
    assert delivery.job.goal == "Buy socks"
    assert delivery.job.model == "openai/gpt-4o"
    assert run.config.max_steps == 10


def test_duplicate_personas_collapse_to_one_episode() -> None:
    store, queue = _store(), JobQueue()
    run = JobDispatcher(store, queue).create_run("shots", ["p1", "p1", "p2"])

    assert [e.persona_id for e in store.list_episodes(run.id)] == ["p1", "p2"]
    assert queue.pending(QueueName.SIMULATE_EPISODE) == 2


def test_missing_flow_writes_and_enqueues_nothing() -> None:
    store, queue = _store(), JobQueue()
    with pytest.raises(NotFoundError):
        JobDispatcher(store, queue).create_run("missing", ["p1"])

    assert store._runs == {}
    assert store._episodes == {}
    assert queue.pending(QueueName.SIMULATE_EPISODE) == 0


def test_missing_persona_writes_nothing() -> None:
    store, queue = _store(), JobQueue()
    with pytest.raises(NotFoundError) as excinfo:
        JobDispatcher(store, queue).create_run("shots", ["p1", "ghost"])

    assert excinfo.value.kind == "persona"
    assert store._runs == {}
    assert queue.pending(QueueName.SIMULATE_EPISODE) == 0


def test_empty_persona_list_rejected() -> None:
    with pytest.raises(ValueError):
        JobDispatcher(_store(), JobQueue()).create_run("shots", [])


def test_enqueue_failure_marks_run_failed() -> None:
    store = _store()

    class BrokenQueue(JobQueue):
        def enqueue(self, queue, job):
            raise RuntimeError("queue unavailable")

    dispatcher = JobDispatcher(store, BrokenQueue())
    with pytest.raises(RuntimeError):
        dispatcher.create_run("shots", ["p1"])

    runs = list(store._runs.values())
    assert len(runs) == 1
    assert runs[0].status == RunStatus.FAILED
