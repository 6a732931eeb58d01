"""Tests for exactly-once aggregation triggering."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from persona_lab.jobs import AggregateReportJob, JobQueue, QueueName
from persona_lab.schemas import Episode, EpisodeStatus, Run
from persona_lab.store import SimulationStore
from persona_lab.tracker import CompletionTracker

pytestmark = pytest.mark.unit


def _store(episodes: int = 10) -> tuple[SimulationStore, list[Episode]]:
    store = SimulationStore()
    run = Run(id="run-1", flow_id="flow-1", mode="SCREENSHOT")
    eps = [Episode(id=f"ep-{i}", run_id=run.id, persona_id=f"p{i}") for i in range(episodes)]
    store.create_run_with_episodes(run, eps)
    return store, eps


def test_no_job_while_episodes_are_pending() -> None:
    store, eps = _store(3)
    queue = JobQueue()
    tracker = CompletionTracker(store, queue)
    store.transition_episode(eps[0].id, EpisodeStatus.COMPLETED, expected={EpisodeStatus.PENDING})

    assert tracker.notify_terminal("run-1") is False
    assert queue.pending(QueueName.AGGREGATE_REPORT) == 0
    assert store.get_run("run-1").aggregation_triggered is False


def test_concurrent_notifications_enqueue_exactly_once() -> None:
    store, eps = _store(10)
    queue = JobQueue()
    tracker = CompletionTracker(store, queue)

    def finish(episode: Episode) -> bool:
        store.transition_episode(episode.id, EpisodeStatus.COMPLETED, expected={EpisodeStatus.PENDING})
        return tracker.notify_terminal(episode.run_id)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(finish, eps))

    assert results.count(True) == 1
    assert queue.pending(QueueName.AGGREGATE_REPORT) == 1
    delivery = queue.get(QueueName.AGGREGATE_REPORT, timeout=0)
    assert delivery.job == AggregateReportJob(run_id="run-1")


def test_repeated_notifications_after_trigger_are_ignored() -> None:
    store, eps = _store(1)
    queue = JobQueue()
    tracker = CompletionTracker(store, queue)
    store.transition_episode(eps[0].id, EpisodeStatus.FAILED, expected={EpisodeStatus.PENDING})

    assert tracker.notify_terminal("run-1") is True
    queue.ack(queue.get(QueueName.AGGREGATE_REPORT, timeout=0))
    assert tracker.notify_terminal("run-1") is False
    assert queue.pending(QueueName.AGGREGATE_REPORT) == 0
