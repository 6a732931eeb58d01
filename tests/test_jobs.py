"""Unit tests for the in-process job queue."""

from __future__ import annotations

import threading

import pytest

from persona_lab.jobs import AggregateReportJob, JobQueue, QueueName, SimulateEpisodeJob

pytestmark = pytest.mark.unit


def _job(episode_id: str = "ep-1") -> SimulateEpisodeJob:
    return SimulateEpisodeJob(episode_id=episode_id, run_id="run-1", model="m", max_steps=5)


def test_fifo_per_queue_and_queues_are_independent() -> None:
    queue = JobQueue()
    queue.enqueue(QueueName.SIMULATE_EPISODE, _job("a"))
    queue.enqueue(QueueName.SIMULATE_EPISODE, _job("b"))
    queue.enqueue(QueueName.AGGREGATE_REPORT, AggregateReportJob(run_id="run-1"))

    assert queue.get(QueueName.SIMULATE_EPISODE, timeout=0).key == "a"
    assert queue.get(QueueName.SIMULATE_EPISODE, timeout=0).key == "b"
    assert queue.get(QueueName.SIMULATE_EPISODE, timeout=0) is None
    assert queue.pending(QueueName.AGGREGATE_REPORT) == 1


def test_duplicate_key_is_ignored_until_acked() -> None:
    queue = JobQueue()
    assert queue.enqueue(QueueName.SIMULATE_EPISODE, _job()) is True
    assert queue.enqueue(QueueName.SIMULATE_EPISODE, _job()) is False

    delivery = queue.get(QueueName.SIMULATE_EPISODE, timeout=0)
    assert queue.enqueue(QueueName.SIMULATE_EPISODE, _job()) is False
    queue.ack(delivery)

    assert queue.enqueue(QueueName.SIMULATE_EPISODE, _job()) is True


def test_nack_redelivers_until_max_deliveries() -> None:
    queue = JobQueue(max_deliveries=2)
    queue.enqueue(QueueName.SIMULATE_EPISODE, _job())

    first = queue.get(QueueName.SIMULATE_EPISODE, timeout=0)
    queue.nack(first, "boom")
    second = queue.get(QueueName.SIMULATE_EPISODE, timeout=0)
    assert second.attempt == 2
    queue.nack(second, "boom again")

    assert queue.get(QueueName.SIMULATE_EPISODE, timeout=0) is None
    assert len(queue.dead_letters) == 1
    assert queue.dead_letters[0][1] == "boom again"
    assert queue.wait_idle(timeout=0) is True


def test_wait_idle_tracks_in_flight_deliveries() -> None:
    queue = JobQueue()
    queue.enqueue(QueueName.SIMULATE_EPISODE, _job())
    delivery = queue.get(QueueName.SIMULATE_EPISODE, timeout=0)

    assert queue.wait_idle(timeout=0.01) is False
    queue.ack(delivery)
    assert queue.wait_idle(timeout=0) is True


def test_close_wakes_blocked_consumers() -> None:
    queue = JobQueue()
    results: list[object] = []

    def consume() -> None:
        results.append(queue.get(QueueName.SIMULATE_EPISODE, timeout=5))

    thread = threading.Thread(target=consume)
    thread.start()
    queue.close()
    thread.join(timeout=5)

    assert results == [None]
    with pytest.raises(RuntimeError):
        queue.enqueue(QueueName.SIMULATE_EPISODE, _job())
