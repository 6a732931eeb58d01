"""Job payloads and the in-process, at-least-once job queue."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Union

from pydantic import Field

from persona_lab.schemas import CamelModel

logger = logging.getLogger(__name__)


class QueueName(str, Enum):
    SIMULATE_EPISODE = "simulate_episode"
    SIMULATE_AGENT_EPISODE = "simulate_agent_episode"
    AGGREGATE_REPORT = "aggregate_report"


# ── Payloads ─────────────────────────────────────────────────────


class SimulateEpisodeJob(CamelModel):
    """Run one screenshot-mode episode."""

    episode_id: str
    run_id: str
    model: str
    max_steps: int = Field(ge=1)
    seed: int | None = None

    @property
    def key(self) -> str:
        return self.episode_id


class SimulateAgentEpisodeJob(CamelModel):
    """Run one agent-mode episode against a live page."""

    episode_id: str
    run_id: str
    model: str
    max_steps: int = Field(ge=1)
    url: str
    goal: str

    @property
    def key(self) -> str:
        return self.episode_id


class AggregateReportJob(CamelModel):
    run_id: str

    @property
    def key(self) -> str:
        return self.run_id


EpisodeJob = Union[SimulateEpisodeJob, SimulateAgentEpisodeJob]
Job = Union[SimulateEpisodeJob, SimulateAgentEpisodeJob, AggregateReportJob]


@dataclass(frozen=True, slots=True)
class Delivery:
    """One hand-out of a job to a worker."""

    queue: QueueName
    job: Job
    attempt: int = 1

    @property
    def key(self) -> str:
        return self.job.key


class JobQueue:
    """Named FIFO queues with at-least-once delivery.

    A job stays registered under its key from :meth:`enqueue` until it is
    acknowledged or dropped, so enqueuing the same key twice in that window
    is a no-op. A negatively acknowledged delivery is put back until it has
    been handed out *max_deliveries* times.
    """

    def __init__(self, max_deliveries: int = 3) -> None:
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self.max_deliveries = max_deliveries
        self._cond = threading.Condition()
        self._ready: dict[QueueName, deque[Delivery]] = {name: deque() for name in QueueName}
        self._keys: set[tuple[QueueName, str]] = set()
        self._in_flight = 0
        self._closed = False
        self.dead_letters: list[tuple[Delivery, str]] = []

    def enqueue(self, queue: QueueName, job: Job) -> bool:
        """Add *job* to *queue*. Returns False when the key is already queued."""
        queue = QueueName(queue)
        with self._cond:
            if self._closed:
                raise RuntimeError("job queue is closed")
            if (queue, job.key) in self._keys:
                logger.debug("Job %s already queued on %s", job.key, queue.value)
                return False
            self._keys.add((queue, job.key))
            self._ready[queue].append(Delivery(queue=queue, job=job))
            self._cond.notify_all()
        logger.debug("Enqueued %s on %s", job.key, queue.value)
        return True

    def get(self, queue: QueueName, timeout: float | None = None) -> Delivery | None:
        """Take the next delivery from *queue*, or None on timeout or close."""
        queue = QueueName(queue)
        with self._cond:
            self._cond.wait_for(lambda: self._ready[queue] or self._closed, timeout=timeout)
            if not self._ready[queue]:
                return None
            self._in_flight += 1
            return self._ready[queue].popleft()

    def ack(self, delivery: Delivery) -> None:
        with self._cond:
            self._in_flight -= 1
            self._keys.discard((delivery.queue, delivery.key))
            self._cond.notify_all()

    def nack(self, delivery: Delivery, error: str) -> None:
        """Return a failed delivery for another attempt, or drop it when exhausted."""
        with self._cond:
            self._in_flight -= 1
            if delivery.attempt < self.max_deliveries and not self._closed:
                self._ready[delivery.queue].append(replace(delivery, attempt=delivery.attempt + 1))
                logger.warning(
                    "Job %s on %s failed (attempt %d/%d): %s",
                    delivery.key, delivery.queue.value, delivery.attempt, self.max_deliveries, error,
                )
            else:
                self._keys.discard((delivery.queue, delivery.key))
                self.dead_letters.append((delivery, error))
                logger.error(
                    "Job %s on %s dropped after %d attempts: %s",
                    delivery.key, delivery.queue.value, delivery.attempt, error,
                )
            self._cond.notify_all()

    def pending(self, queue: QueueName) -> int:
        with self._cond:
            return len(self._ready[QueueName(queue)])

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is ready or in flight. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._in_flight == 0 and not any(self._ready.values()),
                timeout=timeout,
            )

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed
