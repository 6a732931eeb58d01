"""Worker pool and the composition root that wires a simulation together."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from functools import partial
from typing import Any

from persona_lab.aggregator import FindingAggregator
from persona_lab.browser.session import PlaywrightSession
from persona_lab.config import Settings
from persona_lab.dispatcher import JobDispatcher
from persona_lab.engine import ClientFactory, EpisodeStepEngine, SessionFactory
from persona_lab.fixes import FixAdvisor
from persona_lab.jobs import AggregateReportJob, Job, JobQueue, QueueName
from persona_lab.reasoning.client import create_reasoning_client
from persona_lab.schemas import Run, RunConfig
from persona_lab.store import SimulationStore
from persona_lab.tracker import CompletionTracker

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Any]


class WorkerPool:
    """Daemon threads consuming named queues with per-queue concurrency.

    A handler that returns acknowledges the delivery; a handler that raises
    sends it back to the queue for redelivery.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[QueueName, Handler],
        concurrency: dict[QueueName, int],
        *,
        poll_interval: float = 0.2,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        for name, handler in self.handlers.items():
            for i in range(max(1, self.concurrency.get(name, 1))):
                thread = threading.Thread(
                    target=self._loop,
                    args=(name, handler),
                    name=f"{name.value}-{i}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.debug("Worker pool started %d thread(s)", len(self._threads))

    def _loop(self, name: QueueName, handler: Handler) -> None:
        while not self._stop.is_set():
            delivery = self.queue.get(name, timeout=self.poll_interval)
            if delivery is None:
                if self.queue.closed:
                    return
                continue
            try:
                handler(delivery.job)
            except Exception as exc:
                logger.exception("Handler for %s job %s raised", name.value, delivery.key)
                self.queue.nack(delivery, f"{type(exc).__name__}: {exc}")
            else:
                self.queue.ack(delivery)

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        self.queue.close()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.debug("Worker pool stopped")


class Simulation:
    """Owns one store, queue, provider factory and worker pool.

    Nothing here is a module-level singleton; tests and the CLI build their
    own instance and inject fakes where needed.

    Usage::

        with Simulation(settings) as sim:
            sim.store.put_flow(flow)
            sim.store.put_persona(persona)
            run = sim.run(flow.id, [persona.id], RunConfig(max_steps=10))
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: SimulationStore | None = None,
        client_factory: ClientFactory | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.store = store or SimulationStore(self.settings.data_dir)
        self.queue = JobQueue(max_deliveries=self.settings.max_deliveries)
        self.client_factory = client_factory or partial(create_reasoning_client, settings=self.settings)
        self.tracker = CompletionTracker(self.store, self.queue)
        self.dispatcher = JobDispatcher(self.store, self.queue)
        self.engine = EpisodeStepEngine(
            self.store,
            self.client_factory,
            tracker=self.tracker,
            session_factory=session_factory or partial(PlaywrightSession, headless=self.settings.headless),
            screenshots_dir=self.settings.screenshots_dir,
        )
        self.aggregator = FindingAggregator(self.store)
        self.fixes = FixAdvisor(self.store, self.client_factory)
        self.pool = WorkerPool(
            self.queue,
            handlers={
                QueueName.SIMULATE_EPISODE: self._handle_episode,
                QueueName.SIMULATE_AGENT_EPISODE: self._handle_episode,
                QueueName.AGGREGATE_REPORT: self._handle_aggregate,
            },
            concurrency={
                QueueName.SIMULATE_EPISODE: self.settings.simulate_concurrency,
                QueueName.SIMULATE_AGENT_EPISODE: self.settings.agent_concurrency,
                QueueName.AGGREGATE_REPORT: self.settings.aggregate_concurrency,
            },
        )

    def _handle_episode(self, job: Job) -> None:
        asyncio.run(self.engine.run_episode(job))

    def _handle_aggregate(self, job: Job) -> None:
        if not isinstance(job, AggregateReportJob):
            raise TypeError(f"aggregate queue got a {type(job).__name__}")
        self.aggregator.aggregate(job.run_id)

    def start(self) -> None:
        self.pool.start()

    def stop(self) -> None:
        self.pool.stop()

    def __enter__(self) -> Simulation:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    def run(
        self,
        flow_id: str,
        persona_ids: Iterable[str],
        config: RunConfig | dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Run:
        """Dispatch a run and block until the queue drains; return the run."""
        run = self.dispatcher.create_run(flow_id, persona_ids, config)
        if not self.queue.wait_idle(timeout=timeout):
            logger.warning("Run %s still in progress after %.0fs", run.id, timeout or 0)
        return self.store.get_run(run.id)
