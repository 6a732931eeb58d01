"""Completion tracker: trigger report aggregation exactly once per run."""

from __future__ import annotations

import logging

from persona_lab.errors import DuplicateTriggerError
from persona_lab.jobs import AggregateReportJob, JobQueue, QueueName
from persona_lab.store import SimulationStore

logger = logging.getLogger(__name__)


class CompletionTracker:
    """Watches episode terminations and enqueues the run's aggregation job.

    Any number of notifications may arrive, concurrently and in any order;
    the compare-and-set on the run's trigger flag lets exactly one of them
    enqueue.
    """

    def __init__(self, store: SimulationStore, queue: JobQueue) -> None:
        self.store = store
        self.queue = queue

    def notify_terminal(self, run_id: str) -> bool:
        """Check the run after an episode ended. True only for the call that enqueued."""
        terminal, total = self.store.terminal_counts(run_id)
        if terminal < total:
            logger.debug("Run %s: %d/%d episodes terminal", run_id, terminal, total)
            return False
        try:
            self.store.mark_aggregation_triggered(run_id)
        except DuplicateTriggerError:
            logger.debug("Run %s: aggregation already triggered", run_id)
            return False
        self.queue.enqueue(QueueName.AGGREGATE_REPORT, AggregateReportJob(run_id=run_id))
        logger.info("Run %s: all %d episodes terminal; aggregation queued", run_id, total)
        return True
