"""Run creation: one episode and one simulation job per persona."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from persona_lab.jobs import (
    EpisodeJob,
    JobQueue,
    QueueName,
    SimulateAgentEpisodeJob,
    SimulateEpisodeJob,
)
from persona_lab.schemas import Episode, Flow, FlowMode, Run, RunConfig, RunStatus
from persona_lab.store import SimulationStore

logger = logging.getLogger(__name__)

QUEUE_FOR_MODE: dict[FlowMode, QueueName] = {
    FlowMode.SCREENSHOT: QueueName.SIMULATE_EPISODE,
    FlowMode.AGENT: QueueName.SIMULATE_AGENT_EPISODE,
}


def new_id() -> str:
    return uuid.uuid4().hex


def build_episode_job(flow: Flow, run: Run, episode: Episode) -> EpisodeJob:
    """Build the queue payload for one episode of *run*."""
    if run.mode == FlowMode.AGENT:
        return SimulateAgentEpisodeJob(
            episode_id=episode.id,
            run_id=run.id,
            model=run.config.model,
            max_steps=run.config.max_steps,
            url=flow.url or "",
            goal=flow.goal or "",
        )
    return SimulateEpisodeJob(
        episode_id=episode.id,
        run_id=run.id,
        model=run.config.model,
        max_steps=run.config.max_steps,
        seed=episode.seed,
    )


class JobDispatcher:
    """Turn a flow and a persona set into a run with queued episode jobs.

    Parameters
    ----------
    store:
        Where the run and its episodes are written.
    queue:
        Where episode jobs are enqueued.
    """

    def __init__(self, store: SimulationStore, queue: JobQueue) -> None:
        self.store = store
        self.queue = queue

    def create_run(
        self,
        flow_id: str,
        persona_ids: Iterable[str],
        config: RunConfig | dict[str, Any] | None = None,
    ) -> Run:
        """Create a run, its episodes and their jobs, and mark it SIMULATING.

        All lookups happen before anything is written, so an unknown flow or
        persona leaves no run, no episode and no job behind.

        Raises
        ------
        ValueError
            If *persona_ids* is empty.
        NotFoundError
            If the flow or any persona does not exist.
        """
        if config is None:
            config = RunConfig()
        elif not isinstance(config, RunConfig):
            config = RunConfig.model_validate(config)
        ids = list(dict.fromkeys(persona_ids))
        if not ids:
            raise ValueError("a run needs at least one persona")

        flow = self.store.get_flow(flow_id)
        for persona_id in ids:
            self.store.get_persona(persona_id)

        run = Run(id=new_id(), flow_id=flow.id, mode=flow.mode, config=config)
        episodes = [
            Episode(id=new_id(), run_id=run.id, persona_id=persona_id, seed=config.seed)
            for persona_id in ids
        ]
        self.store.create_run_with_episodes(run, episodes)

        queue_name = QUEUE_FOR_MODE[run.mode]
        try:
            for episode in episodes:
                self.queue.enqueue(queue_name, build_episode_job(flow, run, episode))
        except Exception:
            logger.exception("Enqueue failed for run %s; marking it FAILED", run.id)
            self.store.set_run_status(run.id, RunStatus.FAILED, expected={RunStatus.PENDING})
            raise

        self.store.set_run_status(run.id, RunStatus.SIMULATING, expected={RunStatus.PENDING})
        logger.info(
            "Run %s: %d %s episode(s) queued on %s (model=%s, maxSteps=%d)",
            run.id, len(episodes), run.mode.value.lower(), queue_name.value,
            config.model, config.max_steps,
        )
        return self.store.get_run(run.id)
