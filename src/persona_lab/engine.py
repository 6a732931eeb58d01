"""Episode step engine: the per-persona simulation loop.

An episode moves PENDING -> RUNNING -> COMPLETED | ABANDONED | FAILED. Each
iteration observes the current screen, asks the reasoning provider what the
persona thinks and does, validates the answer, appends an immutable
:class:`~persona_lab.schemas.StepTrace` and decides whether to stop.

Termination after a successful step, first match wins:

1. agent mode: ``completesGoal`` is true or the action is ``done``
2. screenshot mode: the persona chose ``ABANDON``
3. the step budget (``maxSteps``) is used up
4. screenshot mode: a forward action (or a second SCROLL on one frame) moved
   past the last frame

Reasoning gets three attempts per step; if none validates, a failure trace is
written and the episode ends FAILED. In agent mode a browser action that
cannot be executed is recorded on the trace and the loop continues, unless
that was the third failure in a row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from persona_lab.browser.session import AutomationSession, PageState, PlaywrightSession
from persona_lab.config import (
    MAX_CONSECUTIVE_ACTION_FAILURES,
    MAX_REASONING_ATTEMPTS,
    MAX_SAME_SCREEN_STEPS,
    MAX_SCROLLS_ON_FRAME,
)
from persona_lab.errors import ActionError, ProviderError, ReasoningValidationError
from persona_lab.jobs import EpisodeJob, SimulateAgentEpisodeJob
from persona_lab.reasoning.client import ReasoningClient, StepInput
from persona_lab.reasoning.outputs import (
    FORWARD_ACTIONS,
    Action,
    AgentReasoning,
    DoneAction,
    ReasoningFailure,
    ScreenshotReasoning,
)
from persona_lab.reasoning.prompts import (
    build_agent_prompt,
    build_persona_context,
    build_screenshot_prompt,
)
from persona_lab.reasoning.validator import validate_reasoning
from persona_lab.schemas import (
    AgentObservation,
    EpisodeStatus,
    Flow,
    FlowMode,
    Frame,
    Persona,
    ScreenshotObservation,
    StepTrace,
)
from persona_lab.store import SimulationStore
from persona_lab.tracker import CompletionTracker

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], ReasoningClient]
SessionFactory = Callable[[], AutomationSession]
FrameLoader = Callable[[Frame], "bytes | None"]

Outcome = tuple[EpisodeStatus, "str | None"]


def read_frame_image(frame: Frame) -> bytes | None:
    """Load a frame's PNG from disk; None when the file is missing."""
    if not frame.image_path:
        return None
    path = Path(frame.image_path)
    if not path.is_file():
        logger.warning("Frame %s image not found: %s", frame.id, path)
        return None
    return path.read_bytes()


def _append_memory(memory: str, update: str | None) -> str:
    if not update or not update.strip():
        return memory
    return f"{memory}\n{update.strip()}" if memory else update.strip()


class EpisodeStepEngine:
    """Runs episode jobs to a terminal state.

    Parameters
    ----------
    store:
        Source of runs, flows and personas; sink for traces and status.
    client_factory:
        Builds a reasoning client for the run's model id.
    tracker:
        Notified after every terminal transition (and on no-op redelivery).
    session_factory:
        Builds the live-page session for agent-mode episodes.
    frame_loader:
        Returns PNG bytes for a screenshot-mode frame.
    screenshots_dir:
        Where agent-mode step screenshots are written; ``None`` skips saving.
    """

    def __init__(
        self,
        store: SimulationStore,
        client_factory: ClientFactory,
        *,
        tracker: CompletionTracker | None = None,
        session_factory: SessionFactory | None = None,
        frame_loader: FrameLoader = read_frame_image,
        screenshots_dir: str | Path | None = None,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.tracker = tracker
        self.session_factory = session_factory or PlaywrightSession
        self.frame_loader = frame_loader
        self.screenshots_dir = Path(screenshots_dir) if screenshots_dir else None

    # ── entry point ──────────────────────────────────────────────

    async def run_episode(self, job: EpisodeJob) -> EpisodeStatus:
        """Run one episode job and return the episode's final status."""
        tag = f"[episode:{job.episode_id[:8]}]"
        episode = self.store.get_episode(job.episode_id)

        if episode.status.is_terminal:
            logger.info("%s Already %s; nothing to do", tag, episode.status.value)
            self._notify(job.run_id)
            return episode.status

        if episode.status == EpisodeStatus.RUNNING:
            # Redelivered after the previous attempt died mid-loop.
            reason = "episode was interrupted and redelivered while RUNNING"
            logger.warning("%s %s; marking FAILED", tag, reason)
            self._finish(job, EpisodeStatus.FAILED, reason)
            return self.store.get_episode(job.episode_id).status

        run = self.store.get_run(job.run_id)
        flow = self.store.get_flow(run.flow_id)
        persona = self.store.get_persona(episode.persona_id)

        if not self.store.transition_episode(
            episode.id, EpisodeStatus.RUNNING, expected={EpisodeStatus.PENDING}
        ):
            logger.info("%s Picked up by another worker; skipping", tag)
            return self.store.get_episode(episode.id).status

        logger.info(
            "%s Starting %s episode: persona=%s model=%s maxSteps=%d",
            tag, run.mode.value.lower(), persona.name, job.model, job.max_steps,
        )
        try:
            client = self.client_factory(job.model)
            if run.mode == FlowMode.AGENT:
                if not isinstance(job, SimulateAgentEpisodeJob):
                    raise TypeError(f"agent run {run.id} needs a {SimulateAgentEpisodeJob.__name__}")
                status, reason = await self._run_agent(job, persona, client, tag)
            else:
                status, reason = await self._run_screenshot(job, flow, persona, client, tag)
        except Exception as exc:
            logger.exception("%s Episode crashed", tag)
            status, reason = EpisodeStatus.FAILED, f"{type(exc).__name__}: {exc}"

        self._finish(job, status, reason)
        return status

    def _finish(self, job: EpisodeJob, status: EpisodeStatus, reason: str | None) -> None:
        tag = f"[episode:{job.episode_id[:8]}]"
        changed = self.store.transition_episode(
            job.episode_id,
            status,
            expected={EpisodeStatus.PENDING, EpisodeStatus.RUNNING},
            failure_reason=reason if status == EpisodeStatus.FAILED else None,
        )
        if changed:
            steps = self.store.get_episode(job.episode_id).step_count
            if status == EpisodeStatus.FAILED:
                logger.warning("%s FAILED after %d step(s): %s", tag, steps, reason)
            else:
                logger.info("%s %s after %d step(s)", tag, status.value, steps)
        self._notify(job.run_id)

    def _notify(self, run_id: str) -> None:
        if self.tracker is not None:
            self.tracker.notify_terminal(run_id)

    # ── shared step helpers ──────────────────────────────────────

    async def _reason(
        self, client: ReasoningClient, step: StepInput, tag: str
    ) -> tuple[ScreenshotReasoning | AgentReasoning | None, str]:
        """Call the provider and validate, up to ``MAX_REASONING_ATTEMPTS`` times."""
        last_error = ""
        for attempt in range(1, MAX_REASONING_ATTEMPTS + 1):
            try:
                raw = await client.reason(step)
                return validate_reasoning(step.mode, raw), ""
            except (ReasoningValidationError, ProviderError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "%s Step %d reasoning attempt %d/%d failed: %s",
                    tag, step.step_index, attempt, MAX_REASONING_ATTEMPTS, last_error,
                )
        return None, last_error

    def _append_failure(
        self,
        job: EpisodeJob,
        step_index: int,
        observation: ScreenshotObservation | AgentObservation,
        error: str,
        screenshot_path: str | None = None,
    ) -> str:
        message = f"reasoning failed after {MAX_REASONING_ATTEMPTS} attempts: {error}"
        self.store.append_step(
            StepTrace(
                episode_id=job.episode_id,
                step_index=step_index,
                observation=observation,
                reasoning=ReasoningFailure(error=message, attempts=MAX_REASONING_ATTEMPTS),
                friction=0.0,
                confidence=0.0,
                dropoff_risk=0.0,
                screenshot_path=screenshot_path,
            )
        )
        return message

    def _append_step(
        self,
        job: EpisodeJob,
        step_index: int,
        observation: ScreenshotObservation | AgentObservation,
        reasoning: ScreenshotReasoning | AgentReasoning,
        screenshot_path: str | None = None,
    ) -> None:
        self.store.append_step(
            StepTrace(
                episode_id=job.episode_id,
                step_index=step_index,
                observation=observation,
                reasoning=reasoning,
                friction=reasoning.friction,
                confidence=reasoning.confidence,
                dropoff_risk=reasoning.dropoff_risk,
                screenshot_path=screenshot_path,
            )
        )

    # ── screenshot mode ──────────────────────────────────────────

    async def _run_screenshot(
        self,
        job: EpisodeJob,
        flow: Flow,
        persona: Persona,
        client: ReasoningClient,
        tag: str,
    ) -> Outcome:
        frames = flow.frames
        context = build_persona_context(persona)
        memory = ""
        current = 0
        steps_on_frame = 0
        scrolls_on_frame = 0

        for step_index in range(job.max_steps):
            if steps_on_frame >= MAX_SAME_SCREEN_STEPS:
                if current + 1 >= len(frames):
                    logger.info("%s Stuck on the last frame; flow exhausted", tag)
                    return EpisodeStatus.COMPLETED, None
                current += 1
                steps_on_frame = 0
                scrolls_on_frame = 0
                logger.info("%s Stuck on one frame; moving to frame %d", tag, current)

            frame = frames[current]
            step = StepInput(
                mode=FlowMode.SCREENSHOT,
                episode_id=job.episode_id,
                step_index=step_index,
                prompt=build_screenshot_prompt(
                    context,
                    flow.name,
                    memory=memory,
                    step_index=step_index,
                    total_frames=len(frames),
                    frame_index=current,
                    same_screen_count=steps_on_frame,
                    scroll_count=scrolls_on_frame,
                ),
                image_png=self.frame_loader(frame),
            )
            observation = ScreenshotObservation(frame_id=frame.id, frame_index=frame.position)

            reasoning, error = await self._reason(client, step, tag)
            if reasoning is None:
                return EpisodeStatus.FAILED, self._append_failure(job, step_index, observation, error)
            if not isinstance(reasoning, ScreenshotReasoning):
                raise TypeError(f"expected screenshot reasoning, got {type(reasoning).__name__}")

            self._append_step(job, step_index, observation, reasoning)
            memory = _append_memory(memory, reasoning.memory_update)
            action = reasoning.likely_action
            logger.info(
                "%s Step %d frame=%d action=%s friction=%.2f confusions=%d",
                tag, step_index, current, action.value, reasoning.friction, len(reasoning.confusions),
            )

            if action == Action.ABANDON:
                return EpisodeStatus.ABANDONED, None
            if step_index + 1 >= job.max_steps:
                return EpisodeStatus.COMPLETED, None

            if action == Action.SCROLL:
                scrolls_on_frame += 1
            # Repeated scrolling on a static frame moves on; the trace keeps SCROLL.
            scrolled_out = scrolls_on_frame >= MAX_SCROLLS_ON_FRAME
            if scrolled_out:
                logger.info("%s %d scrolls on frame %d; advancing", tag, scrolls_on_frame, current)

            if action == Action.BACK:
                target = max(0, current - 1)
            elif action in FORWARD_ACTIONS or scrolled_out:
                target = current + 1
                if target >= len(frames):
                    return EpisodeStatus.COMPLETED, None
            else:
                target = current

            if target == current:
                steps_on_frame += 1
            else:
                steps_on_frame = 0
                scrolls_on_frame = 0
            current = target

        return EpisodeStatus.COMPLETED, None

    # ── agent mode ───────────────────────────────────────────────

    def _save_screenshot(self, job: EpisodeJob, step_index: int, png: bytes | None) -> str | None:
        if self.screenshots_dir is None or not png:
            return None
        path = self.screenshots_dir / job.run_id / job.episode_id / f"step-{step_index}.png"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(png)
        return str(path)

    async def _run_agent(
        self,
        job: SimulateAgentEpisodeJob,
        persona: Persona,
        client: ReasoningClient,
        tag: str,
    ) -> Outcome:
        context = build_persona_context(persona)
        memory = ""
        last_url: str | None = None
        same_url_steps = 0
        action_failures = 0

        async with self.session_factory() as session:
            await session.start(job.url)
            page: PageState | None = None
            for step_index in range(job.max_steps):
                if page is None:
                    page = await session.observe()
                same_url_steps = same_url_steps + 1 if page.url == last_url else 0
                last_url = page.url

                step = StepInput(
                    mode=FlowMode.AGENT,
                    episode_id=job.episode_id,
                    step_index=step_index,
                    prompt=build_agent_prompt(
                        context,
                        job.goal,
                        page,
                        memory=memory,
                        step_index=step_index,
                        max_steps=job.max_steps,
                        same_screen_count=same_url_steps,
                    ),
                    image_png=page.screenshot,
                )
                observation = AgentObservation(
                    url=page.url, page_title=page.title, element_count=len(page.elements)
                )
                screenshot_path = self._save_screenshot(job, step_index, page.screenshot)

                reasoning, error = await self._reason(client, step, tag)
                if reasoning is None:
                    message = self._append_failure(job, step_index, observation, error, screenshot_path)
                    return EpisodeStatus.FAILED, message
                if not isinstance(reasoning, AgentReasoning):
                    raise TypeError(f"expected agent reasoning, got {type(reasoning).__name__}")

                # None until the page has been observed after this step's action.
                next_page: PageState | None = page
                action = reasoning.browser_action
                if not isinstance(action, DoneAction):
                    try:
                        next_page = await session.execute(action)
                    except ActionError as exc:
                        reasoning = reasoning.model_copy(update={"error": str(exc)})
                        next_page = None
                if reasoning.error:
                    action_failures += 1
                else:
                    action_failures = 0

                self._append_step(job, step_index, observation, reasoning, screenshot_path)
                memory = _append_memory(memory, reasoning.memory_update)
                logger.info(
                    "%s Step %d url=%s action=%s friction=%.2f%s",
                    tag, step_index, observation.url, action.type, reasoning.friction,
                    f" error={reasoning.error}" if reasoning.error else "",
                )

                if reasoning.completes_goal is True or isinstance(action, DoneAction):
                    return EpisodeStatus.COMPLETED, None
                if action_failures >= MAX_CONSECUTIVE_ACTION_FAILURES:
                    return (
                        EpisodeStatus.FAILED,
                        f"{action_failures} consecutive action failures; last: {reasoning.error}",
                    )
                if step_index + 1 >= job.max_steps:
                    return EpisodeStatus.COMPLETED, None

                if next_page is None:
                    try:
                        next_page = await session.observe()
                    except ActionError as exc:
                        logger.warning("%s Page not observable after failed action: %s; retrying", tag, exc)
                page = next_page

        return EpisodeStatus.COMPLETED, None
