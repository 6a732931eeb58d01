"""Recommended fixes for findings, generated on demand and cached."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from persona_lab.config import DEFAULT_MODEL, FIX_MAX_TOKENS
from persona_lab.reasoning.client import ReasoningClient
from persona_lab.reasoning.prompts import build_fix_prompt
from persona_lab.store import SimulationStore

logger = logging.getLogger(__name__)


class FixAdvisor:
    """Asks the reasoning provider how to fix a finding.

    The first answer is stored on the finding and returned on later calls;
    pass ``regenerate=True`` to replace it.
    """

    def __init__(
        self,
        store: SimulationStore,
        client_factory: Callable[[str], ReasoningClient],
        *,
        model: str = DEFAULT_MODEL,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.model = model

    async def recommend(self, finding_id: str, *, regenerate: bool = False) -> str:
        finding = self.store.get_finding(finding_id)
        if finding.recommended_fix and not regenerate:
            return finding.recommended_fix
        client = self.client_factory(self.model)
        fix = await client.complete_text(build_fix_prompt(finding), max_tokens=FIX_MAX_TOKENS)
        self.store.update_finding_fix(finding_id, fix)
        logger.info("Stored recommended fix for finding %s (%d chars)", finding_id, len(fix))
        return fix

    def recommend_sync(self, finding_id: str, *, regenerate: bool = False) -> str:
        """Synchronous wrapper for callers outside an event loop."""
        return asyncio.run(self.recommend(finding_id, regenerate=regenerate))
