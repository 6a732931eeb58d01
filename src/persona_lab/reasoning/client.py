"""Reasoning providers.

Two adapters implement :class:`ReasoningClient`:

* :class:`OpenAICompatibleClient` talks to any OpenAI-style chat completions
  endpoint. OpenRouter is the default, so one client reaches Gemini, GPT and
  Claude models by model id.
* :class:`AnthropicClient` talks to the Anthropic Messages API directly.

Both SDKs are synchronous; calls run in a worker thread through
:func:`asyncio.to_thread` so an episode waiting on its model never blocks
another one. Clients do not retry. The step engine owns the retry budget.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from persona_lab.config import (
    FIX_MAX_TOKENS,
    OPENROUTER_BASE_URL,
    REASONING_TEMPERATURE,
    Settings,
)
from persona_lab.errors import ProviderError
from persona_lab.prompt_logging import format_prompt_log_line
from persona_lab.schemas import FlowMode

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a precise JSON generator. Always respond with valid JSON only, "
    "no markdown formatting or extra text."
)
REASONING_MAX_TOKENS = 2048


@dataclass(frozen=True, slots=True)
class StepInput:
    """Everything the provider sees for one step."""

    mode: FlowMode
    episode_id: str
    step_index: int
    prompt: str
    image_png: bytes | None = None


class ReasoningClient(ABC):
    """Produces raw reasoning output for a step and free text for fixes."""

    model: str

    @abstractmethod
    async def reason(self, step: StepInput) -> Any:
        """Return the raw model output (JSON text or a mapping).

        Raises :class:`ProviderError` on transport or provider failure.
        """

    @abstractmethod
    async def complete_text(self, prompt: str, *, max_tokens: int = FIX_MAX_TOKENS) -> str:
        """Return a plain-text completion for *prompt*."""


def _first_env(names: Sequence[str]) -> str:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return ""


def _data_url(image_png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(image_png).decode("ascii")


class OpenAICompatibleClient(ReasoningClient):
    """Chat-completions client for OpenRouter or OpenAI.

    Parameters
    ----------
    model:
        Model id as the endpoint knows it, e.g. ``google/gemini-2.5-flash``.
    base_url:
        Endpoint root. ``None`` uses the SDK default (api.openai.com).
    api_key_envs:
        Environment variables searched in order for the API key.
    timeout_s:
        Per-request timeout.
    """

    def __init__(
        self,
        model: str,
        *,
        base_url: str | None = OPENROUTER_BASE_URL,
        api_key_envs: Sequence[str] = ("OPENROUTER_API_KEY",),
        timeout_s: float = 90.0,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.api_key_envs = tuple(api_key_envs)
        self.timeout_s = timeout_s
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize the OpenAI SDK client."""
        if self._client is None:
            from openai import OpenAI

            api_key = _first_env(self.api_key_envs)
            if not api_key:
                raise ProviderError(
                    f"{' or '.join(self.api_key_envs)} is not set. "
                    "Set it in your environment or .env file."
                )
            kwargs: dict[str, Any] = {"api_key": api_key, "timeout": self.timeout_s}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def _chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        response = self._get_client().chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=REASONING_TEMPERATURE,
            **kwargs,
        )
        choices = getattr(response, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text:
            raise ProviderError(f"empty response from {self.model}")
        return text

    def _reason_sync(self, step: StepInput) -> str:
        content: Any = step.prompt
        if step.image_png:
            content = [
                {"type": "text", "text": step.prompt},
                {"type": "image_url", "image_url": {"url": _data_url(step.image_png)}},
            ]
        return self._chat(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            response_format={"type": "json_object"},
        )

    async def reason(self, step: StepInput) -> str:
        logger.debug(format_prompt_log_line(step.prompt, label=f"Step {step.step_index} prompt"))
        try:
            return await asyncio.to_thread(self._reason_sync, step)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

    async def complete_text(self, prompt: str, *, max_tokens: int = FIX_MAX_TOKENS) -> str:
        try:
            text = await asyncio.to_thread(
                self._chat, [{"role": "user", "content": prompt}], max_tokens=max_tokens
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc
        return text.strip()


class AnthropicClient(ReasoningClient):
    """Messages API client for Claude models."""

    def __init__(self, model: str, *, timeout_s: float = 90.0) -> None:
        self.model = model
        self.timeout_s = timeout_s
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize the Anthropic SDK client."""
        if self._client is None:
            from anthropic import Anthropic

            api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
            if not api_key:
                raise ProviderError(
                    "ANTHROPIC_API_KEY is not set. Set it in your environment or .env file."
                )
            self._client = Anthropic(api_key=api_key, timeout=self.timeout_s)
        return self._client

    def _message(self, content: list[dict[str, Any]], *, max_tokens: int, system: str | None) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": REASONING_TEMPERATURE,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            kwargs["system"] = system
        response = self._get_client().messages.create(**kwargs)
        text = "".join(
            getattr(block, "text", "")
            for block in getattr(response, "content", None) or []
            if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ProviderError(f"empty response from {self.model}")
        return text

    def _reason_sync(self, step: StepInput) -> str:
        content: list[dict[str, Any]] = []
        if step.image_png:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": "image/png",
                    "data": base64.b64encode(step.image_png).decode("ascii"),
                },
            })
        content.append({"type": "text", "text": step.prompt})
        return self._message(content, max_tokens=REASONING_MAX_TOKENS, system=SYSTEM_PROMPT)

    async def reason(self, step: StepInput) -> str:
        logger.debug(format_prompt_log_line(step.prompt, label=f"Step {step.step_index} prompt"))
        try:
            return await asyncio.to_thread(self._reason_sync, step)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

    async def complete_text(self, prompt: str, *, max_tokens: int = FIX_MAX_TOKENS) -> str:
        try:
            text = await asyncio.to_thread(
                self._message, [{"type": "text", "text": prompt}], max_tokens=max_tokens, system=None
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc
        return text.strip()


def create_reasoning_client(model: str, settings: Settings | None = None) -> ReasoningClient:
    """Build the client for *model* according to the configured provider."""
    settings = settings or Settings.from_env()
    if settings.llm_provider == "anthropic":
        return AnthropicClient(model, timeout_s=settings.llm_timeout_s)
    if settings.llm_provider == "openai":
        return OpenAICompatibleClient(
            model,
            base_url=settings.llm_base_url or None,
            api_key_envs=("OPENAI_API_KEY",),
            timeout_s=settings.llm_timeout_s,
        )
    return OpenAICompatibleClient(
        model,
        base_url=settings.llm_base_url or OPENROUTER_BASE_URL,
        api_key_envs=("OPENROUTER_API_KEY",),
        timeout_s=settings.llm_timeout_s,
    )
