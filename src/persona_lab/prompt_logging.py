"""Secret-safe log lines for persona prompts and model replies."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Final

_PROMPT_DEBUG_ENV: Final[str] = "PERSONA_LAB_PROMPT_DEBUG"
_PROMPT_DEBUG_HINT: Final[str] = f"set {_PROMPT_DEBUG_ENV}=1 to log full prompt text"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

_ASSIGNMENT_SECRET_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|client[_-]?secret|authorization|token|secret|password)"
    r"\b(\s*[:=]\s*)([^\s,;]+)"
)
_QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:api[_-]?key|access[_-]?token|token|key)=)([^&\s]+)")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([A-Za-z0-9._\-+/=]{10,})")
_KNOWN_TOKEN_RES = (
    re.compile(r"\bsk-or-v1-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_-]{16,}\b"),
)


def is_prompt_debug_enabled() -> bool:
    """Full prompt text is logged only when explicitly enabled or at DEBUG level."""
    raw = os.getenv(_PROMPT_DEBUG_ENV, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return logging.getLogger().isEnabledFor(logging.DEBUG)


def redact_sensitive_text(text: str) -> tuple[str, int]:
    """Mask credentials that page content or URLs may leak into a prompt."""
    redacted = str(text or "")
    if not redacted:
        return "", 0
    hits = 0
    redacted, count = _ASSIGNMENT_SECRET_RE.subn(r"\1\2[REDACTED]", redacted)
    hits += count
    redacted, count = _QUERY_SECRET_RE.subn(r"\1[REDACTED]", redacted)
    hits += count
    redacted, count = _BEARER_RE.subn("Bearer [REDACTED]", redacted)
    hits += count
    for pattern in _KNOWN_TOKEN_RES:
        redacted, count = pattern.subn("[REDACTED_TOKEN]", redacted)
        hits += count
    return redacted, hits


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    text = str(prompt or "")
    _, redaction_hits = redact_sensitive_text(text)
    return {
        "length_chars": len(text),
        "sha256": hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
        "redaction_hits": redaction_hits,
    }


def format_prompt_log_line(prompt: str, *, label: str = "Prompt", debug: bool | None = None) -> str:
    """Return the redacted prompt in debug mode, otherwise a metadata-only line."""
    text = str(prompt or "")
    debug_enabled = is_prompt_debug_enabled() if debug is None else bool(debug)
    if debug_enabled:
        redacted, _ = redact_sensitive_text(text)
        return f"{label}: {redacted}"
    meta = prompt_metadata(text)
    return (
        f"{label} metadata: len={meta['length_chars']}, sha256={meta['sha256']}, "
        f"redaction_hits={meta['redaction_hits']} ({_PROMPT_DEBUG_HINT})"
    )
