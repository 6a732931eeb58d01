"""Atomic and append-only file helpers for run data on disk."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_REPLACE_MAX_RETRIES = 8
_REPLACE_RETRY_SECONDS = 0.01

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize writers of one file within this process."""
    with _path_lock(path):
        yield


def _replace_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            # Windows reports a file held open by a reader this way.
            last_error = exc
        if attempt < _REPLACE_MAX_RETRIES - 1:
            time.sleep(_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* through a temp file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        with locked_path(path):
            _replace_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON record as a line under a per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n"
    with locked_path(path), path.open("a", encoding="utf-8") as handle:
        handle.write(line)


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield records from a JSONL file, skipping blank and corrupt lines."""
    if not path.exists():
        return
    with path.open(encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("Skip invalid line %d in %s: %s", lineno, path.name, exc)
                continue
            if isinstance(record, dict):
                yield record
