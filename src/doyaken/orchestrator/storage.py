"""Atomic file helpers shared by task, lock and checkpoint stores."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from doyaken.orchestrator.errors import StorageIOError


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def write_text_atomic(path: Path, text: str) -> None:
    """Write text to a sibling temp file, fsync it, then replace the target.

    Readers see either the previous content or the new content, never a
    partial write.
    """

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as error:
        raise StorageIOError(f"Cannot prepare write of {path}: {error}") from error

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as error:
        tmp_path.unlink(missing_ok=True)
        raise StorageIOError(f"Cannot write {path}: {error}") from error


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def append_json_line(path: Path, payload: dict[str, Any]) -> None:
    """Append one JSON record to a line-delimited log."""

    line = json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except OSError as error:
        raise StorageIOError(f"Cannot append to {path}: {error}") from error
