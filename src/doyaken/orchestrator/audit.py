"""Append-only JSON-lines audit log of phase invocations."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from doyaken.orchestrator.storage import append_json_line, utc_now

logger = logging.getLogger(__name__)


class AuditLog:
    """Durable ``{ts, event, details}`` records in ``.doyaken/audit.log``."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = path
        self._clock = clock

    def append(self, event: str, **details: Any) -> None:
        append_json_line(
            self.path,
            {"ts": self._clock().isoformat(), "event": event, "details": details},
        )

    def tail(self, limit: int = 20) -> list[dict[str, Any]]:
        """Last ``limit`` records, oldest first.  Corrupt lines are skipped."""

        if limit <= 0 or not self.path.is_file():
            return []
        recent: deque[dict[str, Any]] = deque(maxlen=limit)
        with self.path.open(encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    logger.warning("Skipping corrupt audit line %s in %s", line_number, self.path)
                    continue
                if isinstance(record, dict):
                    recent.append(record)
        return list(recent)
