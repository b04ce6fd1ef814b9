"""Crash-recoverable pipeline run checkpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from doyaken.orchestrator.errors import StorageIOError
from doyaken.orchestrator.models import (
    FailureClass,
    PhaseState,
    PhaseStatus,
    PipelineRun,
    PipelineStatus,
)
from doyaken.orchestrator.storage import from_iso, load_json, write_json_atomic

logger = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1


class CheckpointStore:
    """One JSON document per task under ``.doyaken/state/runs``."""

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir

    def path_for(self, task_id: str) -> Path:
        return self.runs_dir / f"{task_id}.json"

    def save(self, run: PipelineRun) -> None:
        write_json_atomic(self.path_for(run.task_id), run_to_payload(run))

    def load(self, task_id: str) -> PipelineRun | None:
        """Return the stored run, or None when missing or unreadable."""

        path = self.path_for(task_id)
        if not path.is_file():
            return None
        try:
            raw = load_json(path)
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Ignoring unreadable checkpoint %s: %s", path, error)
            return None
        run = run_from_payload(raw)
        if run is None:
            logger.warning("Ignoring checkpoint %s with unsupported schema", path)
        return run

    def delete(self, task_id: str) -> None:
        path = self.path_for(task_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            raise StorageIOError(f"Cannot delete checkpoint {path}: {error}") from error

    def list_runs(self) -> list[PipelineRun]:
        if not self.runs_dir.is_dir():
            return []
        runs: list[PipelineRun] = []
        for path in sorted(self.runs_dir.glob("*.json")):
            run = self.load(path.stem)
            if run is not None:
                runs.append(run)
        return runs


def run_to_payload(run: PipelineRun) -> dict[str, Any]:
    return {
        "schema_version": CHECKPOINT_SCHEMA_VERSION,
        "run_id": run.run_id,
        "task_id": run.task_id,
        "agent_id": run.agent_id,
        "agent": run.agent,
        "model": run.model,
        "status": run.status.value,
        "current_phase_index": run.current_phase_index,
        "started_at": run.started_at.isoformat(),
        "finished_at": _iso_or_none(run.finished_at),
        "error": run.error,
        "phases": [_phase_to_payload(phase) for phase in run.phases],
    }


def run_from_payload(raw: dict[str, Any]) -> PipelineRun | None:  # noqa: PLR0911
    if raw.get("schema_version") != CHECKPOINT_SCHEMA_VERSION:
        return None
    text_fields = ("run_id", "task_id", "agent_id", "agent", "model", "started_at")
    if any(not isinstance(raw.get(name), str) or not raw[name] for name in text_fields):
        return None
    phases_raw = raw.get("phases")
    if not isinstance(phases_raw, list) or not phases_raw:
        return None
    index = raw.get("current_phase_index", 0)
    if not isinstance(index, int) or index < 0:
        return None
    try:
        status = PipelineStatus(raw.get("status", "running"))
        phases = [_phase_from_payload(item) for item in phases_raw]
        started_at = from_iso(raw["started_at"])
        finished_at = _datetime_or_none(raw.get("finished_at"))
    except (TypeError, ValueError, KeyError):
        return None
    error = raw.get("error")
    return PipelineRun(
        run_id=raw["run_id"],
        task_id=raw["task_id"],
        agent_id=raw["agent_id"],
        agent=raw["agent"],
        model=raw["model"],
        started_at=started_at,
        phases=phases,
        status=status,
        current_phase_index=index,
        finished_at=finished_at,
        error=error if isinstance(error, str) else None,
    )


def _phase_to_payload(phase: PhaseState) -> dict[str, Any]:
    return {
        "name": phase.name,
        "status": phase.status.value,
        "attempts": phase.attempts,
        "retries": phase.retries,
        "model": phase.model,
        "failure_class": phase.failure_class.value if phase.failure_class else None,
        "last_error": phase.last_error,
        "summary": phase.summary,
        "started_at": _iso_or_none(phase.started_at),
        "finished_at": _iso_or_none(phase.finished_at),
    }


def _phase_from_payload(raw: Any) -> PhaseState:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise ValueError("phase entry must be an object with a name")
    failure_class = raw.get("failure_class")
    summary = raw.get("summary")
    return PhaseState(
        name=raw["name"],
        status=PhaseStatus(raw.get("status", "pending")),
        attempts=int(raw.get("attempts", 0)),
        retries=int(raw.get("retries", 0)),
        model=raw.get("model") or None,
        failure_class=FailureClass(failure_class) if failure_class else None,
        last_error=raw.get("last_error") or None,
        summary=summary if isinstance(summary, dict) else {},
        started_at=_datetime_or_none(raw.get("started_at")),
        finished_at=_datetime_or_none(raw.get("finished_at")),
    )


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _datetime_or_none(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    return from_iso(value)
