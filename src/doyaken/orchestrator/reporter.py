"""Progress events and the human-facing reporter that renders them."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from doyaken.orchestrator.models import FailureClass, PhaseStatus, PipelineStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PhaseStarted:
    task_id: str
    phase: str
    attempt: int
    model: str


@dataclass(slots=True)
class PhaseFinished:
    task_id: str
    phase: str
    status: PhaseStatus
    attempts: int
    model: str | None
    duration_seconds: float = 0.0
    error: str | None = None


@dataclass(slots=True)
class RetryScheduled:
    task_id: str
    phase: str
    attempt: int
    failure_class: FailureClass
    delay_seconds: float
    error: str | None = None


@dataclass(slots=True)
class ModelFallback:
    task_id: str
    phase: str
    from_model: str
    to_model: str


@dataclass(slots=True)
class AgentOutput:
    task_id: str
    phase: str
    text: str


@dataclass(slots=True)
class PipelineFinished:
    task_id: str
    status: PipelineStatus
    phases_completed: int
    phases_total: int
    error: str | None = None


@dataclass(slots=True)
class TaskSkipped:
    task_id: str
    reason: str


ProgressEvent = (
    PhaseStarted
    | PhaseFinished
    | RetryScheduled
    | ModelFallback
    | AgentOutput
    | PipelineFinished
    | TaskSkipped
)

_NORMAL_EVENTS = (PhaseFinished, RetryScheduled, ModelFallback, PipelineFinished, TaskSkipped)


class ProgressReporter:
    """Render progress events to a line sink.

    ``quiet`` prints only the final summary, ``normal`` adds one line per
    phase plus retries and fallbacks, ``verbose`` adds phase starts and raw
    agent output.  A failing sink never interrupts the pipeline.
    """

    def __init__(
        self,
        *,
        verbosity: str = "normal",
        sink: Callable[[str], None] = print,
    ) -> None:
        self.verbosity = verbosity
        self.sink = sink

    def emit(self, event: ProgressEvent) -> None:
        if not self._visible(event):
            return
        try:
            for line in format_event(event):
                self.sink(line)
        except Exception:  # noqa: BLE001
            logger.warning("Progress sink failed for %s", type(event).__name__, exc_info=True)

    def _visible(self, event: ProgressEvent) -> bool:
        if self.verbosity == "verbose":
            return True
        if self.verbosity == "quiet":
            return isinstance(event, PipelineFinished)
        return isinstance(event, _NORMAL_EVENTS)


def format_event(event: ProgressEvent) -> list[str]:  # noqa: PLR0911
    if isinstance(event, PhaseStarted):
        return [
            f"[{event.task_id}] {event.phase} started (attempt {event.attempt}, {event.model})",
        ]
    if isinstance(event, PhaseFinished):
        line = (
            f"[{event.task_id}] {event.phase} {event.status.value}"
            f" (attempts={event.attempts}, model={event.model or '-'},"
            f" {event.duration_seconds:.1f}s)"
        )
        if event.error:
            line += f": {event.error}"
        return [line]
    if isinstance(event, RetryScheduled):
        return [
            f"[{event.task_id}] {event.phase} attempt {event.attempt} failed"
            f" ({event.failure_class.value}); retrying in {event.delay_seconds:.1f}s",
        ]
    if isinstance(event, ModelFallback):
        return [
            f"[{event.task_id}] {event.phase} rate limited; model {event.from_model}"
            f" -> {event.to_model}",
        ]
    if isinstance(event, AgentOutput):
        return [f"[{event.task_id}] {event.phase} | {line}" for line in event.text.splitlines()]
    if isinstance(event, TaskSkipped):
        return [f"[{event.task_id}] skipped: {event.reason}"]
    line = (
        f"[{event.task_id}] {event.status.value.upper()}"
        f" ({event.phases_completed}/{event.phases_total} phases)"
    )
    if event.error:
        line += f": {event.error}"
    return [line]
