from __future__ import annotations

import allure

from doyaken.orchestrator.models import FailureClass, PhaseStatus, PipelineStatus
from doyaken.orchestrator.reporter import (
    AgentOutput,
    ModelFallback,
    PhaseFinished,
    PhaseStarted,
    PipelineFinished,
    ProgressReporter,
    RetryScheduled,
    format_event,
)

pytestmark = [
    allure.epic("Session/Progress Reporter"),
    allure.feature("Verbosity Levels"),
]

_EVENTS = [
    PhaseStarted(task_id="t", phase="PLAN", attempt=1, model="opus"),
    AgentOutput(task_id="t", phase="PLAN", text="thinking\nwriting plan"),
    RetryScheduled(
        task_id="t",
        phase="PLAN",
        attempt=1,
        failure_class=FailureClass.TIMEOUT,
        delay_seconds=2.5,
    ),
    ModelFallback(task_id="t", phase="PLAN", from_model="opus", to_model="sonnet"),
    PhaseFinished(
        task_id="t",
        phase="PLAN",
        status=PhaseStatus.SUCCEEDED,
        attempts=2,
        model="sonnet",
        duration_seconds=12.0,
    ),
    PipelineFinished(task_id="t", status=PipelineStatus.DONE, phases_completed=8, phases_total=8),
]


def _render(verbosity: str) -> list[str]:
    lines: list[str] = []
    reporter = ProgressReporter(verbosity=verbosity, sink=lines.append)
    for event in _EVENTS:
        reporter.emit(event)
    return lines


def test_quiet_prints_only_final_summary() -> None:
    assert _render("quiet") == ["[t] DONE (8/8 phases)"]


def test_normal_prints_phase_results_retries_and_fallbacks() -> None:
    lines = _render("normal")

    assert lines == [
        "[t] PLAN attempt 1 failed (timeout); retrying in 2.5s",
        "[t] PLAN rate limited; model opus -> sonnet",
        "[t] PLAN succeeded (attempts=2, model=sonnet, 12.0s)",
        "[t] DONE (8/8 phases)",
    ]


def test_verbose_adds_starts_and_agent_output() -> None:
    lines = _render("verbose")

    assert lines[:3] == [
        "[t] PLAN started (attempt 1, opus)",
        "[t] PLAN | thinking",
        "[t] PLAN | writing plan",
    ]
    assert len(lines) == 7


def test_failing_sink_does_not_raise() -> None:
    def broken(_: str) -> None:
        raise OSError("terminal gone")

    reporter = ProgressReporter(verbosity="normal", sink=broken)
    reporter.emit(_EVENTS[-1])
    reporter.emit(_EVENTS[2])


def test_failed_pipeline_summary_includes_error() -> None:
    event = PipelineFinished(
        task_id="t",
        status=PipelineStatus.ABORTED,
        phases_completed=3,
        phases_total=8,
        error="Phase IMPLEMENT failed",
    )

    assert format_event(event) == ["[t] ABORTED (3/8 phases): Phase IMPLEMENT failed"]


def test_reporter_forwards_lines_without_retaining_events() -> None:
    lines: list[str] = []
    reporter = ProgressReporter(verbosity="normal", sink=lines.append)

    for _ in range(3):
        reporter.emit(_EVENTS[-1])

    assert lines == ["[t] DONE (8/8 phases)"] * 3
    assert not hasattr(reporter, "events")
