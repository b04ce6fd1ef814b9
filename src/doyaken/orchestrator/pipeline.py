"""Checkpointed state machine driving one claimed task through all phases."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from doyaken.orchestrator.agents import ModelLadder, ResolvedAgent
from doyaken.orchestrator.audit import AuditLog
from doyaken.orchestrator.checkpoint import CheckpointStore
from doyaken.orchestrator.errors import (
    DoyakenError,
    LockHeld,
    PhaseFatal,
    PipelineCancelled,
    StorageIOError,
)
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import (
    DEFAULT_PHASE_TIMEOUTS,
    PHASE_NAMES,
    QUALITY_GATE_PHASES,
    PhaseDefinition,
    PhaseState,
    PhaseStatus,
    PipelineRun,
    PipelineStatus,
    ReleaseOutcome,
    RetryPolicy,
    TaskDescriptor,
)
from doyaken.orchestrator.reporter import PhaseFinished, PipelineFinished, ProgressReporter
from doyaken.orchestrator.retry import RetryController
from doyaken.orchestrator.storage import utc_now
from doyaken.orchestrator.tasks import TaskStore

logger = logging.getLogger(__name__)

_RESUMABLE_STATUSES = frozenset({PhaseStatus.RUNNING, PhaseStatus.FAILED, PhaseStatus.ABORTED})


def build_phase_definitions(
    *,
    timeouts: dict[str, int],
    skip: frozenset[str],
    retry_policy: RetryPolicy,
) -> tuple[PhaseDefinition, ...]:
    """Build the immutable phase list in pipeline order."""

    return tuple(
        PhaseDefinition(
            name=name,
            ordinal=ordinal,
            prompt_file=f"{ordinal}-{name.lower()}.md",
            timeout_seconds=timeouts.get(name, DEFAULT_PHASE_TIMEOUTS[name]),
            retry_policy=retry_policy,
            skip=name in skip,
            runs_quality_gates=name in QUALITY_GATE_PHASES,
        )
        for ordinal, name in enumerate(PHASE_NAMES)
    )


@dataclass(slots=True)
class PipelineResult:
    """Terminal state of one pipeline run."""

    task_id: str
    status: PipelineStatus
    phases_completed: int
    error: str | None = None


@dataclass(slots=True)
class PlannedPhase:
    """Dry-run view of one phase."""

    name: str
    action: str
    timeout_seconds: int


class PipelineStateMachine:
    """Run a claimed task from START to DONE, ABORTED or CANCELLED.

    The run is checkpointed after every phase transition and every attempt.
    Succeeded phases are never re-run: a restarted process resumes at the
    first phase that has not succeeded, with the model it had fallen back to.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        locks: LockManager,
        checkpoints: CheckpointStore,
        retry: RetryController,
        phases: tuple[PhaseDefinition, ...],
        agent: ResolvedAgent,
        agent_id: str,
        fallback_enabled: bool = True,
        reporter: ProgressReporter | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.locks = locks
        self.checkpoints = checkpoints
        self.retry = retry
        self.phases = phases
        self.agent = agent
        self.agent_id = agent_id
        self.fallback_enabled = fallback_enabled
        self.reporter = reporter
        self.audit = audit
        self._clock = clock

    def plan(self, task_id: str) -> list[PlannedPhase]:
        """Phases a run would execute, without claiming or invoking agents."""

        run = self.checkpoints.load(task_id)
        done = set()
        if run is not None:
            done = {state.name for state in run.phases if state.status == PhaseStatus.SUCCEEDED}
        planned: list[PlannedPhase] = []
        for phase in self.phases:
            if phase.skip:
                action = "skip"
            elif phase.name in done:
                action = "done"
            else:
                action = "run"
            planned.append(PlannedPhase(phase.name, action, phase.timeout_seconds))
        return planned

    def run(self, task: TaskDescriptor) -> PipelineResult:
        """Drive a task already claimed by this agent to a terminal state."""

        run: PipelineRun | None = None
        try:
            run = self._load_or_start(task)
            ladder = self._ladder_for(run)
            for index, phase in enumerate(self.phases):
                state = run.phases[index]
                if state.status == PhaseStatus.SUCCEEDED:
                    continue
                if phase.skip:
                    self._skip_phase(run, state)
                    continue
                run.current_phase_index = index
                self._run_phase(run, phase, state, ladder)

            unchecked = self._unchecked_criteria(task.id)
            if unchecked:
                return self._abort_incomplete(run, unchecked)
            return self._finish_done(run)
        except PhaseFatal as error:
            if run is None:
                raise
            failed_state = run.phase(error.phase)
            failed_state.finished_at = self._clock()
            self._emit(
                PhaseFinished(
                    task_id=run.task_id,
                    phase=error.phase,
                    status=PhaseStatus.FAILED,
                    attempts=failed_state.attempts,
                    model=failed_state.model,
                    duration_seconds=_duration(failed_state),
                    error=error.error_summary,
                ),
            )
            return self._abort(
                run,
                title=f"Aborted in {error.phase}",
                lines=[
                    f"Reason: {error.failure_class}",
                    f"Retries: {error.retries}",
                    f"Last error: {error.error_summary}",
                ],
                error=str(error),
            )
        except PipelineCancelled as error:
            if run is None:
                raise
            return self._cancel(run, error)
        except LockHeld as error:
            logger.error("Lost lock on %s: %s", task.id, error)
            self._emit_finished(task.id, PipelineStatus.ABORTED, run, str(error))
            return PipelineResult(task.id, PipelineStatus.ABORTED, _completed(run), str(error))
        except StorageIOError as error:
            logger.error("Storage failure for %s: %s", task.id, error)
            return self._abort_task(task.id, run, title="Aborted: storage failure", error=error)
        except DoyakenError as error:
            return self._abort_task(task.id, run, title="Aborted", error=error)

    def _load_or_start(self, task: TaskDescriptor) -> PipelineRun:
        existing = self.checkpoints.load(task.id)
        names = [phase.name for phase in self.phases]
        if existing is not None and [state.name for state in existing.phases] == names:
            run = existing
            previous_status = run.status
            run.status = PipelineStatus.RUNNING
            run.agent_id = self.agent_id
            run.finished_at = None
            run.error = None
            if run.agent != self.agent.name:
                run.agent = self.agent.name
                run.model = self.agent.model
            for state in run.phases:
                if state.status in _RESUMABLE_STATUSES:
                    state.status = PhaseStatus.PENDING
            logger.info("Resuming %s run %s for %s", previous_status.value, run.run_id, task.id)
            self._audit("pipeline_resumed", task_id=task.id, run_id=run.run_id, model=run.model)
        else:
            run = PipelineRun(
                run_id=uuid.uuid4().hex,
                task_id=task.id,
                agent_id=self.agent_id,
                agent=self.agent.name,
                model=self.agent.model,
                started_at=self._clock(),
                phases=[PhaseState(name=name) for name in names],
            )
            self._audit("pipeline_started", task_id=task.id, run_id=run.run_id, model=run.model)
        self.checkpoints.save(run)
        return run

    def _ladder_for(self, run: PipelineRun) -> ModelLadder:
        ladder = ModelLadder(self.agent.tiers, current=run.model)
        run.model = ladder.current
        return ladder

    def _skip_phase(self, run: PipelineRun, state: PhaseState) -> None:
        if state.status == PhaseStatus.SKIPPED:
            return
        state.status = PhaseStatus.SKIPPED
        state.finished_at = self._clock()
        self.checkpoints.save(run)
        self._emit(
            PhaseFinished(
                task_id=run.task_id,
                phase=state.name,
                status=PhaseStatus.SKIPPED,
                attempts=0,
                model=None,
            ),
        )

    def _run_phase(
        self,
        run: PipelineRun,
        phase: PhaseDefinition,
        state: PhaseState,
        ladder: ModelLadder,
    ) -> None:
        state.started_at = self._clock()
        state.finished_at = None
        self.checkpoints.save(run)
        task = self.tasks.find(run.task_id)

        def before_attempt(_: PhaseState) -> None:
            self.locks.refresh(run.task_id, self.agent_id)

        def after_attempt(_: PhaseState) -> None:
            run.model = ladder.current
            self.checkpoints.save(run)

        outcome = self.retry.run_phase(
            phase,
            task,
            state=state,
            ladder=ladder,
            run_id=run.run_id,
            fallback_enabled=self.fallback_enabled,
            previous_summary=_previous_summary(run, phase.ordinal),
            before_attempt=before_attempt,
            after_attempt=after_attempt,
        )
        state.status = PhaseStatus.SUCCEEDED
        state.finished_at = self._clock()
        state.failure_class = None
        state.last_error = None
        state.summary = outcome.status_block.to_summary() if outcome.status_block else {}
        run.model = ladder.current
        self.checkpoints.save(run)
        if state.retries:
            self.tasks.append_work_log(
                run.task_id,
                f"{phase.name} succeeded after {state.retries} retries",
                [f"Attempts: {state.attempts}", f"Model: {state.model}"],
            )
        self._emit(
            PhaseFinished(
                task_id=run.task_id,
                phase=phase.name,
                status=PhaseStatus.SUCCEEDED,
                attempts=state.attempts,
                model=state.model,
                duration_seconds=_duration(state),
            ),
        )

    def _unchecked_criteria(self, task_id: str) -> list[str]:
        return [item.text for item in self.tasks.acceptance_criteria(task_id) if not item.checked]

    def _finish_done(self, run: PipelineRun) -> PipelineResult:
        run.status = PipelineStatus.DONE
        run.finished_at = self._clock()
        self.checkpoints.save(run)
        self.tasks.append_work_log(
            run.task_id,
            "Completed",
            [
                f"{state.name}: {state.status.value} ({state.attempts} attempts)"
                for state in run.phases
            ],
        )
        self.tasks.release(run.task_id, ReleaseOutcome.SUCCESS, self.agent_id)
        self._best_effort(lambda: self.checkpoints.delete(run.task_id), "delete checkpoint")
        self._audit("pipeline_finished", task_id=run.task_id, run_id=run.run_id, status="done")
        self._emit_finished(run.task_id, PipelineStatus.DONE, run, None)
        return PipelineResult(run.task_id, PipelineStatus.DONE, _completed(run))

    def _abort_incomplete(self, run: PipelineRun, unchecked: list[str]) -> PipelineResult:
        reason = f"{len(unchecked)} acceptance criteria unchecked"
        for state in reversed(run.phases):
            if state.status == PhaseStatus.SUCCEEDED:
                state.status = PhaseStatus.FAILED
                state.last_error = reason
                break
        return self._abort(
            run,
            title="Aborted: acceptance criteria not met",
            lines=[f"Unchecked: {text}" for text in unchecked],
            error=reason,
        )

    def _abort(
        self,
        run: PipelineRun,
        *,
        title: str,
        lines: list[str],
        error: str,
    ) -> PipelineResult:
        run.status = PipelineStatus.ABORTED
        run.error = error
        run.finished_at = self._clock()
        logger.warning("Pipeline for %s aborted: %s", run.task_id, error)
        self._best_effort(lambda: self.checkpoints.save(run), "save checkpoint")
        self._best_effort(
            lambda: self.tasks.append_work_log(run.task_id, title, lines),
            "append work log",
        )
        self._best_effort_release(run.task_id, ReleaseOutcome.FAILURE)
        self._audit("pipeline_finished", task_id=run.task_id, run_id=run.run_id, status="aborted")
        self._emit_finished(run.task_id, PipelineStatus.ABORTED, run, error)
        return PipelineResult(run.task_id, PipelineStatus.ABORTED, _completed(run), error)

    def _abort_task(
        self,
        task_id: str,
        run: PipelineRun | None,
        *,
        title: str,
        error: DoyakenError,
    ) -> PipelineResult:
        lines = [f"Error: {error}"]
        if run is not None:
            return self._abort(run, title=title, lines=lines, error=str(error))
        logger.warning("Pipeline for %s aborted before start: %s", task_id, error)
        self._best_effort(
            lambda: self.tasks.append_work_log(task_id, title, lines),
            "append work log",
        )
        self._best_effort_release(task_id, ReleaseOutcome.FAILURE)
        self._emit_finished(task_id, PipelineStatus.ABORTED, None, str(error))
        return PipelineResult(task_id, PipelineStatus.ABORTED, 0, str(error))

    def _cancel(self, run: PipelineRun, error: PipelineCancelled) -> PipelineResult:
        if error.phase is not None:
            run.phase(error.phase).status = PhaseStatus.ABORTED
            run.phase(error.phase).finished_at = self._clock()
        run.status = PipelineStatus.CANCELLED
        run.error = str(error)
        run.finished_at = self._clock()
        logger.warning("Pipeline for %s cancelled", run.task_id)
        self._best_effort(lambda: self.checkpoints.save(run), "save checkpoint")
        self._best_effort(
            lambda: self.tasks.append_work_log(
                run.task_id,
                f"Cancelled during {error.phase or 'startup'}",
                ["Checkpoint kept; the next run resumes from here."],
            ),
            "append work log",
        )
        self._best_effort_release(run.task_id, ReleaseOutcome.CANCELLED)
        self._audit(
            "pipeline_finished",
            task_id=run.task_id,
            run_id=run.run_id,
            status="cancelled",
        )
        self._emit_finished(run.task_id, PipelineStatus.CANCELLED, run, str(error))
        return PipelineResult(run.task_id, PipelineStatus.CANCELLED, _completed(run), str(error))

    def _best_effort_release(self, task_id: str, outcome: ReleaseOutcome) -> None:
        self._best_effort(
            lambda: self.tasks.release(task_id, outcome, self.agent_id),
            f"release {task_id}",
        )

    def _best_effort(self, action: Callable[[], object], what: str) -> None:
        try:
            action()
        except DoyakenError:
            logger.exception("Failed to %s", what)

    def _audit(self, event: str, **details: object) -> None:
        if self.audit is not None:
            self._best_effort(lambda: self.audit.append(event, **details), f"audit {event}")

    def _emit_finished(
        self,
        task_id: str,
        status: PipelineStatus,
        run: PipelineRun | None,
        error: str | None,
    ) -> None:
        self._emit(
            PipelineFinished(
                task_id=task_id,
                status=status,
                phases_completed=_completed(run),
                phases_total=len(self.phases),
                error=error,
            ),
        )

    def _emit(self, event: PhaseFinished | PipelineFinished) -> None:
        if self.reporter is not None:
            self.reporter.emit(event)


def _completed(run: PipelineRun | None) -> int:
    if run is None:
        return 0
    return sum(1 for state in run.phases if state.completed)


def _duration(state: PhaseState) -> float:
    if state.started_at is None or state.finished_at is None:
        return 0.0
    return (state.finished_at - state.started_at).total_seconds()


def _previous_summary(run: PipelineRun, ordinal: int) -> str | None:
    for state in reversed(run.phases[:ordinal]):
        if state.status == PhaseStatus.SUCCEEDED and state.summary:
            details = ", ".join(
                f"{key}={value}" for key, value in state.summary.items() if value not in (None, "")
            )
            return f"{state.name} completed: {details}"
    return None
