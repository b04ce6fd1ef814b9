"""Task selection loop that feeds claimed tasks to the pipeline."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from doyaken.orchestrator.errors import LockHeld, TaskNotFound, TaskStateConflict
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import PipelineStatus, TaskDescriptor, TaskState
from doyaken.orchestrator.pipeline import PipelineResult, PipelineStateMachine, PlannedPhase
from doyaken.orchestrator.reporter import ProgressReporter, TaskSkipped
from doyaken.orchestrator.tasks import TaskStore

logger = logging.getLogger(__name__)


class StopFlag:
    """Cooperative shutdown flag polled by the backend and retry sleeps."""

    def __init__(self) -> None:
        self._requested = False
        self.signal_name: str | None = None

    def request(self, signal_name: str = "manual") -> None:
        self._requested = True
        self.signal_name = signal_name

    def __call__(self) -> bool:
        return self._requested


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    aborted: int = 0
    cancelled: int = 0
    skipped_locked: int = 0
    results: list[PipelineResult] = field(default_factory=list)

    def record(self, result: PipelineResult) -> None:
        self.results.append(result)
        if result.status == PipelineStatus.DONE:
            self.succeeded += 1
        elif result.status == PipelineStatus.CANCELLED:
            self.cancelled += 1
        else:
            self.aborted += 1


class OrchestratorWorker:
    """Pick tasks in order, claim them and run the pipeline.

    Selection order: this agent's own doing task, eligible todo tasks in
    priority order, then orphaned doing tasks whose lock is missing or stale.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        locks: LockManager,
        pipeline: PipelineStateMachine,
        agent_id: str,
        stop: StopFlag | None = None,
        reporter: ProgressReporter | None = None,
        preflight: Callable[[], object] | None = None,
        max_consecutive_failures: int = 3,
        failure_pause_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tasks = tasks
        self.locks = locks
        self.pipeline = pipeline
        self.agent_id = agent_id
        self.stop = stop or StopFlag()
        self.reporter = reporter
        self.preflight = preflight
        self.max_consecutive_failures = max_consecutive_failures
        self.failure_pause_seconds = failure_pause_seconds
        self._sleep = sleep

    def run_loop(
        self,
        *,
        max_tasks: int | None = 1,
        task_id: str | None = None,
    ) -> WorkerRunSummary:
        """Process up to ``max_tasks`` tasks, or exactly ``task_id``.

        The preflight check runs once, before the first claim, and only when
        there is something to claim.  After ``max_consecutive_failures``
        aborted tasks in a row the loop pauses before claiming the next one.
        """

        summary = WorkerRunSummary()
        attempted: set[str] = set()
        failures = 0
        if self.preflight is not None and (task_id is not None or self.candidates()):
            self.preflight()
        with self._signal_handlers():
            while not self.stop():
                if max_tasks is not None and summary.processed >= max_tasks:
                    break
                if task_id is not None:
                    task = self._claim_specific(task_id, summary)
                else:
                    task = self._claim_next(attempted, summary)
                if task is None:
                    break

                attempted.add(task.id)
                summary.processed += 1
                result = self.pipeline.run(task)
                summary.record(result)
                logger.info("Task %s finished with %s", task.id, result.status.value)
                if task_id is not None or result.status == PipelineStatus.CANCELLED:
                    break

                failures = failures + 1 if result.status == PipelineStatus.ABORTED else 0
                if self.max_consecutive_failures and failures >= self.max_consecutive_failures:
                    failures = 0
                    if max_tasks is None or summary.processed < max_tasks:
                        self._pause_after_failures()
        return summary

    def plan(
        self,
        *,
        max_tasks: int | None = 1,
        task_id: str | None = None,
    ) -> list[tuple[TaskDescriptor, list[PlannedPhase]]]:
        """Dry run: tasks and phases that would run, without claiming anything."""

        if task_id is not None:
            candidates = [self.tasks.find(task_id)]
        else:
            candidates = [task for task in self.candidates() if not self._locked_by_other(task)]
        if max_tasks is not None:
            candidates = candidates[:max_tasks]
        return [(task, self.pipeline.plan(task.id)) for task in candidates]

    def candidates(self) -> list[TaskDescriptor]:
        """Runnable tasks in selection order."""

        doing = self.tasks.list_tasks(TaskState.DOING)
        own: list[TaskDescriptor] = []
        orphaned: list[TaskDescriptor] = []
        for task in doing:
            record = self.locks.read(task.id)
            if record is not None and record.agent_id == self.agent_id:
                own.append(task)
            elif record is None or self.locks.is_stale(record):
                orphaned.append(task)

        todo = [
            task for task in self.tasks.list_tasks(TaskState.TODO) if self.tasks.is_unblocked(task)
        ]
        return own + todo + orphaned

    def _claim_next(
        self,
        attempted: set[str],
        summary: WorkerRunSummary,
    ) -> TaskDescriptor | None:
        for candidate in self.candidates():
            if candidate.id in attempted or self._locked_by_other(candidate):
                continue
            try:
                return self.tasks.claim(candidate.id, self.agent_id)
            except LockHeld as error:
                self._skip_locked(candidate.id, error, summary)
            except (TaskNotFound, TaskStateConflict) as error:
                logger.info("Skipping %s: %s", candidate.id, error)
        return None

    def _claim_specific(self, task_id: str, summary: WorkerRunSummary) -> TaskDescriptor | None:
        task = self.tasks.find(task_id)
        if task.state == TaskState.TODO and not self.tasks.is_unblocked(task):
            logger.warning("Running %s although its blockers are not done", task_id)
        try:
            return self.tasks.claim(task_id, self.agent_id)
        except LockHeld as error:
            self._skip_locked(task_id, error, summary)
            return None

    def _pause_after_failures(self) -> None:
        logger.warning(
            "%s consecutive task failures, pausing %ss before the next task",
            self.max_consecutive_failures,
            self.failure_pause_seconds,
        )
        remaining = self.failure_pause_seconds
        while remaining > 0 and not self.stop():
            step = min(0.1, remaining)
            self._sleep(step)
            remaining -= step

    def _locked_by_other(self, task: TaskDescriptor) -> bool:
        record = self.locks.read(task.id)
        if record is None:
            return self.locks.is_locked(task.id)
        return record.agent_id != self.agent_id and not self.locks.is_stale(record)

    def _skip_locked(self, task_id: str, error: LockHeld, summary: WorkerRunSummary) -> None:
        summary.skipped_locked += 1
        logger.info("Skipping %s: %s", task_id, error)
        if self.reporter is not None:
            self.reporter.emit(TaskSkipped(task_id=task_id, reason=str(error)))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, stopping after the current agent exits", name)
            self.stop.request(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
