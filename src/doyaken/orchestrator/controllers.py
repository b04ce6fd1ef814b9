"""Controllers for doyaken CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from doyaken.config import CliOverrides, Settings
from doyaken.orchestrator.agents import ResolvedAgent, resolve_agent
from doyaken.orchestrator.audit import AuditLog
from doyaken.orchestrator.backend import AgentBackend, CliAgentBackend, check_agent_available
from doyaken.orchestrator.checkpoint import CheckpointStore
from doyaken.orchestrator.errors import ConfigInvalid, LockHeld
from doyaken.orchestrator.executor import PhaseExecutor
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import ReleaseOutcome, RetryPolicy, TaskState
from doyaken.orchestrator.pipeline import PipelineStateMachine, build_phase_definitions
from doyaken.orchestrator.prompts import PromptRenderer
from doyaken.orchestrator.quality_gates import QualityGateRunner
from doyaken.orchestrator.reporter import ProgressReporter
from doyaken.orchestrator.retry import RetryController
from doyaken.orchestrator.storage import utc_now
from doyaken.orchestrator.tasks import TaskStore, slugify
from doyaken.orchestrator.worker import OrchestratorWorker, StopFlag, WorkerRunSummary

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CANCELLED = 130


@dataclass(slots=True)
class RunCommand:
    """CLI input for pipeline runs."""

    project_dir: Path | None
    max_tasks: int | None
    task_id: str | None = None
    dry_run: bool = False
    verbosity: str | None = None
    agent: str | None = None
    model: str | None = None


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for ``doyaken task``."""

    project_dir: Path | None
    prompt: str
    priority: int = 2
    run: bool = True
    verbosity: str | None = None
    agent: str | None = None
    model: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    project_dir: Path | None
    state: str | None = None


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for commands that only need the project location."""

    project_dir: Path | None


@dataclass(slots=True)
class AuditCommand:
    """CLI input for audit log inspection."""

    project_dir: Path | None
    last: int = 20


@dataclass(slots=True)
class ReleaseCommand:
    """CLI input for manual task release."""

    project_dir: Path | None
    task_id: str
    outcome: str = "failure"
    force: bool = False


@dataclass(slots=True)
class RunResult:
    """Output lines plus the process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


@dataclass(slots=True)
class _Runtime:
    worker: OrchestratorWorker
    stop: StopFlag


class DoyakenCliController:
    """Coordinates pipeline runs, task creation and inspection commands."""

    def __init__(
        self,
        *,
        progress_sink: Callable[[str], None] = print,
        backend_factory: Callable[[], AgentBackend] = CliAgentBackend,
    ) -> None:
        self.progress_sink = progress_sink
        self.backend_factory = backend_factory

    def run(self, command: RunCommand) -> RunResult:
        settings = _load_settings(
            command.project_dir,
            CliOverrides(agent=command.agent, model=command.model, verbosity=command.verbosity),
        )
        runtime = self._build_runtime(settings)

        if command.dry_run:
            return RunResult(_render_plan(runtime.worker, command))

        summary = runtime.worker.run_loop(max_tasks=command.max_tasks, task_id=command.task_id)
        return RunResult(_render_summary(summary), _exit_code(summary, runtime.stop))

    def create_task(self, command: CreateTaskCommand) -> RunResult:
        settings = _load_settings(
            command.project_dir,
            CliOverrides(agent=command.agent, model=command.model, verbosity=command.verbosity),
        )
        tasks, _ = _stores(settings)
        title = command.prompt.strip().splitlines()[0][:80] if command.prompt.strip() else ""
        if not title:
            raise ConfigInvalid("Task prompt must not be empty.")
        task = tasks.create_task(
            title,
            priority=command.priority,
            context=(
                "Task created via `doyaken task` for immediate execution.\n\n"
                f"Prompt: {command.prompt.strip()}"
            ),
            sequence=int(utc_now().strftime("%H%M%S")),
            slug=slugify(command.prompt),
        )
        lines = [f"Created task: {task.id}", f"File: {task.path}"]
        if not command.run:
            return RunResult(lines)

        result = self.run(
            RunCommand(
                project_dir=settings.project_dir,
                max_tasks=1,
                task_id=task.id,
                verbosity=command.verbosity,
                agent=command.agent,
                model=command.model,
            ),
        )
        return RunResult(lines + result.lines, result.exit_code)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _load_settings(command.project_dir)
        tasks, _ = _stores(settings)
        states = [TaskState(command.state)] if command.state else list(TaskState)
        lines: list[str] = []
        for state in states:
            for task in tasks.list_tasks(state):
                blocked = ""
                if state == TaskState.TODO and not tasks.is_unblocked(task):
                    blocked = f"  (blocked by {', '.join(task.blocked_by)})"
                lines.append(f"{task.id:<40} {state.value:<6} {task.title}{blocked}")
        return lines or ["No tasks."]

    def status(self, command: ProjectCommand) -> list[str]:
        settings = _load_settings(command.project_dir)
        tasks, locks = _stores(settings)
        counts = tasks.counts()
        lines = [
            f"Project: {settings.project_dir}",
            "Tasks: "
            + " ".join(f"{state.value}={counts[state]}" for state in TaskState),
        ]

        records = locks.list_locks()
        lines.append(f"Locks: {len(records)}")
        now = utc_now()
        for record in records:
            stale = " [stale]" if locks.is_stale(record, now) else ""
            lines.append(
                f"  {record.task_id} agent={record.agent_id} pid={record.pid}"
                f" age={int(record.age_seconds(now))}s{stale}",
            )

        runs = CheckpointStore(settings.state_dir / "runs").list_runs()
        lines.append(f"Checkpoints: {len(runs)}")
        for run in runs:
            index = min(run.current_phase_index, len(run.phases) - 1)
            lines.append(
                f"  {run.task_id} status={run.status.value}"
                f" phase={run.phases[index].name} model={run.model}",
            )
        return lines

    def audit(self, command: AuditCommand) -> list[str]:
        settings = _load_settings(command.project_dir)
        records = AuditLog(settings.audit_log_path).tail(command.last)
        lines = [
            f"{record.get('ts', '?')} {record.get('event', '?')} "
            f"{json.dumps(record.get('details', {}), sort_keys=True)}"
            for record in records
        ]
        return lines or ["Audit log is empty."]

    def show_config(self, command: ProjectCommand) -> list[str]:
        settings = _load_settings(command.project_dir)
        return settings.describe()

    def release(self, command: ReleaseCommand) -> list[str]:
        settings = _load_settings(command.project_dir)
        tasks, locks = _stores(settings)
        owner = locks.read(command.task_id)
        foreign = owner is None or owner.agent_id != settings.agent_id
        if foreign and locks.is_locked(command.task_id) and not command.force:
            raise LockHeld(command.task_id, owner.agent_id if owner else None)
        outcome = ReleaseOutcome(command.outcome)
        task = tasks.release(command.task_id, outcome)
        if task is None:
            return [f"Task {command.task_id} not found; lock cleared if present."]
        return [f"Task {task.id} is now {task.state.value}."]

    def _build_runtime(self, settings: Settings) -> _Runtime:
        tasks, locks = _stores(settings)
        tasks.ensure_layout()
        stop = StopFlag()
        reporter = ProgressReporter(verbosity=settings.output.verbosity, sink=self.progress_sink)
        audit = AuditLog(settings.audit_log_path)
        checkpoints = CheckpointStore(settings.state_dir / "runs")
        agent = _resolve_agent(settings)
        quality_commands = settings.quality.commands()
        executor = PhaseExecutor(
            backend=self.backend_factory(),
            prompts=PromptRenderer(
                project_prompts_dir=settings.data_dir / "prompts",
                global_prompts_dir=settings.doyaken_home / "prompts",
            ),
            audit=audit,
            agent=agent,
            agent_id=settings.agent_id,
            project_dir=settings.project_dir,
            logs_dir=settings.logs_dir,
            quality_gates=(
                QualityGateRunner(
                    commands=quality_commands,
                    cwd=settings.project_dir,
                    timeout_seconds=settings.quality.timeout_seconds,
                )
                if quality_commands
                else None
            ),
            reporter=reporter,
            shutdown_requested=stop,
            graceful_shutdown_seconds=settings.locks.graceful_shutdown_seconds,
            locks=locks,
            heartbeat_interval_seconds=settings.locks.heartbeat_interval_seconds,
        )
        retry = RetryController(executor=executor, reporter=reporter, shutdown_requested=stop)
        pipeline = PipelineStateMachine(
            tasks=tasks,
            locks=locks,
            checkpoints=checkpoints,
            retry=retry,
            phases=build_phase_definitions(
                timeouts=settings.phases.timeouts,
                skip=settings.phases.skip,
                retry_policy=RetryPolicy(
                    max_attempts=settings.retry.max_attempts,
                    base_delay_seconds=settings.retry.base_delay_seconds,
                    max_delay_seconds=settings.retry.max_delay_seconds,
                    malformed_output_retries=settings.retry.malformed_output_retries,
                ),
            ),
            agent=agent,
            agent_id=settings.agent_id,
            fallback_enabled=settings.agent.fallback_enabled,
            reporter=reporter,
            audit=audit,
        )
        worker = OrchestratorWorker(
            tasks=tasks,
            locks=locks,
            pipeline=pipeline,
            agent_id=settings.agent_id,
            stop=stop,
            reporter=reporter,
            preflight=(
                (lambda: check_agent_available(agent.command_template))
                if settings.worker.health_check
                else None
            ),
            max_consecutive_failures=settings.worker.max_consecutive_failures,
            failure_pause_seconds=settings.worker.failure_pause_seconds,
        )
        return _Runtime(worker=worker, stop=stop)


def _load_settings(project_dir: Path | None, overrides: CliOverrides | None = None) -> Settings:
    settings = Settings.load(project_dir=project_dir, overrides=overrides)
    settings.validate()
    return settings


def _stores(settings: Settings) -> tuple[TaskStore, LockManager]:
    locks = LockManager(
        settings.locks_dir,
        lock_timeout_seconds=settings.locks.lock_timeout_seconds,
    )
    return TaskStore(settings.tasks_dir, locks), locks


def _resolve_agent(settings: Settings) -> ResolvedAgent:
    try:
        return resolve_agent(
            agent=settings.agent.name,
            model=settings.agent.model,
            command_template=settings.agent.command_template,
            fallback_models=settings.agent.fallback_models,
            fallback_enabled=settings.agent.fallback_enabled,
        )
    except ValueError as error:
        raise ConfigInvalid(str(error)) from error


def _render_plan(worker: OrchestratorWorker, command: RunCommand) -> list[str]:
    plan = worker.plan(max_tasks=command.max_tasks, task_id=command.task_id)
    if not plan:
        return ["Dry run: no runnable tasks."]
    lines = ["Dry run: no agents will be invoked."]
    for task, phases in plan:
        lines.append(f"{task.id} [{task.state.value}] {task.title}")
        lines.extend(
            f"  {phase.name:<10} {phase.action:<5} timeout={phase.timeout_seconds}s"
            for phase in phases
        )
    return lines


def _render_summary(summary: WorkerRunSummary) -> list[str]:
    if summary.processed == 0 and summary.skipped_locked == 0:
        return ["No runnable tasks."]
    lines = [
        f"{result.task_id}: {result.status.value}"
        + (f" ({result.error})" if result.error else "")
        for result in summary.results
    ]
    lines.append(
        "Run summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"aborted={summary.aborted} cancelled={summary.cancelled} "
        f"skipped_locked={summary.skipped_locked}",
    )
    return lines


def _exit_code(summary: WorkerRunSummary, stop: StopFlag) -> int:
    if summary.cancelled or stop():
        return EXIT_CANCELLED
    if summary.aborted:
        return EXIT_ABORTED
    return EXIT_OK
