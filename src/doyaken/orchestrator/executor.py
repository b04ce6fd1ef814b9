"""Run exactly one agent invocation for one phase."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from doyaken.orchestrator.agents import ResolvedAgent
from doyaken.orchestrator.audit import AuditLog
from doyaken.orchestrator.backend import AgentBackend, AgentRunRequest, AgentRunResult
from doyaken.orchestrator.errors import BackendRunError, MalformedStatusBlock, StorageIOError
from doyaken.orchestrator.failure_classifier import classify_agent_failure, summarize_failure
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import (
    FailureClass,
    PhaseDefinition,
    PhaseOutcome,
    TaskDescriptor,
)
from doyaken.orchestrator.prompts import PromptRenderer
from doyaken.orchestrator.quality_gates import QualityGateRunner, format_gate_failure
from doyaken.orchestrator.reporter import AgentOutput, PhaseStarted, ProgressReporter
from doyaken.orchestrator.status_block import parse_status_block
from doyaken.orchestrator.storage import utc_now

logger = logging.getLogger(__name__)


class PhaseExecutor:
    """Render the phase prompt, run the agent once and classify the result.

    The executor never retries.  Every invocation, successful or not, is
    appended to the audit log.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        prompts: PromptRenderer,
        audit: AuditLog,
        agent: ResolvedAgent,
        agent_id: str,
        project_dir: Path,
        logs_dir: Path,
        quality_gates: QualityGateRunner | None = None,
        reporter: ProgressReporter | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: int = 10,
        locks: LockManager | None = None,
        heartbeat_interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.prompts = prompts
        self.audit = audit
        self.agent = agent
        self.agent_id = agent_id
        self.project_dir = project_dir
        self.logs_dir = logs_dir
        self.quality_gates = quality_gates
        self.reporter = reporter
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.locks = locks
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock

    def run(  # noqa: PLR0913
        self,
        phase: PhaseDefinition,
        task: TaskDescriptor,
        *,
        model: str,
        attempt: int,
        run_id: str,
        error_context: str | None = None,
        previous_summary: str | None = None,
    ) -> PhaseOutcome:
        started = time.monotonic()
        prompt = self.prompts.render(
            phase.prompt_file,
            variables={
                "TASK_ID": task.id,
                "TASK_FILE": str(task.path),
                "TIMESTAMP": self._clock().isoformat(),
                "AGENT_ID": self.agent_id,
                "PHASE": phase.name,
                "ATTEMPT": str(attempt),
                "MODEL": model,
                "PREVIOUS_SUMMARY": previous_summary or "",
                "ERROR_CONTEXT": error_context or "",
            },
            previous_summary=previous_summary,
            error_context=error_context,
        )
        self._emit(PhaseStarted(task_id=task.id, phase=phase.name, attempt=attempt, model=model))

        stem = f"{phase.name.lower()}-attempt{attempt}"
        log_dir = self.logs_dir / task.id
        request = AgentRunRequest(
            command_template=self.agent.command_template,
            model=model,
            prompt=prompt,
            prompt_file=log_dir / f"{stem}.prompt.md",
            stdout_path=log_dir / f"{stem}.stdout",
            stderr_path=log_dir / f"{stem}.stderr",
            timeout_seconds=phase.timeout_seconds,
            cwd=self.project_dir,
            env={
                "DOYAKEN_TASK_ID": task.id,
                "DOYAKEN_TASK_FILE": str(task.path),
                "DOYAKEN_PHASE": phase.name,
                "DOYAKEN_ATTEMPT": str(attempt),
                "DOYAKEN_MODEL": model,
                "DOYAKEN_AGENT": self.agent.name,
                "DOYAKEN_AGENT_ID": self.agent_id,
                "DOYAKEN_RUN_ID": run_id,
            },
            shutdown_requested=self.shutdown_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            heartbeat=self._heartbeat(task.id),
            heartbeat_interval_seconds=self.heartbeat_interval_seconds,
        )

        try:
            result = self.backend.run(request)
        except BackendRunError as error:
            logger.warning("Backend error in %s attempt %s: %s", phase.name, attempt, error)
            outcome = PhaseOutcome(
                phase=phase.name,
                attempt=attempt,
                model=model,
                ok=False,
                failure_class=FailureClass.NON_ZERO_EXIT,
                error_summary=str(error),
            )
        else:
            outcome = self._evaluate(phase, task, result, attempt=attempt, model=model)

        outcome.duration_seconds = time.monotonic() - started
        self.audit.append(
            "phase_attempt",
            task_id=task.id,
            run_id=run_id,
            phase=phase.name,
            attempt=attempt,
            agent=self.agent.name,
            model=model,
            ok=outcome.ok,
            failure_class=outcome.failure_class.value if outcome.failure_class else None,
            exit_code=outcome.exit_code,
            duration_seconds=round(outcome.duration_seconds, 3),
            error=outcome.error_summary,
        )
        return outcome

    def _evaluate(  # noqa: PLR0911
        self,
        phase: PhaseDefinition,
        task: TaskDescriptor,
        result: AgentRunResult,
        *,
        attempt: int,
        model: str,
    ) -> PhaseOutcome:
        stdout = _read_log(result.stdout_path)
        stderr = _read_log(result.stderr_path)
        if stdout.strip():
            self._emit(AgentOutput(task_id=task.id, phase=phase.name, text=stdout))

        def failed(failure_class: FailureClass, summary: str) -> PhaseOutcome:
            return PhaseOutcome(
                phase=phase.name,
                attempt=attempt,
                model=model,
                ok=False,
                failure_class=failure_class,
                error_summary=summary,
                exit_code=result.exit_code,
                output=stdout,
            )

        if result.interrupted or (result.exit_code != 0 and self._stop_requested()):
            return failed(FailureClass.CANCELLED, "Agent interrupted by shutdown request")
        if result.timed_out:
            return failed(
                FailureClass.TIMEOUT,
                f"Phase {phase.name} timed out after {phase.timeout_seconds}s",
            )
        if result.exit_code != 0:
            classification = classify_agent_failure(
                exit_code=result.exit_code,
                timed_out=False,
                stdout=stdout,
                stderr=stderr,
            )
            logger.debug("Classified %s failure: %s", phase.name, classification.to_details())
            return failed(
                classification.failure_class,
                summarize_failure(
                    exit_code=result.exit_code,
                    timed_out=False,
                    stderr=stderr,
                    stdout=stdout,
                ),
            )

        try:
            status_block = parse_status_block(stdout)
        except MalformedStatusBlock as error:
            return failed(FailureClass.MALFORMED_OUTPUT, str(error))

        if phase.runs_quality_gates and self.quality_gates is not None:
            gate_results = self.quality_gates.run_all()
            if gate_results and not gate_results[-1].passed:
                return failed(
                    FailureClass.QUALITY_GATE_FAILED,
                    format_gate_failure(gate_results[-1]),
                )

        return PhaseOutcome(
            phase=phase.name,
            attempt=attempt,
            model=model,
            ok=True,
            exit_code=result.exit_code,
            status_block=status_block,
            output=stdout,
        )

    def _heartbeat(self, task_id: str) -> Callable[[], None] | None:
        """Lock refresher for long agent runs; LockHeld means another agent took over."""

        locks = self.locks
        if locks is None:
            return None

        def beat() -> None:
            try:
                locks.refresh(task_id, self.agent_id)
            except StorageIOError as error:
                logger.warning("Heartbeat for %s could not refresh lock: %s", task_id, error)

        return beat

    def _stop_requested(self) -> bool:
        return self.shutdown_requested is not None and self.shutdown_requested()

    def _emit(self, event: PhaseStarted | AgentOutput) -> None:
        if self.reporter is not None:
            self.reporter.emit(event)


def _read_log(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
