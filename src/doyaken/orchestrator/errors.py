"""Exception hierarchy for the task pipeline."""

from __future__ import annotations


class DoyakenError(RuntimeError):
    """Base class for orchestrator errors surfaced to the CLI."""


class ConfigInvalid(DoyakenError):
    """Configuration could not be loaded or failed validation."""


class StorageIOError(DoyakenError):
    """Filesystem operation on task, lock or checkpoint state failed."""


class TaskNotFound(DoyakenError):
    """Task file does not exist in any lifecycle directory."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateConflict(DoyakenError):
    """Task is not in a lifecycle directory that allows the operation."""


class LockHeld(DoyakenError):
    """Another agent owns a live lock for the task."""

    def __init__(self, task_id: str, owner: str | None = None) -> None:
        suffix = f" by {owner}" if owner else ""
        super().__init__(f"Task {task_id} is locked{suffix}")
        self.task_id = task_id
        self.owner = owner


class AlreadyClaimed(LockHeld):
    """Claim failed because the task is already owned by a live agent."""


class AcceptanceCriteriaUnmet(TaskStateConflict):
    """Task cannot move to done while acceptance criteria are unchecked."""

    def __init__(self, task_id: str, unchecked: list[str]) -> None:
        super().__init__(
            f"Task {task_id} has {len(unchecked)} unchecked acceptance criteria: "
            + "; ".join(unchecked),
        )
        self.task_id = task_id
        self.unchecked = unchecked


class PromptNotFound(DoyakenError):
    """No prompt template exists for a phase."""


class MalformedStatusBlock(DoyakenError):
    """Agent output lacks a valid DOYAKEN_STATUS block."""


class BackendRunError(DoyakenError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class PhaseFatal(DoyakenError):
    """Phase failed and its retry budget is exhausted."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        phase: str,
        failure_class: str,
        error_summary: str,
        attempts: int,
        retries: int,
    ) -> None:
        super().__init__(
            f"Phase {phase} failed after {attempts} attempt(s): {failure_class}: {error_summary}",
        )
        self.phase = phase
        self.failure_class = failure_class
        self.error_summary = error_summary
        self.attempts = attempts
        self.retries = retries


class PipelineCancelled(DoyakenError):
    """External cancellation interrupted a running pipeline."""

    def __init__(self, phase: str | None, reason: str = "cancelled") -> None:
        where = f" during {phase}" if phase else ""
        super().__init__(f"Pipeline {reason}{where}")
        self.phase = phase
        self.reason = reason
