"""Domain models for tasks, locks, phases and pipeline runs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

TASK_ID_PATTERN = re.compile(
    r"^(?P<priority>\d{3})-(?P<sequence>\d+)-(?P<slug>[A-Za-z0-9][A-Za-z0-9._-]*)$",
)

PHASE_NAMES: tuple[str, ...] = (
    "EXPAND",
    "TRIAGE",
    "PLAN",
    "IMPLEMENT",
    "TEST",
    "DOCS",
    "REVIEW",
    "VERIFY",
)
DEFAULT_PHASE_TIMEOUTS: dict[str, int] = {
    "EXPAND": 900,
    "TRIAGE": 540,
    "PLAN": 900,
    "IMPLEMENT": 5400,
    "TEST": 1800,
    "DOCS": 900,
    "REVIEW": 1800,
    "VERIFY": 900,
}
QUALITY_GATE_PHASES = frozenset({"TEST", "REVIEW"})


class TaskState(str, Enum):
    """Lifecycle directory a task file lives in."""

    TODO = "todo"
    DOING = "doing"
    DONE = "done"


class ReleaseOutcome(str, Enum):
    """How a claimed task leaves the doing directory."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class PhaseStatus(str, Enum):
    """Per-phase status persisted in the checkpoint."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class PipelineStatus(str, Enum):
    """Pipeline run lifecycle."""

    RUNNING = "running"
    DONE = "done"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Normalized phase attempt failures used by the retry policy."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    RATE_LIMITED = "rate_limited"
    MALFORMED_OUTPUT = "malformed_output"
    QUALITY_GATE_FAILED = "quality_gate_failed"
    CANCELLED = "cancelled"


class AttemptVerdict(str, Enum):
    """Retry controller state after one attempt."""

    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class TaskId:
    """Parsed composite task identifier ``PPP-SSS-slug``."""

    value: str
    priority: int
    sequence: int
    slug: str

    @classmethod
    def parse(cls, value: str) -> TaskId | None:
        """Parse task id, returning None when it does not follow the naming scheme."""

        match = TASK_ID_PATTERN.match(value)
        if match is None:
            return None
        return cls(
            value=value,
            priority=int(match.group("priority")),
            sequence=int(match.group("sequence")),
            slug=match.group("slug"),
        )

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return (self.priority, self.sequence, self.slug)


@dataclass(slots=True)
class TaskDescriptor:
    """One task file as seen by the store."""

    task_id: TaskId
    state: TaskState
    path: Path
    title: str
    metadata: dict[str, str]
    blocked_by: tuple[str, ...] = ()
    blocks: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.task_id.value

    @property
    def priority(self) -> int:
        return self.task_id.priority


@dataclass(slots=True)
class AcceptanceCriterion:
    """One checklist entry of the Acceptance Criteria section."""

    text: str
    checked: bool


@dataclass(slots=True)
class LockRecord:
    """Exclusive claim binding a task to one agent."""

    task_id: str
    agent_id: str
    pid: int
    hostname: str
    locked_at: datetime
    heartbeat_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.heartbeat_at).total_seconds()


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Per-phase retry budget and backoff parameters."""

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    malformed_output_retries: int = 1


@dataclass(slots=True, frozen=True)
class PhaseDefinition:
    """Static phase configuration."""

    name: str
    ordinal: int
    prompt_file: str
    timeout_seconds: int
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    skip: bool = False
    runs_quality_gates: bool = False


@dataclass(slots=True)
class StatusBlock:
    """Structured summary an agent prints at the end of a phase."""

    phase_complete: bool
    files_modified: int | None = None
    tests_status: str | None = None
    confidence: str | None = None
    remaining_work: str | None = None
    blockers: str | None = None

    def to_summary(self) -> dict[str, Any]:
        return {
            "phase_complete": self.phase_complete,
            "files_modified": self.files_modified,
            "tests_status": self.tests_status,
            "confidence": self.confidence,
            "remaining_work": self.remaining_work,
            "blockers": self.blockers,
        }


@dataclass(slots=True)
class PhaseOutcome:
    """Result of exactly one phase invocation."""

    phase: str
    attempt: int
    model: str
    ok: bool
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    exit_code: int | None = None
    status_block: StatusBlock | None = None
    output: str = ""
    duration_seconds: float = 0.0


@dataclass(slots=True)
class PhaseState:
    """Mutable per-phase progress tracked inside a pipeline run."""

    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    attempts: int = 0
    retries: int = 0
    model: str | None = None
    failure_class: FailureClass | None = None
    last_error: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def completed(self) -> bool:
        return self.status in {PhaseStatus.SUCCEEDED, PhaseStatus.SKIPPED}


@dataclass(slots=True)
class PipelineRun:
    """Checkpointed state of one task's trip through the phases."""

    run_id: str
    task_id: str
    agent_id: str
    agent: str
    model: str
    started_at: datetime
    phases: list[PhaseState]
    status: PipelineStatus = PipelineStatus.RUNNING
    current_phase_index: int = 0
    finished_at: datetime | None = None
    error: str | None = None

    def phase(self, name: str) -> PhaseState:
        for state in self.phases:
            if state.name == name:
                return state
        raise KeyError(name)

    def first_incomplete_index(self) -> int:
        for index, state in enumerate(self.phases):
            if not state.completed:
                return index
        return len(self.phases)
