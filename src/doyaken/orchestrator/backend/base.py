"""Backend interface for phase agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one phase attempt."""

    command_template: str
    model: str
    prompt: str
    prompt_file: Path
    stdout_path: Path
    stderr_path: Path
    timeout_seconds: int
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None
    heartbeat: Callable[[], None] | None = None
    heartbeat_interval_seconds: float | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    interrupted: bool = False
    duration_seconds: float = 0.0


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a phase attempt and return execution metadata."""
