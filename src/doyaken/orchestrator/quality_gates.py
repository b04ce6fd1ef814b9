"""Quality gate commands run after TEST and REVIEW phases."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

SAFE_COMMAND_PREFIXES: frozenset[str] = frozenset(
    {
        "npm",
        "npx",
        "yarn",
        "pnpm",
        "bun",
        "node",
        "make",
        "cargo",
        "go",
        "python",
        "python3",
        "pytest",
        "uv",
        "poetry",
        "ruff",
        "black",
        "mypy",
        "tox",
        "nox",
        "pre-commit",
        "eslint",
        "prettier",
        "tsc",
        "jest",
        "vitest",
        "gradle",
        "./gradlew",
        "mvn",
        "dotnet",
        "bundle",
        "rake",
        "rspec",
        "mix",
        "swift",
        "flutter",
        "dart",
        "composer",
        "php",
        "phpunit",
        "deno",
        "biome",
        "shellcheck",
        "bats",
    },
)

DANGEROUS_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "rm -fr",
    "sudo ",
    "| sh",
    "| bash",
    "curl ",
    "wget ",
    "nc ",
    "bash -c",
    "sh -c",
    "eval ",
    "/dev/",
    "~/",
    "../",
    "chmod 777",
    "> /",
)

_OUTPUT_TAIL_CHARS = 2_000


class CommandVerdict(str, Enum):
    """Result of vetting a configured quality command."""

    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    DANGEROUS = "dangerous"


@dataclass(slots=True)
class GateResult:
    """Outcome of one quality gate command."""

    name: str
    command: str
    exit_code: int
    timed_out: bool
    output_tail: str

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def vet_command(command: str) -> CommandVerdict:
    """Classify a quality command by its executable and content."""

    stripped = command.strip()
    if not stripped:
        return CommandVerdict.SAFE
    if any(pattern in stripped for pattern in DANGEROUS_PATTERNS):
        return CommandVerdict.DANGEROUS
    head = stripped.split(maxsplit=1)[0]
    base = head if head.startswith("./") else os.path.basename(head)
    if base in SAFE_COMMAND_PREFIXES:
        return CommandVerdict.SAFE
    return CommandVerdict.SUSPICIOUS


class QualityGateRunner:
    """Run configured gate commands in the project directory."""

    def __init__(
        self,
        *,
        commands: dict[str, str],
        cwd: Path,
        timeout_seconds: int = 900,
    ) -> None:
        self.commands = {name: cmd for name, cmd in commands.items() if cmd.strip()}
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def run_all(self) -> list[GateResult]:
        """Run gates in order and stop at the first failure."""

        results: list[GateResult] = []
        for name, command in self.commands.items():
            result = self.run_one(name=name, command=command)
            results.append(result)
            if not result.passed:
                logger.info("Quality gate %s failed (exit %s)", name, result.exit_code)
                break
        return results

    def run_one(self, *, name: str, command: str) -> GateResult:
        try:
            argv = shlex.split(command)
        except ValueError as error:
            return GateResult(
                name=name,
                command=command,
                exit_code=2,
                timed_out=False,
                output_tail=f"Cannot parse command: {error}",
            )
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            output = _decode(error.stdout) + _decode(error.stderr)
            return GateResult(
                name=name,
                command=command,
                exit_code=124,
                timed_out=True,
                output_tail=_tail(output),
            )
        except OSError as error:
            return GateResult(
                name=name,
                command=command,
                exit_code=127,
                timed_out=False,
                output_tail=f"Cannot start command: {error}",
            )
        return GateResult(
            name=name,
            command=command,
            exit_code=completed.returncode,
            timed_out=False,
            output_tail=_tail(f"{completed.stdout}{completed.stderr}"),
        )


def format_gate_failure(result: GateResult) -> str:
    """Render a failed gate as error context for the next attempt's prompt."""

    status = "timed out" if result.timed_out else f"exited with code {result.exit_code}"
    return (
        f"Quality gate '{result.name}' ({result.command}) {status}.\n"
        f"Last output:\n{result.output_tail}"
    )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _tail(text: str) -> str:
    compact = text.strip()
    if len(compact) <= _OUTPUT_TAIL_CHARS:
        return compact
    return compact[-_OUTPUT_TAIL_CHARS:]
