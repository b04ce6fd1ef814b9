"""Runtime configuration for the phase pipeline.

Values are resolved through a priority chain, lowest first::

    defaults < global config < project manifest < environment < CLI flags

The global config lives at ``$DOYAKEN_HOME/config/global.yaml`` and the
project manifest at ``<project>/.doyaken/manifest.yaml``.  Both are optional.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from doyaken.orchestrator.agents import AGENT_PROFILES, SUPPORTED_AGENTS, normalize_agent
from doyaken.orchestrator.errors import ConfigInvalid
from doyaken.orchestrator.models import DEFAULT_PHASE_TIMEOUTS, PHASE_NAMES
from doyaken.orchestrator.quality_gates import CommandVerdict, vet_command

logger = logging.getLogger(__name__)

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")
QUALITY_GATES = ("test", "lint", "format", "build")


@dataclass(slots=True)
class AgentSettings:
    """Which agent CLI to drive and how to downgrade its model."""

    name: str = "claude"
    model: str = ""
    command_template: str = ""
    fallback_enabled: bool = True
    fallback_models: tuple[str, ...] = ()


@dataclass(slots=True)
class RetrySettings:
    """Per-phase retry budget and backoff."""

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    malformed_output_retries: int = 1


@dataclass(slots=True)
class LockSettings:
    """Claim staleness and shutdown behaviour."""

    lock_timeout_seconds: int = 10_800
    graceful_shutdown_seconds: int = 10
    heartbeat_interval_seconds: float = 3600.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop health: preflight check and failure back-off."""

    max_consecutive_failures: int = 3
    failure_pause_seconds: float = 30.0
    health_check: bool = True


@dataclass(slots=True)
class PhaseSettings:
    """Phase timeouts and skip switches."""

    timeouts: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS))
    skip: frozenset[str] = frozenset()


@dataclass(slots=True)
class OutputSettings:
    """Progress reporting verbosity."""

    verbosity: str = "normal"


@dataclass(slots=True)
class QualitySettings:
    """External quality gate commands."""

    test_command: str = ""
    lint_command: str = ""
    format_command: str = ""
    build_command: str = ""
    strict: bool = False
    timeout_seconds: int = 900

    def commands(self) -> dict[str, str]:
        """Non-empty gate commands in execution order."""

        configured = {
            "format": self.format_command,
            "lint": self.lint_command,
            "build": self.build_command,
            "test": self.test_command,
        }
        return {name: cmd.strip() for name, cmd in configured.items() if cmd.strip()}


@dataclass(slots=True)
class CliOverrides:
    """Values passed explicitly on the command line."""

    agent: str | None = None
    model: str | None = None
    verbosity: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_dir: Path = field(default_factory=Path.cwd)
    doyaken_home: Path = field(default_factory=lambda: Path.home() / ".doyaken")
    agent_id: str = field(default_factory=lambda: default_agent_id())
    agent: AgentSettings = field(default_factory=AgentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    locks: LockSettings = field(default_factory=LockSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    phases: PhaseSettings = field(default_factory=PhaseSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)

    @property
    def data_dir(self) -> Path:
        return self.project_dir / ".doyaken"

    @property
    def tasks_dir(self) -> Path:
        return self.data_dir / "tasks"

    @property
    def locks_dir(self) -> Path:
        return self.data_dir / "locks"

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "audit.log"

    @property
    def manifest_path(self) -> Path:
        return self.data_dir / "manifest.yaml"

    @classmethod
    def load(
        cls,
        project_dir: Path | None = None,
        overrides: CliOverrides | None = None,
    ) -> Settings:
        """Resolve settings through the full priority chain."""

        overrides = overrides or CliOverrides()
        resolved_project = (
            project_dir or Path(os.getenv("DOYAKEN_PROJECT", "") or Path.cwd())
        ).resolve()
        home = Path(os.getenv("DOYAKEN_HOME", "") or Path.home() / ".doyaken")
        global_path = Path(
            os.getenv("DOYAKEN_GLOBAL_CONFIG", "") or home / "config" / "global.yaml",
        )
        layers = _ConfigLayers(
            global_config=_read_yaml(global_path),
            manifest=_read_yaml(resolved_project / ".doyaken" / "manifest.yaml"),
        )

        layered_agent = layers.get(
            ("agent.name", "defaults.agent"),
            env=("DOYAKEN_AGENT",),
            default="claude",
        )
        agent_name = overrides.agent or layered_agent
        model = overrides.model or layers.get(
            ("agent.model", "defaults.model"),
            env=("DOYAKEN_MODEL",),
            default="",
        )
        # A layered model belongs to the layered agent; switching agents on the
        # command line without --model falls back to the new agent's default.
        if (
            not overrides.model
            and overrides.agent
            and normalize_agent(overrides.agent) != normalize_agent(str(layered_agent))
        ):
            model = ""

        timeouts = {
            phase: _as_int(
                layers.get(
                    (f"timeouts.{phase.lower()}",),
                    env=(f"DOYAKEN_TIMEOUT_{phase}", f"TIMEOUT_{phase}"),
                    default=DEFAULT_PHASE_TIMEOUTS[phase],
                ),
                f"TIMEOUT_{phase}",
            )
            for phase in PHASE_NAMES
        }
        skip = frozenset(
            phase
            for phase in PHASE_NAMES
            if _as_bool(
                layers.get(
                    (f"skip_phases.{phase.lower()}",),
                    env=(f"DOYAKEN_SKIP_{phase}", f"SKIP_{phase}"),
                    default=False,
                ),
                f"SKIP_{phase}",
            )
        )

        return cls(
            project_dir=resolved_project,
            doyaken_home=home,
            agent_id=os.getenv("DOYAKEN_AGENT_ID", "").strip() or default_agent_id(),
            agent=AgentSettings(
                name=normalize_agent(str(agent_name)),
                model=str(model).strip(),
                command_template=str(
                    layers.get(
                        ("agent.command_template",),
                        env=("DOYAKEN_AGENT_COMMAND",),
                        default="",
                    ),
                ),
                fallback_enabled=not _as_bool(
                    layers.get(
                        ("defaults.no_fallback",),
                        env=("DOYAKEN_NO_FALLBACK", "AGENT_NO_FALLBACK"),
                        default=False,
                    ),
                    "AGENT_NO_FALLBACK",
                ),
                fallback_models=_as_str_tuple(
                    layers.get(
                        ("agent.fallback_models",),
                        env=("DOYAKEN_FALLBACK_MODELS",),
                        default=(),
                    ),
                ),
            ),
            retry=RetrySettings(
                max_attempts=_as_int(
                    layers.get(
                        ("defaults.max_attempts", "defaults.max_retries"),
                        env=("DOYAKEN_MAX_ATTEMPTS", "AGENT_MAX_RETRIES"),
                        default=3,
                    ),
                    "AGENT_MAX_RETRIES",
                ),
                base_delay_seconds=_as_float(
                    layers.get(
                        ("defaults.retry_delay",),
                        env=("DOYAKEN_RETRY_DELAY", "AGENT_RETRY_DELAY"),
                        default=5.0,
                    ),
                    "AGENT_RETRY_DELAY",
                ),
                max_delay_seconds=_as_float(
                    layers.get(
                        ("defaults.retry_max_delay",),
                        env=("DOYAKEN_RETRY_MAX_DELAY",),
                        default=60.0,
                    ),
                    "DOYAKEN_RETRY_MAX_DELAY",
                ),
            ),
            locks=LockSettings(
                lock_timeout_seconds=_as_int(
                    layers.get(
                        ("defaults.lock_timeout",),
                        env=("DOYAKEN_LOCK_TIMEOUT", "AGENT_LOCK_TIMEOUT"),
                        default=10_800,
                    ),
                    "AGENT_LOCK_TIMEOUT",
                ),
                graceful_shutdown_seconds=_as_int(
                    layers.get(
                        ("defaults.graceful_shutdown",),
                        env=("DOYAKEN_GRACEFUL_SHUTDOWN_SECONDS",),
                        default=10,
                    ),
                    "DOYAKEN_GRACEFUL_SHUTDOWN_SECONDS",
                ),
                heartbeat_interval_seconds=_as_float(
                    layers.get(
                        ("defaults.heartbeat_interval", "defaults.heartbeat"),
                        env=("DOYAKEN_HEARTBEAT", "AGENT_HEARTBEAT"),
                        default=3600.0,
                    ),
                    "AGENT_HEARTBEAT",
                ),
            ),
            worker=WorkerSettings(
                max_consecutive_failures=_as_int(
                    layers.get(
                        ("defaults.max_consecutive_failures",),
                        env=("DOYAKEN_MAX_CONSECUTIVE_FAILURES",),
                        default=3,
                    ),
                    "DOYAKEN_MAX_CONSECUTIVE_FAILURES",
                ),
                failure_pause_seconds=_as_float(
                    layers.get(
                        ("defaults.failure_pause",),
                        env=("DOYAKEN_FAILURE_PAUSE",),
                        default=30.0,
                    ),
                    "DOYAKEN_FAILURE_PAUSE",
                ),
                health_check=_as_bool(
                    layers.get(
                        ("defaults.health_check",),
                        env=("DOYAKEN_HEALTH_CHECK",),
                        default=True,
                    ),
                    "DOYAKEN_HEALTH_CHECK",
                ),
            ),
            phases=PhaseSettings(timeouts=timeouts, skip=skip),
            output=OutputSettings(
                verbosity=overrides.verbosity or _resolve_verbosity(layers),
            ),
            quality=QualitySettings(
                **{
                    f"{gate}_command": str(
                        layers.get(
                            (f"quality.{gate}_command",),
                            env=(
                                f"DOYAKEN_QUALITY_{gate.upper()}_CMD",
                                f"QUALITY_{gate.upper()}_CMD",
                            ),
                            default="",
                        ),
                    )
                    for gate in QUALITY_GATES
                },
                strict=_as_bool(
                    layers.get(
                        ("quality.strict",),
                        env=("DOYAKEN_STRICT_QUALITY",),
                        default=False,
                    ),
                    "DOYAKEN_STRICT_QUALITY",
                ),
                timeout_seconds=_as_int(
                    layers.get(
                        ("quality.timeout",),
                        env=("DOYAKEN_QUALITY_TIMEOUT",),
                        default=900,
                    ),
                    "DOYAKEN_QUALITY_TIMEOUT",
                ),
            ),
        )

    def validate(self) -> None:
        """Raise ConfigInvalid if settings cannot drive a pipeline."""

        if self.agent.name not in SUPPORTED_AGENTS:
            raise ConfigInvalid(
                f"Unsupported agent: {self.agent.name!r}. "
                f"Use one of {', '.join(SUPPORTED_AGENTS)}.",
            )
        template = self.agent.command_template.strip()
        if template and "{prompt}" not in template and "{prompt_file}" not in template:
            raise ConfigInvalid("Agent command template must include {prompt} or {prompt_file}.")
        if self.retry.max_attempts < 1:
            raise ConfigInvalid("AGENT_MAX_RETRIES must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ConfigInvalid("AGENT_RETRY_DELAY must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ConfigInvalid("DOYAKEN_RETRY_MAX_DELAY must be >= AGENT_RETRY_DELAY.")
        if self.locks.lock_timeout_seconds <= 0:
            raise ConfigInvalid("AGENT_LOCK_TIMEOUT must be > 0.")
        for phase, timeout in self.phases.timeouts.items():
            if timeout <= 0:
                raise ConfigInvalid(f"TIMEOUT_{phase} must be > 0.")
        if self.phases.skip >= frozenset(PHASE_NAMES):
            raise ConfigInvalid("All phases are skipped; nothing to run.")
        longest = max(
            (p for p in PHASE_NAMES if p not in self.phases.skip),
            key=lambda p: self.phases.timeouts[p],
        )
        if self.locks.lock_timeout_seconds <= self.phases.timeouts[longest]:
            raise ConfigInvalid(
                f"AGENT_LOCK_TIMEOUT ({self.locks.lock_timeout_seconds}s) must exceed "
                f"TIMEOUT_{longest} ({self.phases.timeouts[longest]}s).",
            )
        heartbeat = self.locks.heartbeat_interval_seconds
        if heartbeat <= 0 or heartbeat >= self.locks.lock_timeout_seconds:
            raise ConfigInvalid("AGENT_HEARTBEAT must be > 0 and < AGENT_LOCK_TIMEOUT.")
        if self.worker.max_consecutive_failures < 0:
            raise ConfigInvalid("DOYAKEN_MAX_CONSECUTIVE_FAILURES must be >= 0.")
        if self.worker.failure_pause_seconds < 0:
            raise ConfigInvalid("DOYAKEN_FAILURE_PAUSE must be >= 0.")
        if self.output.verbosity not in VERBOSITY_LEVELS:
            raise ConfigInvalid(
                f"Unsupported verbosity {self.output.verbosity!r}. "
                f"Use one of {', '.join(VERBOSITY_LEVELS)}.",
            )
        for gate, command in self.quality.commands().items():
            verdict = vet_command(command)
            if verdict == CommandVerdict.DANGEROUS and self.quality.strict:
                raise ConfigInvalid(
                    f"Dangerous quality.{gate}_command blocked in strict mode: {command!r}",
                )
            if verdict != CommandVerdict.SAFE:
                logger.warning("%s quality.%s_command: %r", verdict.value.title(), gate, command)

    def effective_model(self) -> str:
        return self.agent.model or AGENT_PROFILES[self.agent.name].default_model

    def describe(self) -> list[str]:
        """Human-readable effective configuration."""

        lines = [
            f"project: {self.project_dir}",
            f"agent_id: {self.agent_id}",
            f"agent: {self.agent.name}",
            f"model: {self.agent.model or '(agent default)'}",
            f"fallback: {'enabled' if self.agent.fallback_enabled else 'disabled'}",
            f"max_attempts: {self.retry.max_attempts}",
            f"retry_delay: {self.retry.base_delay_seconds}s (cap {self.retry.max_delay_seconds}s)",
            f"lock_timeout: {self.locks.lock_timeout_seconds}s "
            f"(heartbeat {self.locks.heartbeat_interval_seconds}s)",
            f"verbosity: {self.output.verbosity}",
            "timeouts:",
        ]
        for phase in PHASE_NAMES:
            marker = " [skip]" if phase in self.phases.skip else ""
            lines.append(f"  {phase:<10} {self.phases.timeouts[phase]}s{marker}")
        commands = self.quality.commands()
        lines.append("quality gates:" if commands else "quality gates: (none)")
        lines.extend(f"  {gate}: {command}" for gate, command in commands.items())
        return lines


def default_agent_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class _ConfigLayers:
    """Environment, project manifest and global config lookups."""

    def __init__(self, *, global_config: dict[str, Any], manifest: dict[str, Any]) -> None:
        self.global_config = global_config
        self.manifest = manifest

    def get(self, keys: tuple[str, ...], *, env: tuple[str, ...], default: Any) -> Any:
        for name in env:
            value = os.getenv(name)
            if value is not None and value.strip():
                return value.strip()
        for source in (self.manifest, self.global_config):
            for key in keys:
                value = _dig(source, key)
                if value is not None and value != "":
                    return value
        return default


def _resolve_verbosity(layers: _ConfigLayers) -> str:
    quiet = _as_bool(
        layers.get(("output.quiet",), env=("DOYAKEN_QUIET", "AGENT_QUIET"), default=False),
        "AGENT_QUIET",
    )
    verbose = _as_bool(
        layers.get(("output.verbose",), env=("DOYAKEN_VERBOSE", "AGENT_VERBOSE"), default=False),
        "AGENT_VERBOSE",
    )
    if quiet:
        return "quiet"
    if verbose:
        return "verbose"
    return "normal"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        payload = yaml.safe_load(path.read_text("utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigInvalid(f"Cannot read config {path}: {error}") from error
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigInvalid(f"Expected a mapping at top level of {path}")
    return payload


def _dig(data: dict[str, Any], dotted: str) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigInvalid(f"Invalid integer value for {name}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ConfigInvalid(f"Invalid integer value for {name}: {value!r}") from error


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigInvalid(f"Invalid number for {name}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as error:
        raise ConfigInvalid(f"Invalid number for {name}: {value!r}") from error


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigInvalid(f"Invalid boolean value for {name}: {value!r}")


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple)):
        parts = [str(item) for item in value]
    else:
        return ()
    return tuple(part.strip() for part in parts if part.strip())
