"""Agent registry and model fallback ladders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SUPPORTED_AGENTS = ("claude", "codex", "gemini", "copilot", "opencode")


@dataclass(slots=True, frozen=True)
class AgentProfile:
    """Static facts about one external agent CLI."""

    name: str
    command_template: str
    default_model: str
    fallback_tiers: tuple[str, ...]
    floor_models: frozenset[str] = field(default_factory=frozenset)


AGENT_PROFILES: dict[str, AgentProfile] = {
    "claude": AgentProfile(
        name="claude",
        command_template=(
            "claude --dangerously-skip-permissions --permission-mode bypassPermissions "
            "--model {model} -p {prompt}"
        ),
        default_model="opus",
        fallback_tiers=("opus", "sonnet"),
        floor_models=frozenset({"haiku"}),
    ),
    "codex": AgentProfile(
        name="codex",
        command_template=(
            "codex exec --dangerously-bypass-approvals-and-sandbox -m {model} {prompt}"
        ),
        default_model="gpt-5",
        fallback_tiers=("gpt-5", "o4-mini"),
    ),
    "gemini": AgentProfile(
        name="gemini",
        command_template="gemini --yolo -m {model} -p {prompt}",
        default_model="gemini-2.5-pro",
        fallback_tiers=("gemini-2.5-pro", "gemini-2.5-flash"),
    ),
    "copilot": AgentProfile(
        name="copilot",
        command_template="copilot --allow-all-tools --allow-all-paths -m {model} -p {prompt}",
        default_model="claude-sonnet-4.5",
        fallback_tiers=("claude-sonnet-4.5", "claude-sonnet-4"),
    ),
    "opencode": AgentProfile(
        name="opencode",
        command_template="opencode run --auto-approve --model {model} {prompt}",
        default_model="claude-sonnet-4",
        fallback_tiers=("claude-opus-4", "claude-sonnet-4"),
    ),
}


@dataclass(slots=True, frozen=True)
class ResolvedAgent:
    """Agent, starting model and command template frozen for one run."""

    name: str
    model: str
    command_template: str
    tiers: tuple[str, ...]


class ModelLadder:
    """Monotonic model downgrade sequence.

    The ladder only ever moves towards weaker tiers.  Once the lowest tier is
    reached it stays there.
    """

    def __init__(self, tiers: tuple[str, ...], *, current: str | None = None) -> None:
        if not tiers:
            raise ValueError("Model ladder needs at least one tier")
        self._tiers = tiers
        self._index = tiers.index(current) if current in tiers else 0

    @property
    def current(self) -> str:
        return self._tiers[self._index]

    @property
    def tiers(self) -> tuple[str, ...]:
        return self._tiers

    @property
    def at_lowest(self) -> bool:
        return self._index >= len(self._tiers) - 1

    def downgrade(self) -> str | None:
        """Step to the next weaker tier; None when already at the lowest one."""

        if self.at_lowest:
            return None
        self._index += 1
        return self.current


def build_tiers(
    *,
    agent: str,
    model: str,
    fallback_models: tuple[str, ...] = (),
    fallback_enabled: bool = True,
) -> tuple[str, ...]:
    """Return the downgrade sequence that starts at ``model``."""

    if not fallback_enabled:
        return (model,)
    profile = AGENT_PROFILES[agent]
    tiers = fallback_models or profile.fallback_tiers
    if model in tiers:
        return tiers[tiers.index(model) :]
    if model in profile.floor_models or not tiers:
        return (model,)
    return (model, tiers[-1])


def resolve_agent(
    *,
    agent: str,
    model: str = "",
    command_template: str = "",
    fallback_models: tuple[str, ...] = (),
    fallback_enabled: bool = True,
) -> ResolvedAgent:
    """Resolve agent defaults and validate the combination."""

    name = normalize_agent(agent)
    validate_supported_agent(name)
    profile = AGENT_PROFILES[name]
    resolved_model = model.strip() or profile.default_model
    template = command_template.strip() or profile.command_template
    if "{prompt}" not in template and "{prompt_file}" not in template:
        raise ValueError(
            f"Command template for agent={name!r} must include {{prompt}} or {{prompt_file}}.",
        )
    tiers = build_tiers(
        agent=name,
        model=resolved_model,
        fallback_models=fallback_models,
        fallback_enabled=fallback_enabled,
    )
    logger.debug("Resolved agent %s model=%s tiers=%s", name, resolved_model, tiers)
    return ResolvedAgent(
        name=name,
        model=resolved_model,
        command_template=template,
        tiers=tiers,
    )


def normalize_agent(value: str) -> str:
    return value.strip().lower()


def validate_supported_agent(agent: str) -> None:
    if agent in SUPPORTED_AGENTS:
        return
    raise ValueError(
        f"Unsupported agent: {agent!r}. Use one of {', '.join(SUPPORTED_AGENTS)}.",
    )
