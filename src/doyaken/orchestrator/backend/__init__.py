"""Agent backend implementations."""

from doyaken.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from doyaken.orchestrator.backend.cli_backend import CliAgentBackend, check_agent_available

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
    "check_agent_available",
]
