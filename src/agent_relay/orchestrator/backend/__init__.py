"""Agent process backend: invocation building and supervision."""

from agent_relay.orchestrator.backend.command import AgentCommand, build_agent_command
from agent_relay.orchestrator.backend.supervisor import (
    AgentProbeResult,
    ProcessHandle,
    ProcessSupervisor,
)

__all__ = [
    "AgentCommand",
    "AgentProbeResult",
    "ProcessHandle",
    "ProcessSupervisor",
    "build_agent_command",
]
