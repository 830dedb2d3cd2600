"""Agent client boundary: protocol, context, results and the capability registry."""

from build_orchestrator.agents.client import (
    AgentClient,
    AgentContext,
    AgentError,
    AgentRegistry,
    AgentResult,
    CapabilityUnavailableError,
    ExternalDependencyError,
    invoke_agent,
)

__all__ = [
    "AgentClient",
    "AgentContext",
    "AgentError",
    "AgentRegistry",
    "AgentResult",
    "CapabilityUnavailableError",
    "ExternalDependencyError",
    "invoke_agent",
]
