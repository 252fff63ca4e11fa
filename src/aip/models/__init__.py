"""Convenience exports for the code-generation agent integrations."""

from .agent_client import (
    AgentClient,
    AgentError,
    AgentInvoker,
    AgentRun,
    AgentTimeout,
    AgentUnavailable,
    CLIAgentClient,
)

__all__ = [
    "AgentClient",
    "AgentError",
    "AgentInvoker",
    "AgentRun",
    "AgentTimeout",
    "AgentUnavailable",
    "CLIAgentClient",
]
