"""Agent execution for Ralph."""

from ralph.agents.runner import (
    DEFAULT_AGENT_COMMANDS,
    AgentRunner,
    ProcessResult,
    SubprocessAgentRunner,
    default_agent_command,
)

__all__ = [
    "DEFAULT_AGENT_COMMANDS",
    "AgentRunner",
    "ProcessResult",
    "SubprocessAgentRunner",
    "default_agent_command",
]
