from orchestrator.adapters.base import (
    AgentAdapter,
    AgentAdapterError,
    AgentExecutionResult,
    AgentProcessError,
)
from orchestrator.adapters.claude import ClaudeCodeAdapter
from orchestrator.adapters.codex import CodexAdapter
from orchestrator.adapters.process import SubprocessAgentAdapter

__all__ = [
    "AgentAdapter",
    "AgentAdapterError",
    "AgentExecutionResult",
    "AgentProcessError",
    "ClaudeCodeAdapter",
    "CodexAdapter",
    "SubprocessAgentAdapter",
]
