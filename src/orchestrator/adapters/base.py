from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

ChunkCallback = Callable[[str], None]


class AgentAdapterError(RuntimeError):
    """Raised when an agent adapter cannot run the coding agent."""

    def __init__(
        self,
        message: str,
        *,
        adapter: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.adapter = adapter
        self.exit_code = exit_code
        self.retriable = retriable


class AgentProcessError(AgentAdapterError):
    """Raised when the agent process cannot be started or exposes no output."""


@dataclass(frozen=True, slots=True)
class AgentExecutionResult:
    success: bool
    output: str
    exit_code: int | None = 0
    duration_seconds: float = 0.0
    error: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0


class AgentAdapter(ABC):
    """A coding agent that takes a prompt and returns its textual output."""

    name = "agent"

    async def execute(self, prompt: str) -> AgentExecutionResult:
        return await self.execute_stream(prompt, None)

    @abstractmethod
    async def execute_stream(
        self,
        prompt: str,
        on_chunk: ChunkCallback | None,
    ) -> AgentExecutionResult:
        """Run the agent, forwarding each textual chunk to ``on_chunk``."""

    @abstractmethod
    def abort(self) -> None:
        """Stop the in-flight execution, if any."""

    @abstractmethod
    def is_running(self) -> bool:
        """Return whether an execution is in flight."""
