from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from orchestrator.adapters.process import StreamUsage, SubprocessAgentAdapter, usage_tokens


class ClaudeCodeAdapter(SubprocessAgentAdapter):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        extra_args: Sequence[str] = (),
    ) -> None:
        super().__init__(binary, working_directory, event_hook)
        self.extra_args = list(extra_args)

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "stream-json", *self.extra_args]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result":
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        text = SubprocessAgentAdapter._extract_content(event)
        if text and isinstance(message, dict) and not text.endswith("\n"):
            text += "\n"
        return text

    def _record_usage(self, event: dict[str, Any], usage: StreamUsage) -> None:
        if event.get("type") != "result":
            return
        cost = event.get("total_cost_usd", event.get("cost_usd"))
        if isinstance(cost, int | float):
            usage.cost_usd = float(cost)
        usage.tokens_used = usage_tokens(event.get("usage"))
        result = event.get("result")
        if isinstance(result, str):
            usage.final_text = result
