from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from orchestrator.adapters.process import StreamUsage, SubprocessAgentAdapter, usage_tokens


class CodexAdapter(SubprocessAgentAdapter):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)
        self.model = model

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.append(prompt)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") not in (None, "agent_message"):
                return ""
            text = item.get("text")
            if isinstance(text, str):
                return text if text.endswith("\n") else f"{text}\n"
            return ""

        text = SubprocessAgentAdapter._extract_content(event)
        if text:
            return text

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

    def _record_usage(self, event: dict[str, Any], usage: StreamUsage) -> None:
        tokens = usage_tokens(event.get("usage"))
        if tokens:
            usage.tokens_used += tokens
