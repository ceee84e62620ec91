from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from orchestrator.adapters.base import (
    AgentAdapter,
    AgentAdapterError,
    AgentExecutionResult,
    AgentProcessError,
    ChunkCallback,
)

logger = logging.getLogger(__name__)

# Claude stream-json lines carry whole tool results and can run to megabytes.
STREAM_LIMIT = 16 * 1024 * 1024


def usage_tokens(usage: Any) -> int:
    if not isinstance(usage, dict):
        return 0
    total = 0
    for key in ("input_tokens", "output_tokens"):
        value = usage.get(key)
        if isinstance(value, int):
            total += value
    return total


@dataclass(slots=True)
class StreamUsage:
    tokens_used: int = 0
    cost_usd: float = 0.0
    final_text: str = ""


class SubprocessAgentAdapter(AgentAdapter):
    """Runs a coding-agent CLI that prints JSON lines on stdout."""

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook
        self._process: asyncio.subprocess.Process | None = None
        self._aborted = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv that runs the agent non-interactively."""

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    def _record_usage(self, event: dict[str, Any], usage: StreamUsage) -> None:
        return None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()

    def abort(self) -> None:
        self._aborted = True
        if self._process is not None:
            logger.info("Aborting %s process", self.name)
            self._terminate(self._process)

    def is_running(self) -> bool:
        return self._process is not None

    async def execute_stream(
        self,
        prompt: str,
        on_chunk: ChunkCallback | None,
    ) -> AgentExecutionResult:
        started = time.monotonic()
        self._aborted = False
        command = self.build_command(prompt)
        self._emit({"event": f"{self.name}_cli_start", "command": command[:2]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {self.binary}",
                adapter=self.name,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise AgentProcessError(
                f"{self.name} could not be started: {exc}",
                adapter=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            self._terminate(process)
            raise AgentProcessError(
                f"{self.name} process did not expose stdout.", adapter=self.name, retriable=False
            )

        self._process = process
        # Drained concurrently so a chatty stderr cannot fill its pipe and stall stdout.
        stderr_reader = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        chunks: list[str] = []
        usage = StreamUsage()

        def deliver(text: str) -> None:
            chunks.append(text)
            if on_chunk is not None:
                on_chunk(text)

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    self._emit({"event": f"{self.name}_json_parse_fallback", "line": line[:200]})
                    deliver(f"{line}\n")
                    continue

                if not isinstance(event, dict):
                    continue
                self._record_usage(event, usage)
                content = self._extract_content(event)
                if content:
                    deliver(content)

            if parse_buffer:
                deliver(parse_buffer)

            stderr_output = ""
            if stderr_reader is not None:
                stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
            return_code = await process.wait()
        except (ValueError, OSError) as exc:
            self._terminate(process)
            await process.wait()
            raise AgentAdapterError(
                f"{self.name} output could not be read: {exc}", adapter=self.name
            ) from exc
        except asyncio.CancelledError:
            self._terminate(process)
            raise
        finally:
            if stderr_reader is not None and not stderr_reader.done():
                stderr_reader.cancel()
            self._process = None

        duration = time.monotonic() - started
        output = "".join(chunks) or usage.final_text
        self._emit({"event": f"{self.name}_cli_exit", "exit_code": return_code})
        if self._aborted:
            return AgentExecutionResult(
                success=False,
                output=output,
                exit_code=return_code,
                duration_seconds=duration,
                error="Execution aborted",
                tokens_used=usage.tokens_used,
                cost_usd=usage.cost_usd,
            )
        return AgentExecutionResult(
            success=return_code == 0,
            output=output,
            exit_code=return_code,
            duration_seconds=duration,
            error=stderr_output or None,
            tokens_used=usage.tokens_used,
            cost_usd=usage.cost_usd,
        )
