from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["claude", "codex"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONFIG_FILENAME = "orchestrator.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    architecture: str = ""
    tech_stack: list[str] = field(default_factory=list)
    guidelines_path: str = ""


@dataclass(slots=True)
class AgentConfig:
    primary: AgentName = "claude"
    binary: str = ""
    timeout_seconds: float = 600.0
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0
    validate_results: bool = True

    def resolved_binary(self) -> str:
        return self.binary or self.primary


@dataclass(slots=True)
class GitConfig:
    enabled: bool = True
    auto_commit: bool = True
    branch_prefix: str = "impl"


@dataclass(slots=True)
class ExecutionConfig:
    stop_on_failure: bool = True
    event_drain_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class OrchestratorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    git: GitConfig = field(default_factory=GitConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            agent=AgentConfig(**data.get("agent", {})),
            git=GitConfig(**data.get("git", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "architecture": self.project.architecture,
                "tech_stack": list(self.project.tech_stack),
                "guidelines_path": self.project.guidelines_path,
            },
            "agent": {
                "primary": self.agent.primary,
                "binary": self.agent.binary,
                "timeout_seconds": self.agent.timeout_seconds,
                "max_retries": self.agent.max_retries,
                "retry_backoff_seconds": self.agent.retry_backoff_seconds,
                "validate_results": self.agent.validate_results,
            },
            "git": {
                "enabled": self.git.enabled,
                "auto_commit": self.git.auto_commit,
                "branch_prefix": self.git.branch_prefix,
            },
            "execution": {
                "stop_on_failure": self.execution.stop_on_failure,
                "event_drain_timeout_seconds": self.execution.event_drain_timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "agent", "git", "execution", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrchestratorConfig:
    if not path.exists():
        return OrchestratorConfig.default()
    return OrchestratorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
