from __future__ import annotations

from typing import Any


class OrchestratorError(RuntimeError):
    """Base class for every error raised by the orchestration engine."""

    code = "ORCHESTRATOR_ERROR"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})

    @property
    def kind(self) -> str | None:
        value = self.context.get("type")
        return value if isinstance(value, str) else None


class GraphError(OrchestratorError):
    code = "GRAPH_ERROR"

    @classmethod
    def invalid_plan(cls, issues: list[str]) -> GraphError:
        return cls(
            "Invalid dependency graph:\n" + "\n".join(f"- {issue}" for issue in issues),
            context={"type": "invalid_plan", "issues": list(issues)},
        )


class CircularDependencyError(GraphError):
    def __init__(self, cycles: list[list[str]]) -> None:
        rendered = "; ".join(" -> ".join([*cycle, cycle[0]]) for cycle in cycles if cycle)
        super().__init__(
            f"Cannot determine execution order: circular dependencies detected ({rendered})",
            context={"type": "circular", "cycles": [list(cycle) for cycle in cycles]},
        )
        self.cycles = [list(cycle) for cycle in cycles]


class TaskExecutionError(OrchestratorError):
    code = "TASK_EXEC_ERROR"

    @classmethod
    def timeout(cls, task_id: str, timeout_seconds: float) -> TaskExecutionError:
        return cls(
            f"Task {task_id} timed out after {timeout_seconds:.1f}s",
            context={"type": "timeout", "task_id": task_id, "timeout_seconds": timeout_seconds},
        )

    @classmethod
    def execution_failed(
        cls, task_id: str, exit_code: int | None, stderr: str = ""
    ) -> TaskExecutionError:
        message = f"Task {task_id} failed with exit code {exit_code}"
        if stderr:
            message = f"{message}: {stderr[:400]}"
        return cls(
            message,
            context={
                "type": "execution_failed",
                "task_id": task_id,
                "exit_code": exit_code,
                "stderr": stderr,
            },
        )

    @classmethod
    def parse_error(cls, task_id: str, details: str) -> TaskExecutionError:
        return cls(
            f"Failed to parse result for task {task_id}: {details}",
            context={"type": "parse_error", "task_id": task_id, "details": details},
        )

    @classmethod
    def aborted(cls, task_id: str) -> TaskExecutionError:
        return cls(
            f"Task {task_id} was aborted",
            context={"type": "aborted", "task_id": task_id},
        )


class ValidationError(OrchestratorError):
    code = "VALIDATION_ERROR"

    @classmethod
    def criteria_not_met(cls, task_id: str, failed_criteria: list[str]) -> ValidationError:
        listed = "; ".join(failed_criteria)
        return cls(
            f"Task {task_id} did not meet acceptance criteria: {listed}",
            context={
                "type": "criteria_not_met",
                "task_id": task_id,
                "failed_criteria": list(failed_criteria),
            },
        )

    @classmethod
    def validator_failed(cls, task_id: str, details: str) -> ValidationError:
        return cls(
            f"Validation failed for task {task_id}: {details}",
            context={"type": "validator_failed", "task_id": task_id, "details": details},
        )


class StateError(OrchestratorError):
    code = "STATE_ERROR"

    @classmethod
    def not_initialized(cls, path: str) -> StateError:
        return cls(
            f"No orchestrator state found at {path}. Run `orchestrator init` first.",
            context={"type": "not_initialized", "path": path},
        )

    @classmethod
    def task_not_found(cls, task_id: str) -> StateError:
        return cls(
            f"Task not found: {task_id}",
            context={"type": "task_not_found", "task_id": task_id},
        )

    @classmethod
    def phase_not_found(cls, phase_number: int) -> StateError:
        return cls(
            f"Implementation phase not found: {phase_number}",
            context={"type": "phase_not_found", "phase_number": phase_number},
        )

    @classmethod
    def task_not_failed(cls, task_id: str, current_status: str) -> StateError:
        return cls(
            f"Task {task_id} is not in failed status (current: {current_status}). "
            "Only failed tasks can be retried.",
            context={
                "type": "task_not_failed",
                "task_id": task_id,
                "current_status": current_status,
            },
        )

    @classmethod
    def invalid_transition(cls, task_id: str, current: str, target: str) -> StateError:
        return cls(
            f"Invalid status transition for task {task_id}: {current} -> {target}",
            context={
                "type": "invalid_transition",
                "task_id": task_id,
                "from": current,
                "to": target,
            },
        )

    @classmethod
    def duplicate_task(cls, task_id: str) -> StateError:
        return cls(
            f"Duplicate task id in plan: {task_id}",
            context={"type": "duplicate_task", "task_id": task_id},
        )

    @classmethod
    def duplicate_phase(cls, phase_number: int) -> StateError:
        return cls(
            f"Duplicate implementation phase number in plan: {phase_number}",
            context={"type": "duplicate_phase", "phase_number": phase_number},
        )

    @classmethod
    def concurrent_update(cls, namespace: str) -> StateError:
        return cls(
            f"Concurrent state update detected for namespace '{namespace}'.",
            context={"type": "concurrent_update", "namespace": namespace},
        )

    @classmethod
    def lock_timeout(cls, path: str) -> StateError:
        return cls(
            f"Timed out waiting for state lock: {path}",
            context={"type": "lock_timeout", "path": path},
        )


class GitError(OrchestratorError):
    code = "GIT_ERROR"

    @classmethod
    def not_repo(cls, path: str) -> GitError:
        return cls(f"Not a git repository: {path}", context={"type": "not_repo", "path": path})

    @classmethod
    def operation_failed(cls, operation: str, details: str) -> GitError:
        return cls(
            f"Git {operation} failed: {details}",
            context={"type": "operation_failed", "operation": operation, "details": details},
        )
