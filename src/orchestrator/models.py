from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_SUCCESS = frozenset({TaskStatus.COMPLETE, TaskStatus.SKIPPED})


class FailureKind(StrEnum):
    TIMEOUT = "timeout"
    EXECUTION_FAILED = "execution_failed"
    PARSE_ERROR = "parse_error"
    CRITERIA_NOT_MET = "criteria_not_met"
    VALIDATOR_FAILED = "validator_failed"
    ABORTED = "aborted"

    @property
    def retriable(self) -> bool:
        return self is not FailureKind.ABORTED


@dataclass(slots=True)
class Task:
    id: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    failure_reason: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float | None = None
    commit_hash: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "depends_on": list(self.depends_on),
            "status": str(self.status),
            "failure_reason": self.failure_reason,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "commit_hash": self.commit_hash,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        duration = payload.get("duration_seconds")
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            acceptance_criteria=[str(item) for item in payload.get("acceptance_criteria", [])],
            depends_on=[str(item) for item in payload.get("depends_on", [])],
            status=TaskStatus(payload.get("status", TaskStatus.PENDING)),
            failure_reason=payload.get("failure_reason"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            duration_seconds=float(duration) if duration is not None else None,
            commit_hash=payload.get("commit_hash"),
            attempts=int(payload.get("attempts", 0)),
        )


@dataclass(slots=True)
class ImplementationPhase:
    phase_number: int
    name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"impl-{self.phase_number}"

    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "name": self.name,
            "description": self.description,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ImplementationPhase:
        return cls(
            phase_number=int(payload["phase_number"]),
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "")),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
        )


@dataclass(frozen=True, slots=True)
class KeyDecision:
    decision: str
    rationale: str = ""


@dataclass(frozen=True, slots=True)
class CriterionResult:
    index: int
    criterion: str
    met: bool
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    passed: bool
    validator_output: str
    criteria_checked: int = 0
    criteria_passed: int = 0
    summary: str = ""


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of one task attempt series. Superseded, never mutated, on retry."""

    task_id: str
    status: TaskStatus
    task_description: str = ""
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str = field(default_factory=utcnow_iso)
    duration_seconds: float = 0.0
    summary: str = ""
    files_created: tuple[str, ...] = ()
    files_modified: tuple[str, ...] = ()
    files_deleted: tuple[str, ...] = ()
    key_decisions: tuple[KeyDecision, ...] = ()
    assumptions: tuple[str, ...] = ()
    tests_added: int = 0
    tests_passing: int = 0
    tests_failing: int = 0
    acceptance_criteria: tuple[CriterionResult, ...] = ()
    validation: ValidationOutcome | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    failure_kind: FailureKind | None = None
    failure_reason: str | None = None
    commit_hash: str | None = None
    attempts: int = 1
    raw_output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.COMPLETE

    def with_updates(self, **changes: Any) -> TaskResult:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        validation = None
        if self.validation is not None:
            validation = {
                "passed": self.validation.passed,
                "validator_output": self.validation.validator_output,
                "criteria_checked": self.validation.criteria_checked,
                "criteria_passed": self.validation.criteria_passed,
                "summary": self.validation.summary,
            }
        return {
            "task_id": self.task_id,
            "task_description": self.task_description,
            "status": str(self.status),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "summary": self.summary,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "key_decisions": [
                {"decision": item.decision, "rationale": item.rationale}
                for item in self.key_decisions
            ],
            "assumptions": list(self.assumptions),
            "tests_added": self.tests_added,
            "tests_passing": self.tests_passing,
            "tests_failing": self.tests_failing,
            "acceptance_criteria": [
                {
                    "index": item.index,
                    "criterion": item.criterion,
                    "met": item.met,
                    "notes": item.notes,
                }
                for item in self.acceptance_criteria
            ],
            "validation": validation,
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "failure_kind": str(self.failure_kind) if self.failure_kind else None,
            "failure_reason": self.failure_reason,
            "commit_hash": self.commit_hash,
            "attempts": self.attempts,
            "raw_output": self.raw_output,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskResult:
        validation_payload = payload.get("validation")
        validation = None
        if isinstance(validation_payload, dict):
            validation = ValidationOutcome(
                passed=bool(validation_payload.get("passed", False)),
                validator_output=str(validation_payload.get("validator_output", "")),
                criteria_checked=int(validation_payload.get("criteria_checked", 0)),
                criteria_passed=int(validation_payload.get("criteria_passed", 0)),
                summary=str(validation_payload.get("summary", "")),
            )
        failure_kind = payload.get("failure_kind")
        return cls(
            task_id=str(payload["task_id"]),
            status=TaskStatus(payload["status"]),
            task_description=str(payload.get("task_description", "")),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            completed_at=str(payload.get("completed_at") or utcnow_iso()),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            summary=str(payload.get("summary", "")),
            files_created=tuple(payload.get("files_created", [])),
            files_modified=tuple(payload.get("files_modified", [])),
            files_deleted=tuple(payload.get("files_deleted", [])),
            key_decisions=tuple(
                KeyDecision(
                    decision=str(item.get("decision", "")),
                    rationale=str(item.get("rationale", "")),
                )
                for item in payload.get("key_decisions", [])
                if isinstance(item, dict)
            ),
            assumptions=tuple(payload.get("assumptions", [])),
            tests_added=int(payload.get("tests_added", 0)),
            tests_passing=int(payload.get("tests_passing", 0)),
            tests_failing=int(payload.get("tests_failing", 0)),
            acceptance_criteria=tuple(
                CriterionResult(
                    index=int(item.get("index", 0)),
                    criterion=str(item.get("criterion", "")),
                    met=bool(item.get("met", False)),
                    notes=item.get("notes"),
                )
                for item in payload.get("acceptance_criteria", [])
                if isinstance(item, dict)
            ),
            validation=validation,
            tokens_used=int(payload.get("tokens_used", 0)),
            cost_usd=float(payload.get("cost_usd", 0.0)),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            failure_reason=payload.get("failure_reason"),
            commit_hash=payload.get("commit_hash"),
            attempts=int(payload.get("attempts", 1)),
            raw_output=str(payload.get("raw_output", "")),
        )


class OrchestrationEventType(StrEnum):
    ORCHESTRATION_START = "orchestration_start"
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    PHASE_FAILED = "phase_failed"
    TASK_START = "task_start"
    TASK_PROGRESS = "task_progress"
    TASK_RETRY = "task_retry"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    ORCHESTRATION_COMPLETE = "orchestration_complete"
    ORCHESTRATION_ABORTED = "orchestration_aborted"


@dataclass(frozen=True, slots=True)
class OrchestrationEvent:
    type: OrchestrationEventType
    phase_number: int | None = None
    task_id: str | None = None
    message: str = ""
    elapsed_seconds: float = 0.0
    timestamp: str = field(default_factory=utcnow_iso)
    data: dict[str, Any] = field(default_factory=dict)


class TaskEventType(StrEnum):
    START = "start"
    PROGRESS = "progress"
    VALIDATE = "validate"
    RETRY = "retry"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TaskExecutionEvent:
    type: TaskEventType
    task_id: str
    attempt: int = 1
    message: str = ""
    result: TaskResult | None = None
