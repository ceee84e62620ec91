from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from orchestrator.errors import StateError
from orchestrator.models import ImplementationPhase, Task, TaskResult, TaskStatus, utcnow_iso

logger = logging.getLogger(__name__)

GATES = (
    "ideation_complete",
    "ideation_approved",
    "spec_complete",
    "spec_approved",
    "planning_complete",
    "planning_approved",
)

# Stages whose approval also flips the matching ``<stage>_approved`` gate.
GATED_STAGES = {"ideation", "spec", "planning"}

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.PENDING, TaskStatus.SKIPPED}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


def _empty_project(name: str) -> dict[str, Any]:
    return {
        "name": name,
        "created_at": utcnow_iso(),
        "gates": {gate: False for gate in GATES},
        "approvals": [],
        "implementation": {"current_impl_phase": 1, "completed_phases": 0, "total_phases": 0},
        "cost": {"total_tokens": 0, "total_cost_usd": 0.0},
        "phases": [],
    }


class ProjectStateStore:
    """Durable project state kept as JSON envelopes under ``.orchestrator/state``.

    Every mutation is a read-modify-write of one namespace guarded by a lock
    file and an optimistic revision check, so two processes sharing a project
    directory cannot silently overwrite each other.
    """

    NAMESPACES = {"project", "results"}
    SCHEMA_VERSION = 1

    def __init__(self, project_root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.project_root = project_root.resolve()
        self.state_dir = self.project_root / ".orchestrator" / "state"
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in ProjectStateStore.NAMESPACES:
            raise StateError(
                f"Unsupported namespace: {namespace}",
                context={"type": "unsupported_namespace", "namespace": namespace},
            )

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @property
    def initialized(self) -> bool:
        return self._file("project").exists()

    @contextmanager
    def _state_lock(self):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateError.lock_timeout(str(self.lock_file)) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, temp_path = tempfile.mkstemp(prefix=f".{namespace}-", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_path, self._file(namespace))
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError.concurrent_update(namespace)
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: StateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateError as exc:
                if exc.kind != "concurrent_update":
                    raise
                last_error = exc
                time.sleep(0.01)
        raise last_error or StateError.concurrent_update(namespace)

    # Project document

    def initialize(self, name: str, *, force: bool = False) -> dict[str, Any]:
        if self.initialized and not force:
            return self.load()
        project = _empty_project(name)
        self.set_json("project", project)
        self.set_json("results", {"results": {}})
        logger.info("Initialized project state for %s at %s", name, self.state_dir)
        return project

    def load(self) -> dict[str, Any]:
        if not self.initialized:
            raise StateError.not_initialized(str(self.state_dir))
        project = self.get_json("project", default={})
        if not isinstance(project, dict):
            raise StateError.not_initialized(str(self.state_dir))
        return project

    def _update_project(self, mutate: Callable[[dict[str, Any]], Any]) -> Any:
        if not self.initialized:
            raise StateError.not_initialized(str(self.state_dir))
        outcome: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            project = payload if isinstance(payload, dict) else _empty_project("")
            outcome["value"] = mutate(project)
            return project

        self.update_json("project", _updater)
        return outcome.get("value")

    @staticmethod
    def _find_task(project: dict[str, Any], task_id: str) -> dict[str, Any]:
        for phase in project.get("phases", []):
            for task in phase.get("tasks", []):
                if task.get("id") == task_id:
                    return task
        raise StateError.task_not_found(task_id)

    # Phases and tasks

    def phases(self) -> list[ImplementationPhase]:
        phases = [ImplementationPhase.from_dict(item) for item in self.load().get("phases", [])]
        phases.sort(key=lambda phase: phase.phase_number)
        return phases

    def get_phase(self, phase_number: int) -> ImplementationPhase:
        for phase in self.phases():
            if phase.phase_number == phase_number:
                return phase
        raise StateError.phase_not_found(phase_number)

    def get_task(self, task_id: str) -> Task:
        return Task.from_dict(self._find_task(self.load(), task_id))

    def all_tasks(self) -> list[Task]:
        return [task for phase in self.phases() for task in phase.tasks]

    def add_phases(self, phases: Iterable[ImplementationPhase]) -> list[ImplementationPhase]:
        incoming = list(phases)

        def _mutate(project: dict[str, Any]) -> None:
            existing = project.setdefault("phases", [])
            phase_numbers = {int(item["phase_number"]) for item in existing}
            task_ids = {task["id"] for item in existing for task in item.get("tasks", [])}
            for phase in incoming:
                if phase.phase_number in phase_numbers:
                    raise StateError.duplicate_phase(phase.phase_number)
                phase_numbers.add(phase.phase_number)
                for task in phase.tasks:
                    if task.id in task_ids:
                        raise StateError.duplicate_task(task.id)
                    task_ids.add(task.id)
                existing.append(phase.to_dict())
            existing.sort(key=lambda item: int(item["phase_number"]))
            project["gates"]["planning_complete"] = True
            implementation = project.setdefault("implementation", {})
            implementation["total_phases"] = len(existing)
            implementation.setdefault("current_impl_phase", 1)
            implementation.setdefault("completed_phases", 0)
            if existing:
                implementation["current_impl_phase"] = max(
                    int(implementation["current_impl_phase"]),
                    int(existing[0]["phase_number"]),
                )

        self._update_project(_mutate)
        return incoming

    def set_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        failure_reason: str | None = None,
    ) -> Task:
        target = TaskStatus(status)

        def _mutate(project: dict[str, Any]) -> dict[str, Any]:
            task = self._find_task(project, task_id)
            current = TaskStatus(task.get("status", TaskStatus.PENDING))
            if target not in ALLOWED_TRANSITIONS[current]:
                raise StateError.invalid_transition(task_id, current, target)
            task["status"] = str(target)
            if target is TaskStatus.IN_PROGRESS:
                task["started_at"] = utcnow_iso()
                task["failure_reason"] = None
            elif target in (TaskStatus.COMPLETE, TaskStatus.FAILED):
                task["completed_at"] = utcnow_iso()
                task["failure_reason"] = failure_reason if target is TaskStatus.FAILED else None
            elif target is TaskStatus.SKIPPED:
                task["failure_reason"] = failure_reason
            elif target is TaskStatus.PENDING:
                task["started_at"] = None
            return dict(task)

        return Task.from_dict(self._update_project(_mutate))

    def reset_in_progress(self, task_ids: Iterable[str]) -> list[str]:
        wanted = set(task_ids)

        def _mutate(project: dict[str, Any]) -> list[str]:
            reset: list[str] = []
            for phase in project.get("phases", []):
                for task in phase.get("tasks", []):
                    if task.get("id") in wanted and task.get("status") == TaskStatus.IN_PROGRESS:
                        task["status"] = str(TaskStatus.PENDING)
                        task["started_at"] = None
                        reset.append(task["id"])
            return reset

        reset = self._update_project(_mutate)
        for task_id in reset:
            logger.info("Reset interrupted task %s to pending", task_id)
        return reset

    def retry_task(self, task_id: str) -> Task:
        def _mutate(project: dict[str, Any]) -> dict[str, Any]:
            task = self._find_task(project, task_id)
            status = str(task.get("status", TaskStatus.PENDING))
            if status != TaskStatus.FAILED:
                raise StateError.task_not_failed(task_id, status)
            task["status"] = str(TaskStatus.PENDING)
            for key in ("started_at", "completed_at", "duration_seconds", "failure_reason"):
                task[key] = None
            task["commit_hash"] = None
            return dict(task)

        task = Task.from_dict(self._update_project(_mutate))
        logger.info("Reset task %s for retry", task_id)
        return task

    def skip_task(self, task_id: str, reason: str) -> Task:
        return self.set_task_status(task_id, TaskStatus.SKIPPED, failure_reason=reason)

    # Results

    def append_result(self, result: TaskResult) -> None:
        """Store ``result`` as the latest outcome for its task.

        Earlier results for the same task stay in the history. The task's
        bookkeeping fields and the project cost totals follow the new result.
        """

        def _mutate(project: dict[str, Any]) -> None:
            task = self._find_task(project, result.task_id)
            task["completed_at"] = result.completed_at
            task["duration_seconds"] = result.duration_seconds
            task["attempts"] = int(task.get("attempts", 0)) + result.attempts
            task["commit_hash"] = result.commit_hash
            if result.failure_reason:
                task["failure_reason"] = result.failure_reason
            cost = project.setdefault("cost", {"total_tokens": 0, "total_cost_usd": 0.0})
            cost["total_tokens"] = int(cost.get("total_tokens", 0)) + result.tokens_used
            cost["total_cost_usd"] = float(cost.get("total_cost_usd", 0.0)) + result.cost_usd

        self._update_project(_mutate)

        def _updater(payload: Any) -> dict[str, Any]:
            document = payload if isinstance(payload, dict) else {"results": {}}
            history = document.setdefault("results", {}).setdefault(result.task_id, [])
            history.append(result.to_dict())
            return document

        self.update_json("results", _updater, default={"results": {}})

    def results_for(self, task_id: str) -> list[TaskResult]:
        document = self.get_json("results", default={"results": {}})
        if not isinstance(document, dict):
            return []
        history = document.get("results", {}).get(task_id, [])
        return [TaskResult.from_dict(item) for item in history if isinstance(item, dict)]

    def latest_result(self, task_id: str) -> TaskResult | None:
        history = self.results_for(task_id)
        return history[-1] if history else None

    # Gates, approvals and progress

    def approve_phase(self, phase_key: str, notes: str | None = None) -> None:
        def _mutate(project: dict[str, Any]) -> None:
            now = utcnow_iso()
            approvals = project.setdefault("approvals", [])
            existing = next((item for item in approvals if item.get("phase") == phase_key), None)
            if existing is None:
                approvals.append(
                    {"phase": phase_key, "status": "approved", "approved_at": now, "notes": notes}
                )
            else:
                existing.update({"status": "approved", "approved_at": now, "notes": notes})
            if phase_key in GATED_STAGES:
                project["gates"][f"{phase_key}_approved"] = True
            if phase_key.startswith("impl-"):
                implementation = project.setdefault("implementation", {})
                approved = [
                    item
                    for item in approvals
                    if str(item.get("phase", "")).startswith("impl-")
                    and item.get("status") == "approved"
                ]
                implementation["completed_phases"] = len(approved)

        self._update_project(_mutate)
        logger.info("Approved %s", phase_key)

    def is_approved(self, phase_key: str) -> bool:
        for item in self.load().get("approvals", []):
            if item.get("phase") == phase_key:
                return item.get("status") == "approved"
        return False

    def set_gate(self, gate: str, value: bool = True) -> None:
        if gate not in GATES:
            raise StateError(
                f"Unknown gate: {gate}", context={"type": "unknown_gate", "gate": gate}
            )

        def _mutate(project: dict[str, Any]) -> None:
            project.setdefault("gates", {})[gate] = value

        self._update_project(_mutate)

    def gates(self) -> dict[str, bool]:
        stored = self.load().get("gates", {})
        return {gate: bool(stored.get(gate, False)) for gate in GATES}

    def current_impl_phase(self) -> int:
        implementation = self.load().get("implementation", {})
        return int(implementation.get("current_impl_phase") or 1)

    def set_current_impl_phase(self, phase_number: int) -> None:
        def _mutate(project: dict[str, Any]) -> None:
            project.setdefault("implementation", {})["current_impl_phase"] = int(phase_number)

        self._update_project(_mutate)

    def totals(self) -> dict[str, Any]:
        project = self.load()
        counts = {str(status): 0 for status in TaskStatus}
        for phase in project.get("phases", []):
            for task in phase.get("tasks", []):
                status = str(task.get("status", TaskStatus.PENDING))
                counts[status] = counts.get(status, 0) + 1
        cost = project.get("cost", {})
        implementation = project.get("implementation", {})
        return {
            "total_tasks": sum(counts.values()),
            "tasks_by_status": counts,
            "total_phases": int(implementation.get("total_phases", 0)),
            "completed_phases": int(implementation.get("completed_phases", 0)),
            "current_impl_phase": int(implementation.get("current_impl_phase") or 1),
            "total_tokens": int(cost.get("total_tokens", 0)),
            "total_cost_usd": float(cost.get("total_cost_usd", 0.0)),
        }
