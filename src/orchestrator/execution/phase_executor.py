from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from orchestrator.adapters.base import AgentAdapter
from orchestrator.errors import GitError
from orchestrator.execution.prompts import ProjectContext
from orchestrator.execution.task_executor import RetryPolicy, TaskEventHook, TaskExecutor
from orchestrator.graph import DependencyResolver
from orchestrator.models import (
    TERMINAL_SUCCESS,
    FailureKind,
    ImplementationPhase,
    TaskResult,
    TaskStatus,
)
from orchestrator.state.store import ProjectStateStore
from orchestrator.vcs.checkpoints import CheckpointManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PhaseExecutionResult:
    phase_number: int
    phase_name: str
    success: bool
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    blocked_task_ids: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    results: list[TaskResult] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> dict:
        return {
            "phase_number": self.phase_number,
            "phase_name": self.phase_name,
            "success": self.success,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_skipped": self.tasks_skipped,
            "blocked_task_ids": list(self.blocked_task_ids),
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [
                {
                    "task_id": result.task_id,
                    "status": str(result.status),
                    "attempts": result.attempts,
                    "failure_reason": result.failure_reason,
                    "commit_hash": result.commit_hash,
                }
                for result in self.results
            ],
            "issues": list(self.issues),
            "aborted": self.aborted,
        }


class PhaseExecutor:
    """Runs every runnable task of one implementation phase, in id order.

    Tasks whose dependencies never reach ``complete`` or ``skipped`` stay
    ``pending`` and are reported as blocked. ``tasks_skipped`` counts both
    blocked tasks and tasks skipped by hand.
    """

    def __init__(
        self,
        phase_number: int,
        *,
        store: ProjectStateStore,
        adapter: AgentAdapter,
        project: ProjectContext,
        checkpoints: CheckpointManager | None = None,
        retry_policy: RetryPolicy | None = None,
        validate_results: bool = True,
        event_hook: TaskEventHook | None = None,
    ) -> None:
        self.phase_number = phase_number
        self.store = store
        self.project = project
        self.checkpoints = checkpoints
        self.retry_policy = retry_policy or RetryPolicy()
        phase = store.get_phase(phase_number)
        self.task_executor = TaskExecutor(
            adapter,
            project.for_phase(phase.phase_number, phase.name),
            retry_policy=self.retry_policy,
            validate_results=validate_results,
            event_hook=event_hook,
        )
        self._aborted = False

    def abort(self) -> None:
        self._aborted = True
        self.task_executor.abort()

    def _external_ids(self, phase: ImplementationPhase) -> tuple[set[str], set[str]]:
        own = set(phase.task_ids())
        satisfied: set[str] = set()
        known: set[str] = set()
        for task in self.store.all_tasks():
            if task.id in own:
                continue
            known.add(task.id)
            if task.status in TERMINAL_SUCCESS:
                satisfied.add(task.id)
        return satisfied, known

    def _resolver(self) -> tuple[ImplementationPhase, DependencyResolver]:
        phase = self.store.get_phase(self.phase_number)
        satisfied, known = self._external_ids(phase)
        return phase, DependencyResolver(phase.tasks, satisfied, known_external=known)

    async def _commit(self, task_id: str, result: TaskResult) -> str | None:
        if self.checkpoints is None:
            return None
        try:
            return await self.checkpoints.commit_task(task_id, result)
        except GitError as exc:
            logger.warning("Checkpoint commit for task %s failed: %s", task_id, exc)
            return None

    def _persist(self, result: TaskResult) -> None:
        if result.failure_kind is FailureKind.ABORTED:
            self.store.set_task_status(result.task_id, TaskStatus.PENDING)
        else:
            self.store.set_task_status(
                result.task_id, result.status, failure_reason=result.failure_reason
            )
        self.store.append_result(result)

    async def execute(self) -> PhaseExecutionResult:
        started = time.monotonic()
        phase = self.store.get_phase(self.phase_number)
        self.store.reset_in_progress(phase.task_ids())

        phase, resolver = self._resolver()
        report = resolver.validate()
        if not report.valid:
            issues = report.messages()
            for issue in issues:
                logger.warning("Phase %d: %s", phase.phase_number, issue)
            return PhaseExecutionResult(
                phase_number=phase.phase_number,
                phase_name=phase.name,
                success=False,
                duration_seconds=time.monotonic() - started,
                issues=issues,
            )

        logger.info("Executing phase %d: %s", phase.phase_number, phase.name)
        results: list[TaskResult] = []
        while not self._aborted:
            phase, resolver = self._resolver()
            task = resolver.get_next_runnable()
            if task is None:
                break

            self.store.set_task_status(task.id, TaskStatus.IN_PROGRESS)
            previous = [item for item in phase.tasks if item.status is TaskStatus.COMPLETE]
            self.task_executor.context = self.project.for_phase(
                phase.phase_number, phase.name, previous
            )
            result = await self.task_executor.execute_with_retry(task)
            if result.succeeded:
                commit_hash = await self._commit(task.id, result)
                if commit_hash:
                    result = result.with_updates(commit_hash=commit_hash)
            self._persist(result)
            results.append(result)
            if result.failure_kind is FailureKind.ABORTED:
                self._aborted = True

        phase, resolver = self._resolver()
        counts = {status: 0 for status in TaskStatus}
        for task in phase.tasks:
            counts[task.status] += 1
        blocked = [task.id for task in phase.tasks if task.status is TaskStatus.PENDING]
        if blocked and not self._aborted:
            for task_id in blocked:
                logger.warning(
                    "Task %s blocked by %s",
                    task_id,
                    ", ".join(resolver.get_blocking_deps(task_id)) or "unknown dependencies",
                )

        failed = counts[TaskStatus.FAILED]
        success = not self._aborted and failed == 0 and not blocked
        return PhaseExecutionResult(
            phase_number=phase.phase_number,
            phase_name=phase.name,
            success=success,
            tasks_completed=counts[TaskStatus.COMPLETE],
            tasks_failed=failed,
            tasks_skipped=counts[TaskStatus.SKIPPED] + len(blocked),
            blocked_task_ids=blocked,
            duration_seconds=time.monotonic() - started,
            results=results,
            aborted=self._aborted,
        )
