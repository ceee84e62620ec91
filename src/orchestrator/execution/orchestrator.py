from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from orchestrator.adapters.base import AgentAdapter
from orchestrator.errors import GitError
from orchestrator.events import EventChannel, EventListener
from orchestrator.execution.phase_executor import PhaseExecutionResult, PhaseExecutor
from orchestrator.execution.prompts import ProjectContext
from orchestrator.execution.task_executor import RetryPolicy
from orchestrator.models import (
    ImplementationPhase,
    OrchestrationEvent,
    OrchestrationEventType,
    TaskEventType,
    TaskExecutionEvent,
)
from orchestrator.state.store import ProjectStateStore
from orchestrator.vcs.checkpoints import CheckpointManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_PHASES_WARNING = "No implementation phases to execute"

_TASK_EVENT_TYPES = {
    TaskEventType.START: OrchestrationEventType.TASK_START,
    TaskEventType.PROGRESS: OrchestrationEventType.TASK_PROGRESS,
    TaskEventType.VALIDATE: OrchestrationEventType.TASK_PROGRESS,
    TaskEventType.RETRY: OrchestrationEventType.TASK_RETRY,
    TaskEventType.COMPLETE: OrchestrationEventType.TASK_COMPLETE,
    TaskEventType.FAILED: OrchestrationEventType.TASK_FAILED,
}


@dataclass(slots=True)
class ExecutionOptions:
    start_phase: int | None = None
    end_phase: int | None = None
    dry_run: bool = False
    stop_on_failure: bool = True
    timeout_seconds: float = 600.0
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0
    validate_results: bool = True
    event_drain_timeout_seconds: float = 5.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max(0, int(self.max_retries)),
            backoff_seconds=max(0.0, float(self.retry_backoff_seconds)),
            timeout_seconds=float(self.timeout_seconds),
        )


@dataclass(slots=True)
class OrchestrationResult:
    success: bool
    aborted: bool = False
    phases_completed: int = 0
    phases_failed: int = 0
    total_tasks: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    duration_seconds: float = 0.0
    phase_results: list[PhaseExecutionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "phases_completed": self.phases_completed,
            "phases_failed": self.phases_failed,
            "total_tasks": self.total_tasks,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "duration_seconds": round(self.duration_seconds, 3),
            "phase_results": [result.to_dict() for result in self.phase_results],
            "warnings": list(self.warnings),
        }


class Orchestrator:
    """Runs implementation phases in order and turns progress into events.

    A successful phase is approved in the project state and checkpointed in
    git before the next one starts. With ``stop_on_failure`` the first failed
    phase ends the run and later phases are not attempted.
    """

    def __init__(
        self,
        store: ProjectStateStore,
        adapter: AgentAdapter,
        *,
        project: ProjectContext,
        checkpoints: CheckpointManager | None = None,
        options: ExecutionOptions | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.project = project
        self.checkpoints = checkpoints
        self.options = options or ExecutionOptions()
        self.events = events or EventChannel()
        self._aborted = False
        self._active_phase: PhaseExecutor | None = None
        self._started = time.monotonic()

    def on(self, listener: EventListener) -> Callable[[], None]:
        return self.events.on(listener)

    def abort(self) -> None:
        if self._aborted:
            return
        logger.warning("Abort requested")
        self._aborted = True
        if self._active_phase is not None:
            self._active_phase.abort()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _publish(
        self,
        event_type: OrchestrationEventType,
        *,
        phase_number: int | None = None,
        task_id: str | None = None,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        self.events.publish(
            OrchestrationEvent(
                type=event_type,
                phase_number=phase_number,
                task_id=task_id,
                message=message,
                elapsed_seconds=time.monotonic() - self._started,
                data=dict(data or {}),
            )
        )

    def _task_event_hook(self, phase_number: int) -> Callable[[TaskExecutionEvent], None]:
        def forward(event: TaskExecutionEvent) -> None:
            data: dict[str, Any] = {"attempt": event.attempt}
            if event.result is not None:
                data["status"] = str(event.result.status)
                data["failure_kind"] = (
                    str(event.result.failure_kind) if event.result.failure_kind else None
                )
            if event.type is TaskEventType.VALIDATE:
                data["stage"] = "validate"
            self._publish(
                _TASK_EVENT_TYPES[event.type],
                phase_number=phase_number,
                task_id=event.task_id,
                message=event.message,
                data=data,
            )

        return forward

    async def _best_effort(
        self, action: str, operation: Callable[[CheckpointManager], Awaitable[T]]
    ) -> T | None:
        if self.checkpoints is None:
            return None
        try:
            return await operation(self.checkpoints)
        except GitError as exc:
            logger.warning("Git %s failed: %s", action, exc)
            return None

    def _phases_in_scope(self) -> list[ImplementationPhase]:
        start = self.options.start_phase
        end = self.options.end_phase
        return [
            phase
            for phase in self.store.phases()
            if (start is None or phase.phase_number >= start)
            and (end is None or phase.phase_number <= end)
        ]

    def _next_phase_number(self, phase_number: int) -> int:
        later = [
            phase.phase_number
            for phase in self.store.phases()
            if phase.phase_number > phase_number
        ]
        return min(later) if later else phase_number + 1

    async def _run_phase(self, phase: ImplementationPhase) -> PhaseExecutionResult:
        await self._best_effort(
            "branch checkout",
            lambda manager: manager.start_impl_phase(phase.phase_number, phase.name),
        )
        self.store.set_current_impl_phase(phase.phase_number)
        executor = PhaseExecutor(
            phase.phase_number,
            store=self.store,
            adapter=self.adapter,
            project=self.project,
            checkpoints=self.checkpoints,
            retry_policy=self.options.retry_policy(),
            validate_results=self.options.validate_results,
            event_hook=self._task_event_hook(phase.phase_number),
        )
        self._active_phase = executor
        try:
            if self._aborted:
                executor.abort()
            return await executor.execute()
        finally:
            self._active_phase = None

    async def execute(self) -> OrchestrationResult:
        try:
            return await self._execute()
        finally:
            # A finished run consumes any pending abort request.
            self._aborted = False

    async def _execute(self) -> OrchestrationResult:
        self._started = time.monotonic()
        phases = self._phases_in_scope()
        if not phases:
            logger.warning(NO_PHASES_WARNING)
            return OrchestrationResult(success=True, warnings=[NO_PHASES_WARNING])

        result = OrchestrationResult(
            success=False,
            total_tasks=sum(len(phase.tasks) for phase in phases),
        )
        self._publish(
            OrchestrationEventType.ORCHESTRATION_START,
            message=f"Executing {len(phases)} phase(s)",
            data={
                "phases": [phase.phase_number for phase in phases],
                "dry_run": self.options.dry_run,
            },
        )
        if not self.options.dry_run:
            await self._best_effort("ensure clean", lambda manager: manager.ensure_clean())

        for phase in phases:
            if self._aborted:
                break
            self._publish(
                OrchestrationEventType.PHASE_START,
                phase_number=phase.phase_number,
                message=phase.name,
                data={"tasks": len(phase.tasks)},
            )

            if self.options.dry_run:
                logger.info("Dry run: would execute phase %d", phase.phase_number)
                result.phases_completed += 1
                result.phase_results.append(
                    PhaseExecutionResult(
                        phase_number=phase.phase_number,
                        phase_name=phase.name,
                        success=True,
                    )
                )
                self._publish(
                    OrchestrationEventType.PHASE_COMPLETE,
                    phase_number=phase.phase_number,
                    message=phase.name,
                    data={"dry_run": True},
                )
                continue

            phase_result = await self._run_phase(phase)
            result.phase_results.append(phase_result)
            result.tasks_completed += phase_result.tasks_completed
            result.tasks_failed += phase_result.tasks_failed
            if phase_result.aborted:
                self._aborted = True
                break

            if phase_result.success:
                self.store.approve_phase(phase.key)
                await self._best_effort(
                    "checkpoint",
                    lambda manager: manager.checkpoint(
                        f"Phase {phase.phase_number} complete: {phase.name}"
                    ),
                )
                self.store.set_current_impl_phase(self._next_phase_number(phase.phase_number))
                result.phases_completed += 1
                logger.info("Phase %d complete", phase.phase_number)
                self._publish(
                    OrchestrationEventType.PHASE_COMPLETE,
                    phase_number=phase.phase_number,
                    message=phase.name,
                    data=phase_result.to_dict(),
                )
                continue

            result.phases_failed += 1
            reason = (
                "; ".join(phase_result.issues)
                if phase_result.issues
                else f"{phase_result.tasks_failed} failed, "
                f"{len(phase_result.blocked_task_ids)} blocked"
            )
            logger.warning("Phase %d failed: %s", phase.phase_number, reason)
            self._publish(
                OrchestrationEventType.PHASE_FAILED,
                phase_number=phase.phase_number,
                message=reason,
                data=phase_result.to_dict(),
            )
            if self.options.stop_on_failure:
                break

        result.aborted = self._aborted
        result.success = result.phases_failed == 0 and not self._aborted
        result.duration_seconds = time.monotonic() - self._started
        self._publish(
            OrchestrationEventType.ORCHESTRATION_ABORTED
            if self._aborted
            else OrchestrationEventType.ORCHESTRATION_COMPLETE,
            message=(
                f"{result.phases_completed} phase(s) completed, "
                f"{result.phases_failed} failed"
            ),
            data=result.to_dict(),
        )
        await self.events.flush(self.options.event_drain_timeout_seconds)
        return result

    async def resume(self) -> OrchestrationResult:
        original = self.options
        self.options = replace(original, start_phase=self.store.current_impl_phase())
        try:
            return await self.execute()
        finally:
            self.options = original
