import asyncio
import re
from pathlib import Path
from typing import Any

import pytest

from orchestrator.adapters.base import AgentAdapter, AgentExecutionResult, ChunkCallback
from orchestrator.execution.orchestrator import (
    NO_PHASES_WARNING,
    ExecutionOptions,
    Orchestrator,
)
from orchestrator.execution.phase_executor import PhaseExecutor
from orchestrator.execution.prompts import ProjectContext
from orchestrator.models import (
    ImplementationPhase,
    OrchestrationEvent,
    OrchestrationEventType,
    Task,
    TaskStatus,
)
from orchestrator.state import ProjectStateStore
from orchestrator.vcs import CheckpointManager, GitClient

_TASK_HEADING = re.compile(r"^## Task (\S+)$", re.MULTILINE)


class PlanAdapter(AgentAdapter):
    name = "plan"

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.task_ids: list[str] = []
        self.on_task: Any = None

    async def execute_stream(
        self, prompt: str, on_chunk: ChunkCallback | None
    ) -> AgentExecutionResult:
        match = _TASK_HEADING.search(prompt)
        assert match is not None
        self.task_ids.append(match.group(1))
        if self.on_task is not None:
            self.on_task(match.group(1))
        if match.group(1) in self.failing:
            return AgentExecutionResult(success=False, output="", exit_code=1, error="crashed")
        return AgentExecutionResult(success=True, output="## Task Complete\nDone.\n")

    def abort(self) -> None:
        return None

    def is_running(self) -> bool:
        return False


def _store(tmp_path: Path, with_phases: bool = True) -> ProjectStateStore:
    store = ProjectStateStore(tmp_path)
    store.initialize("ledger")
    if with_phases:
        store.add_phases(
            [
                ImplementationPhase(
                    phase_number=1,
                    name="Core",
                    tasks=[
                        Task(id="1.1", description="Models"),
                        Task(id="1.2", description="Storage", depends_on=["1.1"]),
                    ],
                ),
                ImplementationPhase(
                    phase_number=2,
                    name="API",
                    tasks=[Task(id="2.1", description="Routes")],
                ),
            ]
        )
    return store


def _orchestrator(
    store: ProjectStateStore,
    adapter: AgentAdapter,
    checkpoints: CheckpointManager | None = None,
    **options: Any,
) -> tuple[Orchestrator, list[OrchestrationEvent]]:
    options.setdefault("max_retries", 0)
    options.setdefault("retry_backoff_seconds", 0.0)
    options.setdefault("validate_results", False)
    orchestrator = Orchestrator(
        store,
        adapter,
        project=ProjectContext(name="ledger"),
        checkpoints=checkpoints,
        options=ExecutionOptions(**options),
    )
    events: list[OrchestrationEvent] = []
    orchestrator.on(events.append)
    return orchestrator, events


def _types(events: list[OrchestrationEvent]) -> list[OrchestrationEventType]:
    return [event.type for event in events]


def test_runs_every_phase_and_approves_it(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter()
    orchestrator, events = _orchestrator(store, adapter)

    result = asyncio.run(orchestrator.execute())

    assert result.success is True
    assert result.phases_completed == 2
    assert result.total_tasks == 3
    assert result.tasks_completed == 3
    assert adapter.task_ids == ["1.1", "1.2", "2.1"]
    assert store.is_approved("impl-1") and store.is_approved("impl-2")
    assert store.current_impl_phase() == 3
    assert store.totals()["completed_phases"] == 2

    types = _types(events)
    assert types[0] is OrchestrationEventType.ORCHESTRATION_START
    assert types[-1] is OrchestrationEventType.ORCHESTRATION_COMPLETE
    assert types.count(OrchestrationEventType.PHASE_START) == 2
    assert types.count(OrchestrationEventType.PHASE_COMPLETE) == 2
    assert types.count(OrchestrationEventType.TASK_COMPLETE) == 3
    task_start = next(e for e in events if e.type is OrchestrationEventType.TASK_START)
    assert (task_start.phase_number, task_start.task_id) == (1, "1.1")


def test_stop_on_failure_halts_after_first_failed_phase(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    constructed: list[int] = []

    class CountingPhaseExecutor(PhaseExecutor):
        def __init__(self, phase_number: int, **kwargs: Any) -> None:
            constructed.append(phase_number)
            super().__init__(phase_number, **kwargs)

    monkeypatch.setattr(
        "orchestrator.execution.orchestrator.PhaseExecutor", CountingPhaseExecutor
    )
    store = _store(tmp_path)
    orchestrator, events = _orchestrator(store, PlanAdapter(failing={"1.1"}))

    result = asyncio.run(orchestrator.execute())

    assert constructed == [1]
    assert result.success is False
    assert result.phases_failed == 1
    assert result.tasks_failed == 1
    assert store.is_approved("impl-1") is False
    assert store.current_impl_phase() == 1
    assert OrchestrationEventType.PHASE_FAILED in _types(events)
    assert _types(events)[-1] is OrchestrationEventType.ORCHESTRATION_COMPLETE


def test_continue_on_failure_attempts_later_phases(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter(failing={"1.1"})
    orchestrator, _ = _orchestrator(store, adapter, stop_on_failure=False)

    result = asyncio.run(orchestrator.execute())

    assert adapter.task_ids == ["1.1", "2.1"]
    assert result.phases_failed == 1
    assert result.phases_completed == 1
    assert result.success is False
    assert store.is_approved("impl-2") is True


def test_dry_run_never_calls_adapter(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter()
    orchestrator, events = _orchestrator(store, adapter, dry_run=True)

    result = asyncio.run(orchestrator.execute())

    assert adapter.task_ids == []
    assert result.success is True
    assert result.phases_completed == 2
    assert all(task.status is TaskStatus.PENDING for task in store.all_tasks())
    assert store.is_approved("impl-1") is False
    assert _types(events).count(OrchestrationEventType.PHASE_COMPLETE) == 2


def test_no_phases_is_a_warning(tmp_path: Path) -> None:
    orchestrator, events = _orchestrator(_store(tmp_path, with_phases=False), PlanAdapter())

    result = asyncio.run(orchestrator.execute())

    assert result.success is True
    assert result.warnings == [NO_PHASES_WARNING]
    assert events == []


def test_phase_range_is_respected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter()
    orchestrator, _ = _orchestrator(store, adapter, start_phase=2, end_phase=2)

    result = asyncio.run(orchestrator.execute())

    assert adapter.task_ids == ["2.1"]
    assert result.total_tasks == 1


def test_resume_starts_at_current_phase(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for task_id in ("1.1", "1.2"):
        store.set_task_status(task_id, TaskStatus.IN_PROGRESS)
        store.set_task_status(task_id, TaskStatus.COMPLETE)
    store.set_current_impl_phase(2)
    adapter = PlanAdapter()
    orchestrator, _ = _orchestrator(store, adapter)

    result = asyncio.run(orchestrator.resume())

    assert adapter.task_ids == ["2.1"]
    assert result.success is True
    assert orchestrator.options.start_phase is None


def test_abort_stops_the_run(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter()
    orchestrator, events = _orchestrator(store, adapter)
    adapter.on_task = lambda task_id: orchestrator.abort()

    result = asyncio.run(orchestrator.execute())

    assert adapter.task_ids == ["1.1"]
    assert result.aborted is True
    assert result.success is False
    assert store.get_task("1.1").status is TaskStatus.PENDING
    assert _types(events)[-1] is OrchestrationEventType.ORCHESTRATION_ABORTED
    assert OrchestrationEventType.PHASE_FAILED not in _types(events)


def test_git_failures_do_not_stop_the_run(tmp_path: Path) -> None:
    store = _store(tmp_path)
    checkpoints = CheckpointManager(GitClient(tmp_path))
    orchestrator, _ = _orchestrator(store, PlanAdapter(), checkpoints=checkpoints)

    result = asyncio.run(orchestrator.execute())

    assert result.success is True
    assert result.phases_completed == 2


def test_abort_before_run_is_honoured(tmp_path: Path) -> None:
    store = _store(tmp_path)
    adapter = PlanAdapter()
    orchestrator, events = _orchestrator(store, adapter)
    orchestrator.abort()

    result = asyncio.run(orchestrator.execute())

    assert adapter.task_ids == []
    assert result.aborted is True
    assert result.success is False
    assert _types(events)[-1] is OrchestrationEventType.ORCHESTRATION_ABORTED

    rerun = asyncio.run(orchestrator.execute())

    assert rerun.success is True
    assert adapter.task_ids == ["1.1", "1.2", "2.1"]
