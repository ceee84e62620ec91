import asyncio
import re
import subprocess
from collections.abc import Callable
from pathlib import Path

from orchestrator.adapters.base import AgentAdapter, AgentExecutionResult, ChunkCallback
from orchestrator.execution.phase_executor import PhaseExecutor
from orchestrator.execution.prompts import ProjectContext
from orchestrator.execution.task_executor import RetryPolicy
from orchestrator.models import FailureKind, ImplementationPhase, Task, TaskStatus
from orchestrator.state import ProjectStateStore
from orchestrator.vcs import CheckpointManager, GitClient

_TASK_HEADING = re.compile(r"^## Task (\S+)$", re.MULTILINE)


class PlanAdapter(AgentAdapter):
    """Completes every task it is asked about unless told to fail it."""

    name = "plan"

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.task_ids: list[str] = []
        self.before_answer: Callable[[str], None] | None = None

    async def execute_stream(
        self, prompt: str, on_chunk: ChunkCallback | None
    ) -> AgentExecutionResult:
        match = _TASK_HEADING.search(prompt)
        assert match is not None
        task_id = match.group(1)
        self.task_ids.append(task_id)
        if self.before_answer is not None:
            self.before_answer(task_id)
        if task_id in self.failing:
            return AgentExecutionResult(success=True, output="I could not finish this one.")
        output = f"## Task Complete\n### Summary\nFinished {task_id}\n"
        return AgentExecutionResult(success=True, output=output, tokens_used=5)

    def abort(self) -> None:
        return None

    def is_running(self) -> bool:
        return False


def _store(tmp_path: Path, *phases: ImplementationPhase) -> ProjectStateStore:
    store = ProjectStateStore(tmp_path)
    store.initialize("ledger")
    store.add_phases(phases)
    return store


def _phase(number: int, *tasks: tuple[str, list[str]]) -> ImplementationPhase:
    return ImplementationPhase(
        phase_number=number,
        name=f"Phase {number}",
        tasks=[
            Task(id=task_id, description=f"Do {task_id}", depends_on=deps)
            for task_id, deps in tasks
        ],
    )


def _executor(
    store: ProjectStateStore,
    adapter: AgentAdapter,
    phase_number: int = 1,
    checkpoints: CheckpointManager | None = None,
) -> PhaseExecutor:
    return PhaseExecutor(
        phase_number,
        store=store,
        adapter=adapter,
        project=ProjectContext(name="ledger"),
        checkpoints=checkpoints,
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
        validate_results=False,
    )


def test_phase_runs_tasks_in_dependency_order(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.2", ["1.1"]), ("1.1", []), ("1.3", ["1.1"])))
    adapter = PlanAdapter()

    result = asyncio.run(_executor(store, adapter).execute())

    assert adapter.task_ids == ["1.1", "1.2", "1.3"]
    assert result.success is True
    assert result.tasks_completed == 3
    assert result.tasks_failed == 0
    assert result.blocked_task_ids == []
    assert all(task.status is TaskStatus.COMPLETE for task in store.get_phase(1).tasks)
    assert store.latest_result("1.2").summary == "Finished 1.2"
    assert store.totals()["total_tokens"] == 15


def test_failed_task_blocks_dependents_only(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", []), ("1.2", ["1.1"]), ("1.3", [])))
    adapter = PlanAdapter(failing={"1.1"})

    result = asyncio.run(_executor(store, adapter).execute())

    assert adapter.task_ids == ["1.1", "1.3"]
    assert result.success is False
    assert result.tasks_failed == 1
    assert result.tasks_completed == 1
    assert result.tasks_skipped == 1
    assert result.blocked_task_ids == ["1.2"]
    failed = store.get_task("1.1")
    assert failed.status is TaskStatus.FAILED
    assert "Task Complete" in failed.failure_reason
    assert store.get_task("1.2").status is TaskStatus.PENDING


def test_invalid_graph_runs_nothing(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", []), ("1.2", ["9.9"])))
    adapter = PlanAdapter()

    result = asyncio.run(_executor(store, adapter).execute())

    assert adapter.task_ids == []
    assert result.success is False
    assert any("non-existent task 9.9" in issue for issue in result.issues)


def test_interrupted_task_is_rerun(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", [])))
    store.set_task_status("1.1", TaskStatus.IN_PROGRESS)

    result = asyncio.run(_executor(store, PlanAdapter()).execute())

    assert result.success is True
    assert store.get_task("1.1").status is TaskStatus.COMPLETE


def test_dependency_on_unfinished_earlier_phase_blocks(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", [])), _phase(2, ("2.1", ["1.1"]), ("2.2", [])))
    adapter = PlanAdapter()

    result = asyncio.run(_executor(store, adapter, phase_number=2).execute())

    assert result.issues == []
    assert adapter.task_ids == ["2.2"]
    assert result.blocked_task_ids == ["2.1"]

    asyncio.run(_executor(store, adapter, phase_number=1).execute())
    result = asyncio.run(_executor(store, adapter, phase_number=2).execute())

    assert result.success is True
    assert adapter.task_ids == ["2.2", "1.1", "2.1"]


def test_abort_leaves_task_pending(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", []), ("1.2", [])))
    adapter = PlanAdapter()
    executor = _executor(store, adapter)
    adapter.before_answer = lambda task_id: executor.abort()

    result = asyncio.run(executor.execute())

    assert result.aborted is True
    assert result.success is False
    assert adapter.task_ids == ["1.1"]
    assert store.get_task("1.1").status is TaskStatus.PENDING
    assert store.latest_result("1.1").failure_kind is FailureKind.ABORTED


def test_completed_task_is_committed(tmp_path: Path) -> None:
    for cmd in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(cmd, cwd=tmp_path, check=True, text=True, capture_output=True)
    store = _store(tmp_path, _phase(1, ("1.1", [])))
    adapter = PlanAdapter()
    adapter.before_answer = lambda task_id: (tmp_path / f"{task_id}.txt").write_text("x\n")
    checkpoints = CheckpointManager(GitClient(tmp_path))

    result = asyncio.run(_executor(store, adapter, checkpoints=checkpoints).execute())

    commit_hash = result.results[0].commit_hash
    assert commit_hash is not None
    assert store.get_task("1.1").commit_hash == commit_hash
    assert GitClient(tmp_path).log(limit=1)[0].subject == "task-1.1: Finished 1.1"


def test_manually_skipped_tasks_count_as_skipped(tmp_path: Path) -> None:
    store = _store(tmp_path, _phase(1, ("1.1", []), ("1.2", ["1.1"])))
    store.skip_task("1.1", "done by hand")
    adapter = PlanAdapter()

    result = asyncio.run(_executor(store, adapter).execute())

    assert adapter.task_ids == ["1.2"]
    assert result.success is True
    assert result.tasks_completed == 1
    assert result.tasks_skipped == 1
    assert result.blocked_task_ids == []


def test_skipped_and_blocked_tasks_are_both_counted(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        _phase(1, ("1.1", []), ("1.2", ["1.1"]), ("1.3", []), ("1.4", ["1.3"])),
    )
    store.skip_task("1.1", "done by hand")
    adapter = PlanAdapter(failing={"1.3"})

    result = asyncio.run(_executor(store, adapter).execute())

    assert adapter.task_ids == ["1.2", "1.3"]
    assert result.tasks_completed == 1
    assert result.tasks_failed == 1
    assert result.blocked_task_ids == ["1.4"]
    assert result.tasks_skipped == 2
