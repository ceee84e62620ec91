import asyncio
import subprocess
from pathlib import Path

import pytest

from orchestrator.errors import GitError
from orchestrator.models import TaskResult, TaskStatus
from orchestrator.vcs import CheckpointManager, GitClient, format_branch_name, format_commit_message


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _manager(repo: Path, **kwargs: object) -> CheckpointManager:
    return CheckpointManager(GitClient(repo), **kwargs)  # type: ignore[arg-type]


def _result(summary: str = "Added models") -> TaskResult:
    return TaskResult(task_id="1.1", status=TaskStatus.COMPLETE, summary=summary)


def test_branch_and_commit_formatting() -> None:
    assert format_branch_name("impl", 2, "API & Auth Layer") == "impl/phase-2-api-auth-layer"
    assert format_commit_message("task-1.1", "Add models") == "task-1.1: Add models"

    message = format_commit_message("checkpoint", "x" * 80)
    assert message == "checkpoint: " + "x" * 69 + "..."


def test_commit_task_commits_once_then_noops(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    manager = _manager(tmp_path)
    (tmp_path / "models.py").write_text("class Model: ...\n", encoding="utf-8")

    first = asyncio.run(manager.commit_task("1.1", _result()))
    second = asyncio.run(manager.commit_task("1.1", _result()))

    assert first is not None and len(first) == 40
    assert second is None
    log = GitClient(tmp_path).log(limit=1)
    assert log[0].hash == first
    assert log[0].subject == "task-1.1: Added models"


def test_commit_task_falls_back_to_description(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    manager = _manager(tmp_path)
    (tmp_path / "a.txt").write_text("a\n", encoding="utf-8")
    result = TaskResult(task_id="1.2", status=TaskStatus.COMPLETE, task_description="Wire API")

    asyncio.run(manager.commit_task("1.2", result))

    assert GitClient(tmp_path).log(limit=1)[0].subject == "task-1.2: Wire API"


def test_start_impl_phase_creates_then_reuses_branch(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    manager = _manager(tmp_path, branch_prefix="build")
    git = GitClient(tmp_path)
    original = git.current_branch()

    branch = asyncio.run(manager.start_impl_phase(1, "Core Models"))
    assert branch == "build/phase-1-core-models"
    assert git.current_branch() == branch

    git.checkout(original)
    asyncio.run(manager.start_impl_phase(1, "Core Models"))
    assert git.current_branch() == branch


def test_auto_commit_off_still_allows_checkpoints(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    manager = _manager(tmp_path, auto_commit=False)
    (tmp_path / "b.txt").write_text("b\n", encoding="utf-8")

    assert asyncio.run(manager.commit_task("1.1", _result())) is None
    assert asyncio.run(manager.commit_state_change("approve impl-1")) is None
    checkpoint = asyncio.run(manager.checkpoint("Phase 1 complete"))

    assert checkpoint is not None
    assert GitClient(tmp_path).log(limit=1)[0].subject == "checkpoint: Phase 1 complete"


def test_ensure_clean_saves_pending_changes(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    manager = _manager(tmp_path)
    (tmp_path / "c.txt").write_text("c\n", encoding="utf-8")

    assert asyncio.run(manager.has_changes()) is True
    asyncio.run(manager.ensure_clean())

    assert asyncio.run(manager.has_changes()) is False
    subject = GitClient(tmp_path).log(limit=1)[0].subject
    assert subject == "orchestrator: save pending changes"


def test_disabled_manager_touches_nothing(tmp_path: Path) -> None:
    manager = _manager(tmp_path, enabled=False)

    assert asyncio.run(manager.start_impl_phase(1, "Core")) is None
    assert asyncio.run(manager.checkpoint("noop")) is None
    assert asyncio.run(manager.commit_task("1.1", _result())) is None


def test_git_client_outside_repository(tmp_path: Path) -> None:
    git = GitClient(tmp_path)

    assert git.is_repo() is False
    with pytest.raises(GitError) as exc_info:
        git.has_uncommitted_changes()
    assert exc_info.value.kind == "not_repo"
