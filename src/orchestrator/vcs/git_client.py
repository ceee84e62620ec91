from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from orchestrator.errors import GitError


@dataclass(frozen=True, slots=True)
class CommitInfo:
    hash: str
    subject: str


class GitClient:
    """Thin synchronous wrapper over the ``git`` binary for one working tree."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError.operation_failed(args[0], "git executable not found") from exc
        if check and proc.returncode != 0:
            details = proc.stderr.strip() or proc.stdout.strip()
            if "not a git repository" in details.lower():
                raise GitError.not_repo(str(self.repo_root))
            raise GitError.operation_failed(args[0], details)
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except GitError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def init(self) -> None:
        self._run_git(["init"])

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, branch_name: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        return proc.returncode == 0

    def create_branch(self, branch_name: str, start_point: str | None = None) -> None:
        args = ["checkout", "-b", branch_name]
        if start_point:
            args.append(start_point)
        self._run_git(args)

    def checkout(self, branch_name: str) -> None:
        self._run_git(["checkout", branch_name])

    def has_uncommitted_changes(self) -> bool:
        proc = self._run_git(["status", "--porcelain"])
        return bool(proc.stdout.strip())

    def add(self, paths: list[str] | None = None) -> None:
        self._run_git(["add", *(paths or ["-A"])])

    def commit(self, message: str) -> str:
        self._run_git(["commit", "-m", message])
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def log(self, limit: int = 20) -> list[CommitInfo]:
        proc = self._run_git(
            ["log", f"--max-count={limit}", "--pretty=format:%H%x09%s"],
            check=False,
        )
        if proc.returncode != 0:
            return []
        commits: list[CommitInfo] = []
        for line in proc.stdout.splitlines():
            commit_hash, _, subject = line.partition("\t")
            if commit_hash:
                commits.append(CommitInfo(hash=commit_hash, subject=subject))
        return commits
