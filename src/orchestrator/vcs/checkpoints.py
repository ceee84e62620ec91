from __future__ import annotations

import asyncio
import logging
import re

from orchestrator.models import TaskResult
from orchestrator.vcs.git_client import GitClient

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 72


def format_branch_name(prefix: str, phase_number: int, phase_name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", phase_name.lower()).strip("-")
    return f"{prefix}/phase-{phase_number}-{slug}"


def format_commit_message(commit_type: str, description: str) -> str:
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
    return f"{commit_type}: {description}"


class CheckpointManager:
    """Turns orchestration progress into branches and commits.

    Every git call runs in a worker thread so the event loop keeps serving
    the agent stream and event listeners.
    """

    def __init__(
        self,
        git: GitClient,
        *,
        enabled: bool = True,
        auto_commit: bool = True,
        branch_prefix: str = "impl",
    ) -> None:
        self.git = git
        self.enabled = enabled
        self.auto_commit = auto_commit
        self.branch_prefix = branch_prefix or "impl"

    async def start_impl_phase(self, phase_number: int, phase_name: str) -> str | None:
        if not self.enabled:
            return None
        branch_name = format_branch_name(self.branch_prefix, phase_number, phase_name)
        if await asyncio.to_thread(self.git.branch_exists, branch_name):
            await asyncio.to_thread(self.git.checkout, branch_name)
        else:
            await asyncio.to_thread(self.git.create_branch, branch_name)
        logger.info("On branch %s for phase %d", branch_name, phase_number)
        return branch_name

    async def _commit_pending(self, message: str) -> str | None:
        if not await asyncio.to_thread(self.git.has_uncommitted_changes):
            return None
        await asyncio.to_thread(self.git.add)
        commit_hash = await asyncio.to_thread(self.git.commit, message)
        logger.debug("Committed %s: %s", commit_hash[:10], message)
        return commit_hash

    async def commit_task(self, task_id: str, result: TaskResult) -> str | None:
        if not (self.enabled and self.auto_commit):
            return None
        summary = result.summary or result.task_description or "Task completed"
        return await self._commit_pending(format_commit_message(f"task-{task_id}", summary))

    async def commit_state_change(self, action: str) -> str | None:
        if not (self.enabled and self.auto_commit):
            return None
        return await self._commit_pending(format_commit_message("orchestrator", action))

    async def checkpoint(self, message: str) -> str | None:
        if not self.enabled:
            return None
        return await self._commit_pending(format_commit_message("checkpoint", message))

    async def ensure_clean(self) -> str | None:
        if not self.enabled:
            return None
        return await self._commit_pending("orchestrator: save pending changes")

    async def has_changes(self) -> bool:
        if not self.enabled:
            return False
        return await asyncio.to_thread(self.git.has_uncommitted_changes)
