from orchestrator.vcs.checkpoints import (
    CheckpointManager,
    format_branch_name,
    format_commit_message,
)
from orchestrator.vcs.git_client import CommitInfo, GitClient

__all__ = [
    "CheckpointManager",
    "CommitInfo",
    "GitClient",
    "format_branch_name",
    "format_commit_message",
]
