from orchestrator.state.store import ALLOWED_TRANSITIONS, GATES, ProjectStateStore

__all__ = ["ALLOWED_TRANSITIONS", "GATES", "ProjectStateStore"]
