from orchestrator.phases.planning import PlanImportPhase, parse_plan, validate_plan
from orchestrator.phases.runner import PhaseLifecycle, PhaseRunResult, PhaseState, run_phase

__all__ = [
    "PhaseLifecycle",
    "PhaseRunResult",
    "PhaseState",
    "PlanImportPhase",
    "parse_plan",
    "run_phase",
    "validate_plan",
]
