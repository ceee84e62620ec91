from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from orchestrator.errors import GraphError, StateError
from orchestrator.graph import DependencyResolver
from orchestrator.models import ImplementationPhase, TaskStatus
from orchestrator.state.store import ProjectStateStore

logger = logging.getLogger(__name__)


def parse_plan(payload: Any) -> list[ImplementationPhase]:
    """Build implementation phases from a decoded plan document.

    Accepts either ``{"phases": [...]}`` or a bare list of phases. Every task
    starts ``pending`` whatever the document says.
    """
    raw_phases = payload.get("phases") if isinstance(payload, dict) else payload
    if not isinstance(raw_phases, list):
        raise GraphError.invalid_plan(["plan must contain a list of phases"])

    issues: list[str] = []
    phases: list[ImplementationPhase] = []
    for position, raw in enumerate(raw_phases, start=1):
        if not isinstance(raw, dict):
            issues.append(f"phase #{position} is not an object")
            continue
        try:
            phase = ImplementationPhase.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            issues.append(f"phase #{position} is malformed: {exc}")
            continue
        if phase.phase_number < 1:
            issues.append(f"phase #{position} has non-positive phase_number {phase.phase_number}")
        for task in phase.tasks:
            if not task.id.strip():
                issues.append(f"phase {phase.phase_number} has a task without an id")
            task.status = TaskStatus.PENDING
            task.failure_reason = None
        phases.append(phase)
    if issues:
        raise GraphError.invalid_plan(issues)
    return phases


def validate_plan(phases: list[ImplementationPhase]) -> list[str]:
    seen_phases: set[int] = set()
    seen_tasks: set[str] = set()
    for phase in phases:
        if phase.phase_number in seen_phases:
            raise StateError.duplicate_phase(phase.phase_number)
        seen_phases.add(phase.phase_number)
        for task in phase.tasks:
            if task.id in seen_tasks:
                raise StateError.duplicate_task(task.id)
            seen_tasks.add(task.id)
    resolver = DependencyResolver(task for phase in phases for task in phase.tasks)
    issues = resolver.validate().messages()

    # Phases run in ascending order, so a later-phase dependency can never be met.
    phase_of = {task.id: phase.phase_number for phase in phases for task in phase.tasks}
    for phase in phases:
        for task in phase.tasks:
            for dep in task.depends_on:
                dep_phase = phase_of.get(dep)
                if dep_phase is not None and dep_phase > phase.phase_number:
                    issues.append(
                        f"Task {task.id} depends on task {dep} from later phase {dep_phase}"
                    )
    return issues


class PlanImportPhase:
    """Loads a JSON implementation plan into the project state."""

    phase_number = 3
    name = "Implementation Planning"

    def __init__(self, store: ProjectStateStore) -> None:
        self.store = store
        self._document: Any = None

    async def setup(self, payload: Path) -> None:
        self.store.load()
        if self.store.gates().get("planning_complete") and self.store.phases():
            raise StateError(
                "An implementation plan is already loaded.",
                context={"type": "plan_exists"},
            )
        try:
            self._document = json.loads(payload.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise GraphError.invalid_plan([f"{payload}: invalid JSON ({exc})"]) from exc

    async def execute(self, payload: Path) -> list[ImplementationPhase]:
        phases = parse_plan(self._document)
        issues = validate_plan(phases)
        if issues:
            raise GraphError.invalid_plan(issues)
        logger.info(
            "Plan has %d phase(s) and %d task(s)",
            len(phases),
            sum(len(phase.tasks) for phase in phases),
        )
        return phases

    async def persist(self, output: list[ImplementationPhase]) -> None:
        self.store.add_phases(output)

    def cost_usd(self) -> float:
        return 0.0
