from __future__ import annotations

import heapq
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Literal

from orchestrator.errors import CircularDependencyError
from orchestrator.models import TERMINAL_SUCCESS, Task, TaskStatus

IssueKind = Literal["missing", "self_reference", "circular"]


def task_id_key(task_id: str) -> tuple[tuple[int, int, str], ...]:
    """Sort key for dotted task ids: ``1.2 < 1.10 < 2.1``.

    Numeric components compare numerically; anything else sorts after the
    numeric components at the same position, lexically.
    """
    parts: list[tuple[int, int, str]] = []
    for component in task_id.split("."):
        if component.isdigit():
            parts.append((0, int(component), ""))
        else:
            parts.append((1, 0, component))
    return tuple(parts)


def compare_task_ids(left: str, right: str) -> int:
    left_key, right_key = task_id_key(left), task_id_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


@dataclass(frozen=True, slots=True)
class DependencyIssue:
    kind: IssueKind
    task_id: str
    message: str
    related: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ValidationReport:
    valid: bool
    issues: tuple[DependencyIssue, ...] = ()

    def messages(self) -> list[str]:
        return [issue.message for issue in self.issues]

    def of_kind(self, kind: IssueKind) -> list[DependencyIssue]:
        return [issue for issue in self.issues if issue.kind == kind]


class DependencyResolver:
    """Answers scheduling questions over a snapshot of tasks.

    The snapshot is copied at construction time; callers build a new resolver
    whenever task statuses change. ``satisfied`` names ids outside the snapshot
    (typically tasks of earlier phases) that already count as complete.
    ``known_external`` names ids that exist outside the snapshot but are not yet
    satisfied; they block dependents without being reported as missing.
    """

    def __init__(
        self,
        tasks: Iterable[Task],
        satisfied: Iterable[str] = (),
        *,
        known_external: Iterable[str] = (),
    ) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self._tasks[task.id] = replace(
                task,
                acceptance_criteria=list(task.acceptance_criteria),
                depends_on=list(task.depends_on),
            )
        self._satisfied = frozenset(satisfied)
        self._external = self._satisfied | frozenset(known_external)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def _is_done(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return task_id in self._satisfied
        return task.status in TERMINAL_SUCCESS

    def validate(self) -> ValidationReport:
        issues: list[DependencyIssue] = []
        for task in self._tasks.values():
            for dep in task.depends_on:
                if dep == task.id:
                    issues.append(
                        DependencyIssue(
                            kind="self_reference",
                            task_id=task.id,
                            message=f"Task {task.id} depends on itself",
                            related=(dep,),
                        )
                    )
                elif dep not in self._tasks and dep not in self._external:
                    issues.append(
                        DependencyIssue(
                            kind="missing",
                            task_id=task.id,
                            message=f"Task {task.id} depends on non-existent task {dep}",
                            related=(dep,),
                        )
                    )
        for cycle in self.find_cycles():
            path = " -> ".join([*cycle, cycle[0]])
            issues.append(
                DependencyIssue(
                    kind="circular",
                    task_id=cycle[0],
                    message=f"Circular dependency: {path}",
                    related=tuple(cycle),
                )
            )
        return ValidationReport(valid=not issues, issues=tuple(issues))

    def can_run(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.PENDING:
            return False
        return all(self._is_done(dep) for dep in task.depends_on)

    def get_blocking_deps(self, task_id: str) -> list[str]:
        task = self._tasks.get(task_id)
        if task is None:
            return []
        return [dep for dep in task.depends_on if not self._is_done(dep)]

    def get_runnable(self) -> list[Task]:
        runnable = [task for task in self._tasks.values() if self.can_run(task.id)]
        runnable.sort(key=lambda task: task_id_key(task.id))
        return runnable

    def get_next_runnable(self) -> Task | None:
        runnable = self.get_runnable()
        return runnable[0] if runnable else None

    def get_execution_order(self) -> list[Task]:
        in_degree: dict[str, int] = {task_id: 0 for task_id in self._tasks}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task in self._tasks.values():
            for dep in task.depends_on:
                if dep in self._tasks:
                    in_degree[task.id] += 1
                    dependents[dep].append(task.id)

        ready = [(task_id_key(task_id), task_id) for task_id, n in in_degree.items() if n == 0]
        heapq.heapify(ready)
        order: list[Task] = []
        while ready:
            _, task_id = heapq.heappop(ready)
            order.append(self._tasks[task_id])
            for dependent in dependents[task_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (task_id_key(dependent), dependent))

        if len(order) != len(self._tasks):
            raise CircularDependencyError(self.find_cycles())
        return order

    def find_cycles(self) -> list[list[str]]:
        unvisited, in_progress, done = 0, 1, 2
        marks = {task_id: unvisited for task_id in self._tasks}
        stack: list[str] = []
        seen: set[tuple[str, ...]] = set()
        cycles: list[list[str]] = []

        def visit(task_id: str) -> None:
            marks[task_id] = in_progress
            stack.append(task_id)
            for dep in self._tasks[task_id].depends_on:
                if dep not in self._tasks:
                    continue
                if marks[dep] == in_progress:
                    cycle = stack[stack.index(dep) :]
                    canonical = _rotate_to_smallest(cycle)
                    if canonical not in seen:
                        seen.add(canonical)
                        cycles.append(list(canonical))
                elif marks[dep] == unvisited:
                    visit(dep)
            stack.pop()
            marks[task_id] = done

        for task_id in sorted(self._tasks, key=task_id_key):
            if marks[task_id] == unvisited:
                visit(task_id)
        return cycles


def _rotate_to_smallest(cycle: list[str]) -> tuple[str, ...]:
    pivot = min(range(len(cycle)), key=lambda index: task_id_key(cycle[index]))
    return tuple(cycle[pivot:] + cycle[:pivot])
