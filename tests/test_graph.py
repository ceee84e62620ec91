import pytest

from orchestrator.errors import CircularDependencyError
from orchestrator.graph import DependencyResolver, compare_task_ids, task_id_key
from orchestrator.models import Task, TaskStatus


def _task(task_id: str, *depends_on: str, status: TaskStatus = TaskStatus.PENDING) -> Task:
    return Task(
        id=task_id, description=f"Task {task_id}", depends_on=list(depends_on), status=status
    )


def test_task_ids_sort_numerically_per_component() -> None:
    ids = ["2.1", "1.10", "1.2", "1.1"]

    assert sorted(ids, key=task_id_key) == ["1.1", "1.2", "1.10", "2.1"]
    assert compare_task_ids("1.2", "1.10") == -1
    assert compare_task_ids("1.10", "1.2") == 1
    assert compare_task_ids("3.1", "3.1") == 0


def test_next_runnable_follows_dependencies() -> None:
    tasks = [_task("1.1"), _task("1.2", "1.1")]

    resolver = DependencyResolver(tasks)
    assert [task.id for task in resolver.get_runnable()] == ["1.1"]
    assert resolver.get_next_runnable().id == "1.1"
    assert resolver.can_run("1.2") is False
    assert resolver.get_blocking_deps("1.2") == ["1.1"]

    tasks[0].status = TaskStatus.COMPLETE
    resolver = DependencyResolver(tasks)
    assert resolver.get_next_runnable().id == "1.2"
    assert resolver.get_blocking_deps("1.2") == []

    tasks[1].status = TaskStatus.COMPLETE
    assert DependencyResolver(tasks).get_next_runnable() is None


def test_resolver_works_on_a_snapshot() -> None:
    tasks = [_task("1.1"), _task("1.2", "1.1")]
    resolver = DependencyResolver(tasks)

    tasks[0].status = TaskStatus.COMPLETE
    tasks[1].depends_on.append("1.9")

    assert resolver.get_next_runnable().id == "1.1"
    assert resolver.get_task("1.2").depends_on == ["1.1"]


def test_skipped_dependency_unblocks_dependents() -> None:
    tasks = [_task("1.1", status=TaskStatus.SKIPPED), _task("1.2", "1.1")]

    assert DependencyResolver(tasks).can_run("1.2") is True


def test_failed_dependency_keeps_dependents_blocked() -> None:
    tasks = [_task("1.1", status=TaskStatus.FAILED), _task("1.2", "1.1")]

    resolver = DependencyResolver(tasks)
    assert resolver.get_runnable() == []
    assert resolver.get_blocking_deps("1.2") == ["1.1"]


def test_validate_reports_missing_dependency() -> None:
    resolver = DependencyResolver([_task("1.1"), _task("1.2", "9.9")])

    report = resolver.validate()

    assert report.valid is False
    missing = report.of_kind("missing")
    assert len(missing) == 1
    assert missing[0].task_id == "1.2"
    assert missing[0].related == ("9.9",)
    assert "non-existent task 9.9" in report.messages()[0]


def test_validate_reports_self_reference() -> None:
    report = DependencyResolver([_task("1.1", "1.1")]).validate()

    assert report.valid is False
    assert [issue.kind for issue in report.issues] == ["self_reference", "circular"]


def test_external_dependencies_are_not_missing() -> None:
    tasks = [_task("2.1", "1.1"), _task("2.2", "1.2")]

    resolver = DependencyResolver(tasks, satisfied={"1.1"}, known_external={"1.2"})

    assert resolver.validate().valid is True
    assert [task.id for task in resolver.get_runnable()] == ["2.1"]
    assert resolver.get_blocking_deps("2.2") == ["1.2"]


def test_diamond_execution_order() -> None:
    tasks = [
        _task("1.4", "1.2", "1.3"),
        _task("1.3", "1.1"),
        _task("1.2", "1.1"),
        _task("1.1"),
    ]

    order = DependencyResolver(tasks).get_execution_order()

    assert [task.id for task in order] == ["1.1", "1.2", "1.3", "1.4"]


def test_execution_order_ignores_status_and_external_deps() -> None:
    tasks = [_task("1.2", "0.9"), _task("1.10", "1.2"), _task("1.1", status=TaskStatus.COMPLETE)]

    order = DependencyResolver(tasks).get_execution_order()

    assert [task.id for task in order] == ["1.1", "1.2", "1.10"]


def test_cycles_are_detected_and_reported_once() -> None:
    tasks = [_task("1.1", "1.3"), _task("1.2", "1.1"), _task("1.3", "1.2"), _task("1.4")]
    resolver = DependencyResolver(tasks)

    assert resolver.find_cycles() == [["1.1", "1.3", "1.2"]]

    report = resolver.validate()
    circular = report.of_kind("circular")
    assert len(circular) == 1
    assert circular[0].message == "Circular dependency: 1.1 -> 1.3 -> 1.2 -> 1.1"

    with pytest.raises(CircularDependencyError) as exc_info:
        resolver.get_execution_order()
    assert exc_info.value.cycles == [["1.1", "1.3", "1.2"]]
    assert exc_info.value.kind == "circular"


def test_two_node_cycle() -> None:
    resolver = DependencyResolver([_task("1.1", "1.2"), _task("1.2", "1.1")])

    assert resolver.find_cycles() == [["1.1", "1.2"]]
    assert resolver.get_runnable() == []


def test_acyclic_graph_has_no_cycles() -> None:
    resolver = DependencyResolver([_task("1.1"), _task("1.2", "1.1"), _task("1.3", "1.1", "1.2")])

    assert resolver.find_cycles() == []
    assert resolver.validate().valid is True


def test_missing_dependency_never_becomes_runnable() -> None:
    tasks = [_task("1.1"), _task("1.2", "1.1", "9.9")]

    for status in (TaskStatus.PENDING, TaskStatus.COMPLETE, TaskStatus.SKIPPED):
        tasks[0].status = status
        resolver = DependencyResolver(tasks)
        assert resolver.can_run("1.2") is False
        assert "9.9" in resolver.get_blocking_deps("1.2")
        assert "1.2" not in [task.id for task in resolver.get_runnable()]


def test_unknown_task_is_never_runnable_and_has_no_blockers() -> None:
    resolver = DependencyResolver([_task("1.1"), _task("1.2", "1.1")])

    assert resolver.can_run("4.4") is False
    assert resolver.get_blocking_deps("4.4") == []
    assert resolver.get_blocking_deps("1.1") == []


ORDER_SHAPES = [
    {"1.5": ["1.4"], "1.4": ["1.3"], "1.3": ["1.2"], "1.2": ["1.1"], "1.1": []},
    {"1.1": [], "1.2": ["1.1"], "1.3": ["1.1"], "1.4": ["1.1"], "1.5": ["1.2", "1.3", "1.4"]},
    {"1.10": [], "1.9": ["1.10"], "1.2": ["1.9"], "1.11": ["1.2", "1.10"], "1.1": ["1.11"]},
    {"2.3": ["2.1"], "2.1": [], "2.2": [], "2.4": ["2.2", "2.3"], "2.5": []},
]


@pytest.mark.parametrize("shape", ORDER_SHAPES)
def test_execution_order_places_dependencies_first(shape: dict[str, list[str]]) -> None:
    tasks = [_task(task_id, *deps) for task_id, deps in shape.items()]
    order = [task.id for task in DependencyResolver(tasks).get_execution_order()]

    assert sorted(order) == sorted(task.id for task in tasks)
    position = {task_id: index for index, task_id in enumerate(order)}
    for task in tasks:
        for dep in task.depends_on:
            assert position[dep] < position[task.id]
