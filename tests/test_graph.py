from __future__ import annotations

import allure
import pytest

from goal_orchestrator.planning.graph import (
    build_dependency_graph,
    calculate_layers,
    chunked_layer_duration,
    direct_dependents,
    find_cycle,
    layered_duration,
    redundant_dependencies,
    task_names,
)
from goal_orchestrator.planning.models import (
    AgentType,
    PlanValidationError,
    Task,
    TaskMetadata,
    TaskPriority,
    ValidationIssueType,
)

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Dependency Graph"),
]


def _task(task_id: str, duration: int, *dependencies: str) -> Task:
    return Task(
        id=task_id,
        name=f"Task {task_id.upper()}",
        agent_type=AgentType.API,
        priority=TaskPriority.MEDIUM,
        estimated_duration=duration,
        metadata=TaskMetadata(phase="api", complexity=5),
        dependencies=list(dependencies),
        can_run_in_parallel=not dependencies,
    )


def _diamond() -> list[Task]:
    return [
        _task("a", 10),
        _task("b", 20, "a"),
        _task("c", 5, "a"),
        _task("d", 10, "b", "c"),
    ]


def test_diamond_graph_layers_and_critical_path() -> None:
    tasks = _diamond()

    graph = build_dependency_graph(tasks)

    assert graph.nodes == ["a", "b", "c", "d"]
    assert graph.layers == [["a"], ["b", "c"], ["d"]]
    assert graph.critical_path == ["a", "b", "d"]
    assert graph.project_duration == 40
    assert graph.earliest_start == {"a": 0, "b": 10, "c": 10, "d": 30}
    assert graph.latest_start["c"] == 25
    assert [(edge.from_task, edge.to_task) for edge in graph.edges] == [
        ("a", "b"),
        ("a", "c"),
        ("b", "d"),
        ("c", "d"),
    ]
    assert graph.edges[0].reason == "Task B requires Task A"


def test_every_dependency_sits_in_an_earlier_layer() -> None:
    tasks = _diamond()
    layer_of = {
        task_id: index for index, layer in enumerate(calculate_layers(tasks)) for task_id in layer
    }

    for task in tasks:
        for dep_id in task.dependencies:
            assert layer_of[dep_id] < layer_of[task.id]


def test_cycle_path_is_reported_and_graph_build_rejects_it() -> None:
    tasks = [_task("x", 10, "y"), _task("y", 10, "x"), _task("z", 5)]

    assert find_cycle(tasks) == ["x", "y", "x"]
    with pytest.raises(PlanValidationError, match="Task X -> Task Y -> Task X") as error:
        build_dependency_graph(tasks)
    assert error.value.issues[0].type == ValidationIssueType.CIRCULAR_DEPENDENCY


def test_find_cycle_ignores_unknown_dependencies() -> None:
    assert find_cycle([_task("a", 10, "missing"), _task("b", 5, "a")]) is None


def test_layered_and_chunked_durations() -> None:
    tasks = _diamond()
    layers = calculate_layers(tasks)

    assert layered_duration(tasks, layers) == 40
    assert chunked_layer_duration(tasks, layers, 2) == 40
    assert chunked_layer_duration(tasks, layers, 1) == 45
    with pytest.raises(ValueError, match="max_parallel"):
        chunked_layer_duration(tasks, layers, 0)


def test_redundant_dependencies_and_dependents() -> None:
    tasks = [_task("a", 10), _task("b", 10, "a"), _task("c", 10, "a", "b")]

    assert redundant_dependencies(tasks) == [("c", "a")]
    assert direct_dependents(tasks, "a") == ["b", "c"]
    assert task_names(tasks, ["c", "unknown"]) == ["Task C", "unknown"]


def test_empty_task_list_builds_empty_graph() -> None:
    graph = build_dependency_graph([])

    assert graph.layers == []
    assert graph.critical_path == []
    assert graph.project_duration == 0.0
