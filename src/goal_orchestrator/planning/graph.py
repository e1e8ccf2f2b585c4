"""Dependency graph construction: topological layers, CPM schedule, cycle search."""

from __future__ import annotations

from collections.abc import Iterable

from goal_orchestrator.planning.models import (
    DependencyGraph,
    DependencyType,
    PlanValidationError,
    PlanValidationIssue,
    Task,
    TaskDependency,
    ValidationIssueType,
)

CRITICAL_SLACK_TOLERANCE = 0.01


def find_cycle(tasks: Iterable[Task]) -> list[str] | None:
    """Return the task-id path of the first dependency cycle found, if any.

    The path starts and ends with the same id, e.g. ``[a, b, a]``.
    Dependencies pointing outside the task set are ignored here.
    """

    by_id = {task.id: task for task in tasks}
    visited: set[str] = set()
    on_stack: list[str] = []
    on_stack_set: set[str] = set()

    def visit(task_id: str) -> list[str] | None:
        visited.add(task_id)
        on_stack.append(task_id)
        on_stack_set.add(task_id)
        for dep_id in by_id[task_id].dependencies:
            if dep_id not in by_id:
                continue
            if dep_id in on_stack_set:
                start = on_stack.index(dep_id)
                return [*on_stack[start:], dep_id]
            if dep_id not in visited:
                cycle = visit(dep_id)
                if cycle is not None:
                    return cycle
        on_stack.pop()
        on_stack_set.discard(task_id)
        return None

    for task_id in by_id:
        if task_id not in visited:
            cycle = visit(task_id)
            if cycle is not None:
                return cycle
    return None


def calculate_layers(tasks: list[Task]) -> list[list[str]]:
    """Group task ids so that layer(t) = 1 + max(layer(dep)), roots at 0.

    Task order inside a layer follows the input order.
    """

    by_id = {task.id: task for task in tasks}
    layer_of: dict[str, int] = {}

    def layer(task_id: str) -> int:
        cached = layer_of.get(task_id)
        if cached is not None:
            return cached
        deps = [dep for dep in by_id[task_id].dependencies if dep in by_id]
        value = 0 if not deps else 1 + max(layer(dep) for dep in deps)
        layer_of[task_id] = value
        return value

    for task in tasks:
        layer(task.id)

    if not layer_of:
        return []
    layers: list[list[str]] = [[] for _ in range(max(layer_of.values()) + 1)]
    for task in tasks:
        layers[layer_of[task.id]].append(task.id)
    return layers


def build_dependency_graph(tasks: list[Task]) -> DependencyGraph:
    """Build the graph for `tasks`; raises `PlanValidationError` on cycles."""

    cycle = find_cycle(tasks)
    if cycle is not None:
        names = task_names(tasks, cycle)
        raise PlanValidationError(
            [
                PlanValidationIssue(
                    type=ValidationIssueType.CIRCULAR_DEPENDENCY,
                    message=f"Circular dependency detected: {' -> '.join(names)}",
                    task_id=cycle[0],
                    path=names,
                ),
            ],
        )

    by_id = {task.id: task for task in tasks}
    edges: list[TaskDependency] = []
    for task in tasks:
        for dep_id in task.dependencies:
            dep = by_id.get(dep_id)
            if dep is None:
                continue
            edges.append(
                TaskDependency(
                    from_task=dep.id,
                    to_task=task.id,
                    type=DependencyType.REQUIRES,
                    reason=f"{task.name} requires {dep.name}",
                ),
            )

    layers = calculate_layers(tasks)
    earliest, latest, project_duration = _critical_path_schedule(tasks, layers)
    critical_path = [
        task.id
        for task in tasks
        if abs(earliest[task.id] - latest[task.id]) < CRITICAL_SLACK_TOLERANCE
    ]
    return DependencyGraph(
        nodes=[task.id for task in tasks],
        edges=edges,
        layers=layers,
        critical_path=critical_path,
        earliest_start=earliest,
        latest_start=latest,
        project_duration=project_duration,
    )


def layered_duration(tasks: list[Task], layers: list[list[str]]) -> int:
    """Sum over layers of the longest task in each layer."""

    durations = {task.id: task.estimated_duration for task in tasks}
    return sum(max((durations[task_id] for task_id in layer), default=0) for layer in layers)


def chunked_layer_duration(
    tasks: list[Task],
    layers: list[list[str]],
    max_parallel: int,
) -> int:
    """Layer duration when at most `max_parallel` tasks of a layer run at once."""

    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    durations = {task.id: task.estimated_duration for task in tasks}
    total = 0
    for layer in layers:
        for start in range(0, len(layer), max_parallel):
            chunk = layer[start : start + max_parallel]
            total += max(durations[task_id] for task_id in chunk)
    return total


def redundant_dependencies(tasks: list[Task]) -> list[tuple[str, str]]:
    """Return (task_id, dep_id) edges already implied by another dependency path."""

    by_id = {task.id: task for task in tasks}
    ancestors_cache: dict[str, set[str]] = {}

    def ancestors(task_id: str) -> set[str]:
        cached = ancestors_cache.get(task_id)
        if cached is not None:
            return cached
        result: set[str] = set()
        for dep_id in by_id[task_id].dependencies:
            if dep_id in by_id:
                result.add(dep_id)
                result |= ancestors(dep_id)
        ancestors_cache[task_id] = result
        return result

    redundant: list[tuple[str, str]] = []
    for task in tasks:
        direct = [dep for dep in task.dependencies if dep in by_id]
        for dep_id in direct:
            others = (other for other in direct if other != dep_id)
            if any(dep_id in ancestors(other) for other in others):
                redundant.append((task.id, dep_id))
    return redundant


def direct_dependents(tasks: Iterable[Task], task_id: str) -> list[str]:
    return [task.id for task in tasks if task_id in task.dependencies]


def _critical_path_schedule(
    tasks: list[Task],
    layers: list[list[str]],
) -> tuple[dict[str, float], dict[str, float], float]:
    by_id = {task.id: task for task in tasks}
    order = [task_id for layer in layers for task_id in layer]

    earliest: dict[str, float] = {}
    for task_id in order:
        deps = [dep for dep in by_id[task_id].dependencies if dep in by_id]
        earliest[task_id] = max(
            (earliest[dep] + by_id[dep].estimated_duration for dep in deps),
            default=0.0,
        )
    project_duration = max(
        (earliest[task_id] + by_id[task_id].estimated_duration for task_id in order),
        default=0.0,
    )

    successors: dict[str, list[str]] = {task_id: [] for task_id in order}
    for task_id in order:
        for dep in by_id[task_id].dependencies:
            if dep in successors:
                successors[dep].append(task_id)

    latest: dict[str, float] = {}
    for task_id in reversed(order):
        duration = by_id[task_id].estimated_duration
        latest[task_id] = min(
            (latest[succ] - duration for succ in successors[task_id]),
            default=project_duration - duration,
        )
    return earliest, latest, project_duration


def task_names(tasks: Iterable[Task], task_ids: list[str]) -> list[str]:
    names = {task.id: task.name for task in tasks}
    return [names.get(task_id, task_id) for task_id in task_ids]
