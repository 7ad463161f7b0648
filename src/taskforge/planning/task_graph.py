"""Priority-biased, deterministic task graph builder."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from heapq import heappop, heappush
from types import MappingProxyType

from taskforge.domain.models import Task


class DuplicateTaskError(ValueError):
    """Raised when two tasks share an id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id: {task_id}")


class MissingDependencyError(ValueError):
    """Raised when a task depends on an id that is not declared."""

    def __init__(self, task_id: str, dependency: str) -> None:
        self.task_id = task_id
        self.dependency = dependency
        super().__init__(f"Task {task_id} depends on missing task {dependency}")


class CycleError(ValueError):
    """Raised when tasks remain unplaced because of a dependency cycle."""

    remaining: tuple[str, ...]
    cycles: tuple[tuple[str, ...], ...]

    def __init__(
        self,
        remaining: Iterable[str],
        cycles: Iterable[Sequence[str]] = (),
    ) -> None:
        self.remaining = tuple(remaining)
        self.cycles = tuple(tuple(path) for path in cycles)
        message = f"Task graph contains a cycle involving: {', '.join(self.remaining)}"
        if self.cycles:
            preview = ", ".join(" -> ".join(path) for path in self.cycles[:3])
            suffix = "..." if len(self.cycles) > 3 else ""
            message = f"{message} ({preview}{suffix})"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class TaskGraph:
    """Validated tasks plus their strict execution order."""

    tasks_by_id: Mapping[str, Task]
    order: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.order)

    def get(self, task_id: str) -> Task | None:
        return self.tasks_by_id.get(task_id)

    def dependents_of(self, task_id: str) -> tuple[str, ...]:
        return tuple(
            candidate
            for candidate in self.order
            if task_id in self.tasks_by_id[candidate].deps
        )


def _ready_key(task: Task) -> tuple[int, str]:
    return (-task.priority, task.id)


def build_task_graph(tasks: Sequence[Task]) -> TaskGraph:
    """
    Validate ``tasks`` and order them with a priority-biased Kahn sort.

    Among ready tasks the highest ``priority`` goes first, ties broken by id
    ascending. The function is pure: the same input always yields the same order.
    """

    tasks_by_id: dict[str, Task] = {}
    for task in tasks:
        if task.id in tasks_by_id:
            raise DuplicateTaskError(task.id)
        tasks_by_id[task.id] = task

    indegree: dict[str, int] = {task_id: 0 for task_id in tasks_by_id}
    children: dict[str, list[str]] = {task_id: [] for task_id in tasks_by_id}
    for task in tasks_by_id.values():
        for dep in dict.fromkeys(task.deps):
            if dep not in tasks_by_id:
                raise MissingDependencyError(task.id, dep)
            indegree[task.id] += 1
            children[dep].append(task.id)

    ready: list[tuple[int, str]] = []
    for task_id, degree in indegree.items():
        if degree == 0:
            heappush(ready, _ready_key(tasks_by_id[task_id]))

    order: list[str] = []
    while ready:
        _, task_id = heappop(ready)
        order.append(task_id)
        for child in children[task_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heappush(ready, _ready_key(tasks_by_id[child]))

    if len(order) != len(tasks_by_id):
        placed = set(order)
        remaining = [task_id for task_id in tasks_by_id if task_id not in placed]
        raise CycleError(remaining, detect_cycles(tasks_by_id, remaining))

    return TaskGraph(tasks_by_id=MappingProxyType(tasks_by_id), order=tuple(order))


def detect_cycles(
    tasks_by_id: Mapping[str, Task], nodes: Iterable[str]
) -> tuple[tuple[str, ...], ...]:
    """
    Detect directed dependency cycles among ``nodes``.

    Returns closed paths such as ``("a", "b", "a")`` where ``a`` depends on ``b``.
    """

    scope = set(nodes)
    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    def _edges(node: str) -> Iterator[str]:
        return iter(sorted(dep for dep in tasks_by_id[node].deps if dep in scope))

    for start in sorted(scope):
        if state.get(start, 0) != 0:
            continue
        state[start] = 1
        stack_index[start] = len(stack)
        stack.append(start)
        frames: list[tuple[str, Iterator[str]]] = [(start, _edges(start))]

        while frames:
            node, edge_iter = frames[-1]
            try:
                child = next(edge_iter)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, _edges(child)))
            elif child_state == 1:
                cycle = stack[stack_index[child] :] + [child]
                cycles[_canonicalize_cycle(cycle)] = None

    return tuple(sorted(cycles))


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    body = list(cycle[:-1])
    pivot = body.index(min(body))
    rotated = body[pivot:] + body[:pivot]
    return tuple(rotated + [rotated[0]])


__all__ = [
    "CycleError",
    "DuplicateTaskError",
    "MissingDependencyError",
    "TaskGraph",
    "build_task_graph",
    "detect_cycles",
]
