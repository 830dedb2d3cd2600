"""
Dependency graphs over phases and tasks of a build.

Nodes are strings (phase IDs, or ``phase_id/task_id`` keys for tasks) and an edge
``a -> b`` means ``a`` must finish before ``b``. All queries return sorted tuples so
diagnostics and tests see the same answer on every run.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence, Set
from heapq import heapify, heappop, heappush
from itertools import pairwise

from build_orchestrator.domain.models import TASK_REF_SEPARATOR, Build, Phase, TaskRef

_MAX_CYCLES_IN_MESSAGE = 3


class CycleError(ValueError):
    """Raised by ``TaskGraph.topological_sort`` when the graph is not a DAG."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles = tuple(tuple(path) for path in cycles)
        if self.cycles:
            shown = ", ".join(" -> ".join(path) for path in self.cycles[:_MAX_CYCLES_IN_MESSAGE])
            more = "..." if len(self.cycles) > _MAX_CYCLES_IN_MESSAGE else ""
            super().__init__(f"Dependency graph contains cycle(s): {shown}{more}")
        else:
            super().__init__("Dependency graph contains at least one cycle.")


class TaskGraph:
    __slots__ = ("_after", "_before")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        # node -> nodes that depend on it / node -> its prerequisites
        self._after: dict[str, set[str]] = {}
        self._before: dict[str, set[str]] = {}
        for node in nodes or ():
            self.add_node(node)
        for prerequisite, dependent in edges or ():
            self.add_edge(prerequisite, dependent)

    @classmethod
    def for_phases(cls, phases: Sequence[Phase]) -> TaskGraph:
        """One node per phase ID; out-of-range dependency indices are ignored."""
        graph = cls(phase.id for phase in phases)
        for phase in phases:
            for index in phase.dependencies:
                if 0 <= index < len(phases):
                    graph.add_edge(phases[index].id, phase.id)
        return graph

    @classmethod
    def for_build(cls, build: Build) -> TaskGraph:
        """
        One node per task, keyed ``phase_id/task_id``.

        Three sources of edges are combined:

        - a phase dependency orders every upstream task before every downstream task;
        - tasks of a sequential (non-concurrent) phase are chained in declaration order;
        - each resolvable ``input`` reference orders the producer before the consumer.
        """
        graph = cls(task_node_key(build, ref) for ref, _task in build.iter_tasks())
        phases = build.phases

        for phase in phases:
            keys = [_key(phase.id, task.id) for task in phase.tasks]
            for index in phase.dependencies:
                if not 0 <= index < len(phases):
                    continue
                upstream = phases[index]
                for task in upstream.tasks:
                    for key in keys:
                        graph.add_edge(_key(upstream.id, task.id), key)
            if not phase.concurrent:
                for earlier, later in pairwise(keys):
                    graph.add_edge(earlier, later)

        for ref, task in build.iter_tasks():
            for reference in task.input:
                producer = build.resolve_input(ref, reference)
                if producer is not None:
                    graph.add_edge(task_node_key(build, producer), task_node_key(build, ref))
        return graph

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._after))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return tuple(
            (node, dependent)
            for node in sorted(self._after)
            for dependent in sorted(self._after[node])
        )

    def add_node(self, node_id: str) -> None:
        if not node_id:
            raise ValueError("Node ID must be non-empty.")
        self._after.setdefault(node_id, set())
        self._before.setdefault(node_id, set())

    def add_edge(self, parent: str, child: str) -> None:
        self.add_node(parent)
        self.add_node(child)
        self._after[parent].add(child)
        self._before[child].add(parent)

    def get_dependencies(self, node_id: str) -> tuple[str, ...]:
        if node_id not in self._before:
            raise KeyError(f"Unknown node: {node_id}")
        return tuple(sorted(self._before[node_id]))

    def get_runnable(self, completed: Set[str]) -> tuple[str, ...]:
        """Nodes not in ``completed`` whose prerequisites all are."""
        return tuple(
            node
            for node in sorted(self._before)
            if node not in completed and self._before[node] <= completed
        )

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm, always taking the smallest ready node; raises ``CycleError``."""
        waiting = {node: len(parents) for node, parents in self._before.items()}
        ready = [node for node, count in waiting.items() if count == 0]
        heapify(ready)
        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for dependent in self._after[node]:
                waiting[dependent] -= 1
                if waiting[dependent] == 0:
                    heappush(ready, dependent)
        if len(order) < len(waiting):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Every cycle met by a depth-first walk, as a closed path such as ``("A", "B", "A")``.

        Each cycle is rotated to start at its smallest node so the same loop is
        reported once however the walk entered it.
        """
        finished: set[str] = set()
        found: set[tuple[str, ...]] = set()

        for root in sorted(self._after):
            if root in finished:
                continue
            path: list[str] = [root]
            on_path: dict[str, int] = {root: 0}
            pending: list[list[str]] = [sorted(self._after[root], reverse=True)]
            while pending:
                children = pending[-1]
                if not children:
                    node = path.pop()
                    del on_path[node]
                    pending.pop()
                    finished.add(node)
                    continue
                child = children.pop()
                if child in on_path:
                    found.add(_rotate_to_smallest(path[on_path[child] :]))
                elif child not in finished:
                    on_path[child] = len(path)
                    path.append(child)
                    pending.append(sorted(self._after[child], reverse=True))
        return tuple(sorted(found))


def _rotate_to_smallest(loop: Sequence[str]) -> tuple[str, ...]:
    start = min(range(len(loop)), key=lambda index: loop[index])
    rotated = (*loop[start:], *loop[:start])
    return (*rotated, rotated[0])


def _key(phase_id: str, task_id: str) -> str:
    return f"{phase_id}{TASK_REF_SEPARATOR}{task_id}"


def task_node_key(build: Build, ref: TaskRef) -> str:
    """``phase_id/task_id`` for ``ref``; the key events, logs and escalations use."""
    return _key(build.phases[ref.phase_index].id, ref.task_id)


__all__ = ["CycleError", "TaskGraph", "task_node_key"]
