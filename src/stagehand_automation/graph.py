from __future__ import annotations

from typing import Iterable, Iterator, Mapping, Sequence
import heapq
import logging

from .types import Operation

logger = logging.getLogger(__name__)


class GraphError(ValueError):
    """Base class for task graph construction failures."""


class UnknownDependency(GraphError):
    def __init__(self, operation: str, missing: str):
        super().__init__(f"operation '{operation}' depends on unknown operation '{missing}'")
        self.operation = operation
        self.missing = missing


class CycleDetected(GraphError):
    def __init__(self, cycle: Sequence[str]):
        super().__init__("dependency cycle: " + " -> ".join(cycle))
        self.cycle = list(cycle)


class TaskGraph:
    """Acyclic set of operations with a stable topological order."""

    def __init__(self, operations: Mapping[str, Operation], order: Sequence[str]):
        self._operations = dict(operations)
        self.order: tuple[str, ...] = tuple(order)
        self._dependents: dict[str, list[str]] = {op_id: [] for op_id in self._operations}
        for op_id in self.order:
            for dep in self._operations[op_id].depends_on:
                if dep in self._dependents:
                    self._dependents[dep].append(op_id)

    def __contains__(self, op_id: object) -> bool:
        return op_id in self._operations

    def __getitem__(self, op_id: str) -> Operation:
        return self._operations[op_id]

    def __iter__(self) -> Iterator[Operation]:
        return (self._operations[op_id] for op_id in self.order)

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def hosts(self) -> list[str]:
        seen: list[str] = []
        for op in self:
            if op.host not in seen:
                seen.append(op.host)
        return seen

    def dependencies_of(self, op_id: str) -> set[str]:
        """Dependencies that are still part of this graph."""
        return {dep for dep in self._operations[op_id].depends_on if dep in self._operations}

    def dependents_of(self, op_id: str) -> list[str]:
        return list(self._dependents.get(op_id, ()))

    def transitive_dependents(self, op_id: str) -> list[str]:
        found: set[str] = set()
        stack = list(self._dependents.get(op_id, ()))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._dependents.get(current, ()))
        return [node for node in self.order if node in found]

    def without(self, removed: Iterable[str]) -> "TaskGraph":
        """Sub-graph minus ``removed``; edges into removed nodes count as resolved."""
        drop = set(removed)
        remaining = {op_id: op for op_id, op in self._operations.items() if op_id not in drop}
        return TaskGraph(remaining, [op_id for op_id in self.order if op_id not in drop])


def build_graph(operations: Iterable[Operation]) -> TaskGraph:
    ops: dict[str, Operation] = {}
    for op in operations:
        if op.id in ops:
            raise GraphError(f"duplicate operation id '{op.id}'")
        ops[op.id] = op

    for op in ops.values():
        for dep in sorted(op.depends_on):
            if dep not in ops:
                raise UnknownDependency(op.id, dep)

    position = {op_id: idx for idx, op_id in enumerate(ops)}
    in_degree = {op_id: len(op.depends_on) for op_id, op in ops.items()}
    dependents: dict[str, list[str]] = {op_id: [] for op_id in ops}
    for op_id, op in ops.items():
        for dep in op.depends_on:
            dependents[dep].append(op_id)

    # ties are broken by declaration order so identical input yields identical order
    heap = [(position[op_id], op_id) for op_id, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, current = heapq.heappop(heap)
        order.append(current)
        for node in dependents[current]:
            in_degree[node] -= 1
            if in_degree[node] == 0:
                heapq.heappush(heap, (position[node], node))

    if len(order) != len(ops):
        leftover = [op_id for op_id in ops if in_degree[op_id] > 0]
        raise CycleDetected(_find_cycle(ops, leftover))

    logger.debug("graph built operations=%d", len(order))
    return TaskGraph(ops, order)


def _find_cycle(ops: Mapping[str, Operation], candidates: Sequence[str]) -> list[str]:
    remaining = set(candidates)
    state: dict[str, int] = {}
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        state[node] = 1
        path.append(node)
        for dep in sorted(ops[node].depends_on & remaining, key=candidates.index):
            if state.get(dep) == 1:
                return path[path.index(dep):] + [dep]
            if dep not in state:
                cycle = visit(dep)
                if cycle:
                    return cycle
        state[node] = 2
        path.pop()
        return None

    for start in candidates:
        if start not in state:
            cycle = visit(start)
            if cycle:
                return cycle
    return list(candidates)
