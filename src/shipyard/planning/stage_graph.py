"""Deterministic stage dependency graph built from ``needs`` relationships."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Final

from shipyard.domain.errors import CycleError, UnknownDependencyError

if TYPE_CHECKING:
    from shipyard.domain.models import PipelineDefinition

_UNVISITED: Final[int] = 0
_IN_PROGRESS: Final[int] = 1
_DONE: Final[int] = 2


class StageGraph:
    """
    Directed acyclic graph of stages.

    Edges point from a stage to the stages it ``needs``. Construction validates
    the graph: unknown dependencies raise ``UnknownDependencyError`` and cycles
    raise ``CycleError``. Node order is the definition order and is used to
    break ties everywhere, so every query is deterministic.
    """

    __slots__ = ("_order", "_index", "_needs", "_dependents", "_topological")

    def __init__(
        self,
        nodes: Iterable[str],
        edges: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._order: list[str] = []
        self._index: dict[str, int] = {}
        self._needs: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}

        for node_id in nodes:
            self._add_node(node_id)
        for stage, dependency in edges:
            self._add_need(stage, dependency)

        self._topological: tuple[str, ...] = self._compute_order()

    @classmethod
    def from_pipeline(cls, definition: PipelineDefinition) -> StageGraph:
        return cls(
            nodes=definition.stage_names,
            edges=[(stage.name, dependency) for stage in definition.stages for dependency in stage.needs],
        )

    @property
    def stages(self) -> tuple[str, ...]:
        return tuple(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, stage: object) -> bool:
        return stage in self._index

    def topological_order(self) -> tuple[str, ...]:
        """Every stage appears strictly after all of its ``needs``."""
        return self._topological

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect cycles with an iterative three-colour DFS.

        Returns closed paths along ``needs`` edges, e.g. ``("A", "B", "A")``
        meaning A needs B and B needs A.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._order:
            if state.get(start, _UNVISITED) != _UNVISITED:
                continue

            state[start] = _IN_PROGRESS
            stack_index[start] = len(stack)
            stack.append(start)
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self._needs[start]))]

            while frames:
                node, need_iter = frames[-1]
                try:
                    dependency = next(need_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = _DONE
                    stack.pop()
                    del stack_index[node]
                    continue

                dependency_state = state.get(dependency, _UNVISITED)
                if dependency_state == _UNVISITED:
                    state[dependency] = _IN_PROGRESS
                    stack_index[dependency] = len(stack)
                    stack.append(dependency)
                    frames.append((dependency, iter(self._needs[dependency])))
                elif dependency_state == _IN_PROGRESS:
                    cycle = tuple(stack[stack_index[dependency] :] + [dependency])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def dependencies(self, stage: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Stages ``stage`` needs, directly or transitively, in definition order."""
        self._assert_known(stage)
        if not transitive:
            return tuple(self._needs[stage])
        return self._closure(stage, self._needs)

    def dependents(self, stage: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Stages that need ``stage``, directly or transitively, in definition order."""
        self._assert_known(stage)
        if not transitive:
            return tuple(self._dependents[stage])
        return self._closure(stage, self._dependents)

    def to_dict(self) -> dict[str, object]:
        return {
            "stages": list(self._order),
            "needs": {stage: list(self._needs[stage]) for stage in self._order},
            "order": list(self._topological),
        }

    def _add_node(self, node_id: str) -> None:
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("stage name must be a non-empty string")
        if node_id in self._index:
            raise ValueError(f"duplicate stage: {node_id}")
        self._index[node_id] = len(self._order)
        self._order.append(node_id)
        self._needs[node_id] = []
        self._dependents[node_id] = []

    def _add_need(self, stage: str, dependency: str) -> None:
        self._assert_known(stage)
        if dependency not in self._index:
            raise UnknownDependencyError(stage, dependency)
        if dependency in self._needs[stage]:
            return
        self._needs[stage].append(dependency)
        self._dependents[dependency].append(stage)

    def _compute_order(self) -> tuple[str, ...]:
        state: dict[str, int] = {}
        order: list[str] = []

        for start in self._order:
            if state.get(start, _UNVISITED) != _UNVISITED:
                continue
            state[start] = _IN_PROGRESS
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self._needs[start]))]

            while frames:
                node, need_iter = frames[-1]
                try:
                    dependency = next(need_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = _DONE
                    order.append(node)
                    continue

                dependency_state = state.get(dependency, _UNVISITED)
                if dependency_state == _IN_PROGRESS:
                    raise CycleError(self.detect_cycles())
                if dependency_state == _UNVISITED:
                    state[dependency] = _IN_PROGRESS
                    frames.append((dependency, iter(self._needs[dependency])))

        return tuple(order)

    def _closure(self, stage: str, adjacency: dict[str, list[str]]) -> tuple[str, ...]:
        visited: set[str] = set()
        pending = list(adjacency[stage])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(neighbor for neighbor in adjacency[node] if neighbor not in visited)
        return tuple(sorted(visited, key=self._index.__getitem__))

    def _assert_known(self, stage: str) -> None:
        if stage not in self._index:
            raise KeyError(f"Unknown stage: {stage}")


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = ["StageGraph"]
