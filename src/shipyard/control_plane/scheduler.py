"""Deterministic dispatch selection for pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from shipyard.domain.models import StageStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

    from shipyard.planning.stage_graph import StageGraph

_DISPATCHABLE_STATUSES = frozenset({StageStatus.PENDING})
_ACTIVE_STATUSES = frozenset({StageStatus.RUNNING})
_COMPLETED_DEPENDENCY_STATUSES = frozenset({StageStatus.SUCCEEDED})
_BLOCKING_DEPENDENCY_STATUSES = frozenset(
    {StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}
)


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    """Dispatch limits; ``max_workers`` bounds concurrently running stages."""

    max_workers: int = 1

    def __post_init__(self) -> None:
        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int):
            raise ValueError("max_workers must be an integer")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Deterministic scheduler output for one dispatch tick."""

    selected: tuple[str, ...]
    runnable: tuple[str, ...]
    blocked_by_limits: tuple[str, ...]
    unreachable: Mapping[str, str]
    in_flight: int

    @property
    def idle(self) -> bool:
        """Nothing is running and nothing more can be dispatched."""
        return self.in_flight == 0 and not self.selected


class Scheduler:
    """Critical-path-first stage selection bounded by a worker limit."""

    __slots__ = ("_limits",)

    def __init__(self, *, limits: SchedulerLimits | None = None) -> None:
        self._limits = limits if limits is not None else SchedulerLimits()

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def schedule(
        self,
        graph: StageGraph,
        states: Mapping[str, StageStatus | str],
    ) -> ScheduleDecision:
        """
        Select stages to dispatch now.

        A stage is runnable when it is ``pending`` and every dependency has
        ``succeeded``. Pending stages with a failed, skipped or cancelled
        dependency are reported in ``unreachable`` (stage -> blocking dependency)
        so the caller can skip them.
        """
        runtime_states = _resolve_states(graph, states)
        in_flight = sum(1 for status in runtime_states.values() if status in _ACTIVE_STATUSES)
        depth = _downstream_depth(graph)
        position = {stage: index for index, stage in enumerate(graph.topological_order())}

        candidates: list[str] = []
        unreachable: dict[str, str] = {}
        for stage in graph.topological_order():
            if runtime_states[stage] not in _DISPATCHABLE_STATUSES:
                continue
            needs = graph.dependencies(stage)
            blocking = next(
                (need for need in needs if runtime_states[need] in _BLOCKING_DEPENDENCY_STATUSES),
                None,
            )
            if blocking is not None:
                unreachable[stage] = blocking
                continue
            if all(runtime_states[need] in _COMPLETED_DEPENDENCY_STATUSES for need in needs):
                candidates.append(stage)

        ordered = tuple(sorted(candidates, key=lambda stage: (-depth[stage], position[stage])))
        capacity = max(0, self._limits.max_workers - in_flight)
        return ScheduleDecision(
            selected=ordered[:capacity],
            runnable=ordered,
            blocked_by_limits=ordered[capacity:],
            unreachable=unreachable,
            in_flight=in_flight,
        )


def _resolve_states(
    graph: StageGraph,
    states: Mapping[str, StageStatus | str],
) -> dict[str, StageStatus]:
    resolved: dict[str, StageStatus] = {stage: StageStatus.PENDING for stage in graph.stages}
    for stage, value in states.items():
        if stage not in graph:
            raise ValueError(f"states contains unknown stage: {stage}")
        resolved[stage] = _coerce_stage_status(value, path=f"states[{stage!r}]")
    return resolved


def _downstream_depth(graph: StageGraph) -> dict[str, int]:
    depth = {stage: 1 for stage in graph.stages}
    for stage in reversed(graph.topological_order()):
        child_depth = [depth[child] for child in graph.dependents(stage)]
        if child_depth:
            depth[stage] = 1 + max(child_depth)
    return depth


def _coerce_stage_status(value: StageStatus | str, *, path: str) -> StageStatus:
    if isinstance(value, StageStatus):
        return value
    if isinstance(value, str):
        try:
            return StageStatus(value)
        except ValueError as exc:
            allowed = ", ".join(sorted(status.value for status in StageStatus))
            raise ValueError(f"{path} must be one of: {allowed}") from exc
    raise ValueError(f"{path} must be StageStatus or str, got {type(value).__name__}")


__all__ = [
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
]
