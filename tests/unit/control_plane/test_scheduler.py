"""Unit tests for control-plane scheduler runnable selection."""

from __future__ import annotations

import pytest

from shipyard.control_plane.scheduler import Scheduler, SchedulerLimits
from shipyard.domain.models import StageStatus
from shipyard.planning.stage_graph import StageGraph


def _graph() -> StageGraph:
    return StageGraph(
        ["lint", "test", "build-and-push", "deploy"],
        [("build-and-push", "test"), ("deploy", "build-and-push")],
    )


@pytest.mark.unit
def test_sequential_default_prefers_critical_path() -> None:
    decision = Scheduler().schedule(_graph(), {})

    assert decision.selected == ("test",)
    assert decision.runnable == ("test", "lint")
    assert decision.blocked_by_limits == ("lint",)
    assert decision.in_flight == 0
    assert not decision.idle


@pytest.mark.unit
def test_worker_limit_allows_independent_stages_together() -> None:
    decision = Scheduler(limits=SchedulerLimits(max_workers=2)).schedule(_graph(), {})

    assert decision.selected == ("test", "lint")
    assert decision.blocked_by_limits == ()


@pytest.mark.unit
def test_running_stages_consume_capacity() -> None:
    decision = Scheduler().schedule(_graph(), {"test": StageStatus.RUNNING})

    assert decision.selected == ()
    assert decision.runnable == ("lint",)
    assert decision.in_flight == 1


@pytest.mark.unit
def test_dependent_waits_for_success() -> None:
    scheduler = Scheduler(limits=SchedulerLimits(max_workers=4))

    assert scheduler.schedule(_graph(), {"test": "succeeded", "lint": "succeeded"}).selected == (
        "build-and-push",
    )
    assert scheduler.schedule(
        _graph(),
        {"test": "succeeded", "lint": "succeeded", "build-and-push": "succeeded"},
    ).selected == ("deploy",)


@pytest.mark.unit
def test_failed_dependency_reports_unreachable_stage() -> None:
    decision = Scheduler(limits=SchedulerLimits(max_workers=2)).schedule(
        _graph(),
        {"test": StageStatus.FAILED, "lint": StageStatus.SUCCEEDED},
    )

    assert decision.selected == ()
    assert dict(decision.unreachable) == {"build-and-push": "test"}
    assert decision.idle


@pytest.mark.unit
def test_cancelled_and_skipped_dependencies_block() -> None:
    decision = Scheduler().schedule(
        _graph(),
        {"test": StageStatus.SUCCEEDED, "build-and-push": StageStatus.CANCELLED},
    )
    assert dict(decision.unreachable) == {"deploy": "build-and-push"}

    decision = Scheduler().schedule(
        _graph(),
        {"test": StageStatus.SUCCEEDED, "build-and-push": StageStatus.SKIPPED},
    )
    assert dict(decision.unreachable) == {"deploy": "build-and-push"}


@pytest.mark.unit
def test_invalid_states_are_rejected() -> None:
    with pytest.raises(ValueError, match="unknown stage"):
        Scheduler().schedule(_graph(), {"missing": StageStatus.PENDING})
    with pytest.raises(ValueError, match="must be one of"):
        Scheduler().schedule(_graph(), {"test": "exploded"})


@pytest.mark.unit
@pytest.mark.parametrize("value", [0, -1, True])
def test_limits_reject_invalid_worker_counts(value: object) -> None:
    with pytest.raises(ValueError):
        SchedulerLimits(max_workers=value)  # type: ignore[arg-type]
