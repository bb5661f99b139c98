"""Unit tests for the push trigger listener and webhook payload parsing."""

from __future__ import annotations

import pytest

from shipyard.constants import ZERO_COMMIT_SHA
from shipyard.domain.models import (
    PipelineDefinition,
    Run,
    RunOutcome,
    RunStatus,
    StageDefinition,
    StepDefinition,
    TriggerSource,
)
from shipyard.integration_plane.triggers import TriggerListener, parse_push_payload


class _RecordingOrchestrator:
    def __init__(self) -> None:
        self.started: list[Run] = []

    def _outcome(self, run: Run) -> RunOutcome:
        self.started.append(run)
        return RunOutcome(run_id=run.id, status=RunStatus.SUCCEEDED, stage_statuses={}, reason="ok")

    def start(self, run: Run) -> RunOutcome:
        return self._outcome(run)

    async def execute(self, run: Run) -> RunOutcome:
        return self._outcome(run)


def _pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        name="ci",
        stages=(StageDefinition(name="test", steps=(StepDefinition(name="unit", run="true"),)),),
    )


def _listener(
    orchestrator: _RecordingOrchestrator, **kwargs: object
) -> TriggerListener:
    return TriggerListener(orchestrator, _pipeline(), **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
def test_push_to_default_branch_starts_a_run() -> None:
    orchestrator = _RecordingOrchestrator()

    outcome = _listener(orchestrator).on_push("main", "abc123")

    assert outcome is not None and outcome.succeeded
    (run,) = orchestrator.started
    assert run.trigger.branch == "main"
    assert run.trigger.commit_ref == "abc123"
    assert run.trigger.source is TriggerSource.PUSH
    assert run.status is RunStatus.CREATED


@pytest.mark.unit
def test_non_matching_branch_is_ignored_without_a_run() -> None:
    orchestrator = _RecordingOrchestrator()
    created: list[Run] = []
    listener = _listener(orchestrator, on_run_created=created.append)

    assert listener.on_push("feature/login", "abc123") is None
    assert listener.create_run("feature/login", "abc123") is None
    assert orchestrator.started == []
    assert created == []


@pytest.mark.unit
def test_branch_patterns_use_glob_matching() -> None:
    listener = _listener(_RecordingOrchestrator(), branches=(" main ", "release/*", ""))

    assert listener.branches == ("main", "release/*")
    assert listener.matches("release/1.2")
    assert not listener.matches("Release/1.2")
    assert not listener.matches("mainline")


@pytest.mark.unit
def test_created_runs_carry_config_values_and_notify() -> None:
    created: list[Run] = []
    listener = _listener(
        _RecordingOrchestrator(),
        config_values={"REGISTRY": "registry.example.com"},
        on_run_created=created.append,
    )

    run = listener.create_run("main", "abc123", source=TriggerSource.MANUAL)

    assert run is not None
    assert created == [run]
    assert run.config_values == {"REGISTRY": "registry.example.com"}
    assert run.trigger.source is TriggerSource.MANUAL
    assert set(run.stage_results) == {"test"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_push_uses_running_loop() -> None:
    orchestrator = _RecordingOrchestrator()

    outcome = await _listener(orchestrator).on_push_async("main", "def456")

    assert outcome is not None
    assert orchestrator.started[0].trigger.commit_ref == "def456"
    assert await _listener(orchestrator).on_push_async("dev", "def456") is None


@pytest.mark.unit
def test_webhook_push_starts_webhook_run() -> None:
    orchestrator = _RecordingOrchestrator()

    outcome = _listener(orchestrator).on_webhook(
        {"ref": "refs/heads/main", "after": "0123456789abcdef0123456789abcdef01234567"}
    )

    assert outcome is not None
    assert orchestrator.started[0].trigger.source is TriggerSource.WEBHOOK


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        {"ref": "refs/tags/v1.0.0", "after": "abc123"},
        {"ref": "refs/heads/main", "after": ZERO_COMMIT_SHA},
        {"ref": "refs/heads/main", "after": "abc123", "deleted": True},
    ],
)
def test_tag_pushes_and_deletions_are_ignored(payload: dict[str, object]) -> None:
    orchestrator = _RecordingOrchestrator()

    assert parse_push_payload(payload) is None
    assert _listener(orchestrator).on_webhook(payload) is None
    assert orchestrator.started == []


@pytest.mark.unit
def test_parse_push_payload_extracts_branch_and_commit() -> None:
    assert parse_push_payload({"ref": "refs/heads/release/2.0", "after": " abc123 "}) == (
        "release/2.0",
        "abc123",
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        {"after": "abc123"},
        {"ref": "", "after": "abc123"},
        {"ref": "refs/heads/", "after": "abc123"},
        {"ref": "refs/heads/main"},
        {"ref": "refs/heads/main", "after": "   "},
    ],
)
def test_malformed_payloads_raise(payload: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        parse_push_payload(payload)


@pytest.mark.unit
def test_listener_requires_a_branch_pattern() -> None:
    with pytest.raises(ValueError, match="branch pattern"):
        _listener(_RecordingOrchestrator(), branches=("", "  "))
