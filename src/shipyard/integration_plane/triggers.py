"""
shipyard — push trigger listener

Purpose
- Turn push events into runs of a pipeline on the configured branches.

Functional requirements
- Pushes to branches that match none of the configured patterns are ignored
  without creating a run.
- Webhook payloads for tag pushes and branch deletions are ignored.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Final

import structlog

from shipyard.constants import DEFAULT_TRIGGER_BRANCH, ZERO_COMMIT_SHA
from shipyard.domain.models import Run, TriggerEvent, TriggerSource

if TYPE_CHECKING:
    from shipyard.control_plane.orchestrator import PipelineOrchestrator
    from shipyard.domain.models import PipelineDefinition, RunOutcome

_LOG = structlog.get_logger(__name__)

_BRANCH_REF_PREFIX: Final[str] = "refs/heads/"


class TriggerListener:
    """Starts a run for every push to a matching branch."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        pipeline: PipelineDefinition,
        *,
        branches: Sequence[str] = (DEFAULT_TRIGGER_BRANCH,),
        config_values: Mapping[str, str] | None = None,
        on_run_created: Callable[[Run], None] | None = None,
    ) -> None:
        patterns = tuple(branch.strip() for branch in branches if branch.strip())
        if not patterns:
            raise ValueError("at least one trigger branch pattern is required")
        self._orchestrator = orchestrator
        self._pipeline = pipeline
        self._branches = patterns
        self._config_values = dict(config_values or {})
        self._on_run_created = on_run_created

    @property
    def branches(self) -> tuple[str, ...]:
        return self._branches

    def matches(self, branch: str) -> bool:
        return any(fnmatchcase(branch, pattern) for pattern in self._branches)

    def create_run(
        self,
        branch: str,
        commit_ref: str,
        *,
        source: TriggerSource = TriggerSource.PUSH,
    ) -> Run | None:
        """Build a run for a matching push, or ``None`` when the branch is filtered out."""
        if not self.matches(branch):
            _LOG.info("trigger_ignored", branch=branch, commit_ref=commit_ref, patterns=list(self._branches))
            return None
        run = Run.create(
            self._pipeline,
            TriggerEvent(branch=branch, commit_ref=commit_ref, source=source),
            config_values=self._config_values,
        )
        _LOG.info("trigger_accepted", run_id=run.id, branch=branch, commit_ref=commit_ref, source=source.value)
        if self._on_run_created is not None:
            self._on_run_created(run)
        return run

    def on_push(self, branch: str, commit_ref: str) -> RunOutcome | None:
        run = self.create_run(branch, commit_ref)
        if run is None:
            return None
        return self._orchestrator.start(run)

    async def on_push_async(self, branch: str, commit_ref: str) -> RunOutcome | None:
        run = self.create_run(branch, commit_ref)
        if run is None:
            return None
        return await self._orchestrator.execute(run)

    def on_webhook(self, payload: Mapping[str, object]) -> RunOutcome | None:
        push = parse_push_payload(payload)
        if push is None:
            return None
        run = self.create_run(*push, source=TriggerSource.WEBHOOK)
        if run is None:
            return None
        return self._orchestrator.start(run)


def parse_push_payload(payload: Mapping[str, object]) -> tuple[str, str] | None:
    """
    Extract ``(branch, commit_ref)`` from a Git-hosting push webhook payload.

    Returns ``None`` for tag pushes and branch deletions. Raises ``ValueError``
    when the payload is not a push event at all.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("push payload must be an object")
    ref = payload.get("ref")
    if not isinstance(ref, str) or not ref:
        raise ValueError("push payload is missing 'ref'")
    if not ref.startswith(_BRANCH_REF_PREFIX):
        _LOG.debug("push_payload_ignored", ref=ref, cause="not a branch ref")
        return None
    branch = ref[len(_BRANCH_REF_PREFIX) :]
    if not branch:
        raise ValueError(f"push payload has an empty branch ref: {ref!r}")

    after = payload.get("after")
    if not isinstance(after, str) or not after.strip():
        raise ValueError("push payload is missing 'after'")
    commit_ref = after.strip()
    if payload.get("deleted") is True or commit_ref == ZERO_COMMIT_SHA:
        _LOG.debug("push_payload_ignored", ref=ref, cause="branch deleted")
        return None
    return branch, commit_ref


__all__ = ["TriggerListener", "parse_push_payload"]
