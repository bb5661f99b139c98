"""
shipyard — pipeline orchestrator

Purpose
- Own one Run: derive the stage graph, dispatch runnable stages to the stage
  runner, propagate failures to dependents and decide the run outcome.

Functional requirements
- Definition errors raise before any stage is dispatched.
- A stage is dispatched only once every dependency has succeeded; when a stage
  fails, all of its transitive dependents are skipped while independent
  branches keep draining.
- ``request_cancel`` is safe to call from any thread. Pending stages become
  ``cancelled``, running stages are signalled and, once the cancel grace period
  elapses, forcibly finalized. No stage is ever left ``running``.
- The run is persisted at start, on every stage transition and at finish when a
  repository is configured.
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from shipyard.constants import LOGS_DIR
from shipyard.control_plane.scheduler import Scheduler, SchedulerLimits
from shipyard.control_plane.stage_runner import StageContext
from shipyard.domain.errors import ErrorKind
from shipyard.domain.models import RunStatus, StageStatus, utc_now
from shipyard.observability.logging import correlation_scope
from shipyard.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from shipyard.control_plane.stage_runner import StageRunner
    from shipyard.domain.models import Run, RunOutcome, StageResult
    from shipyard.persistence.repositories import RunRepo
    from shipyard.planning.stage_graph import StageGraph

_LOG = structlog.get_logger(__name__)

_DEFAULT_CANCEL_REASON: Final[str] = "cancel requested"
_FORCED_CANCEL_SETTLE_SECONDS: Final[float] = 5.0


class PipelineOrchestrator:
    """Dispatches the stages of a run in dependency order."""

    def __init__(
        self,
        *,
        runner: StageRunner,
        max_workers: int = 1,
        cancel_grace_seconds: float = 10.0,
        log_dir: Path | str = Path(LOGS_DIR),
        run_repo: RunRepo | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if cancel_grace_seconds < 0:
            raise ValueError("cancel_grace_seconds must be >= 0")
        self._runner = runner
        self._scheduler = (
            scheduler
            if scheduler is not None
            else Scheduler(limits=SchedulerLimits(max_workers=max_workers))
        )
        self._cancel_grace_seconds = float(cancel_grace_seconds)
        self._log_dir = Path(log_dir)
        self._run_repo = run_repo
        self._lock = threading.Lock()
        self._active: dict[str, tuple[asyncio.AbstractEventLoop, CancellationToken]] = {}

    @property
    def max_workers(self) -> int:
        return self._scheduler.limits.max_workers

    def start(self, run: Run) -> RunOutcome:
        """Drive ``run`` to a terminal state on a fresh event loop."""
        return asyncio.run(self.execute(run))

    def request_cancel(self, run_id: str, reason: str = _DEFAULT_CANCEL_REASON) -> bool:
        """Ask an active run to stop; returns ``False`` when ``run_id`` is not running."""
        with self._lock:
            active = self._active.get(run_id)
        if active is None:
            return False
        loop, token = active
        try:
            loop.call_soon_threadsafe(token.cancel, reason or _DEFAULT_CANCEL_REASON)
        except RuntimeError:
            return False
        return True

    def active_runs(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._active))

    async def execute(self, run: Run) -> RunOutcome:
        """Execute ``run`` on the running loop and return its outcome."""
        graph = run.pipeline.validate()
        if run.status is not RunStatus.CREATED:
            raise ValueError(f"run {run.id} has already been started ({run.status.value})")

        token = CancellationToken()
        with self._lock:
            if run.id in self._active:
                raise ValueError(f"run {run.id} is already active")
            self._active[run.id] = (asyncio.get_running_loop(), token)
        try:
            with correlation_scope(run_id=run.id):
                await self._drive(run, graph, token)
        finally:
            with self._lock:
                self._active.pop(run.id, None)
        return run.outcome()

    async def _drive(self, run: Run, graph: StageGraph, token: CancellationToken) -> None:
        run.status = RunStatus.RUNNING
        run.started_at = utc_now()
        self._persist(run)
        _LOG.info(
            "run_started",
            pipeline=run.pipeline.name,
            branch=run.trigger.branch,
            commit_ref=run.trigger.commit_ref,
            order=list(graph.topological_order()),
            max_workers=self.max_workers,
        )

        context = StageContext.for_run(run, log_dir=self._log_dir)
        tasks: dict[asyncio.Task[StageResult], str] = {}
        cancel_wait = asyncio.create_task(token.wait())
        try:
            while not token.is_cancelled:
                decision = self._scheduler.schedule(graph, run.stage_statuses())
                for stage_name, blocker in decision.unreachable.items():
                    self._skip(run, stage_name, blocker)
                for stage_name in decision.selected:
                    tasks[self._dispatch(run, stage_name, context, token)] = stage_name
                if not tasks:
                    if decision.unreachable:
                        continue
                    break

                done, _ = await asyncio.wait(
                    {*tasks, cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is cancel_wait:
                        continue
                    self._record(run, graph, tasks.pop(task), task)

            if token.is_cancelled:
                await self._wind_down(run, graph, tasks, token)
        finally:
            cancel_wait.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait
            for task in tasks:
                task.cancel()

        self._finish(run, token)

    def _dispatch(
        self,
        run: Run,
        stage_name: str,
        context: StageContext,
        token: CancellationToken,
    ) -> asyncio.Task[StageResult]:
        run.stage_results[stage_name].transition(StageStatus.RUNNING)
        self._persist(run)
        _LOG.info("stage_dispatched", stage=stage_name)
        return asyncio.create_task(
            self._runner.run_stage(run.pipeline.stage(stage_name), context, token),
            name=f"{run.id}:{stage_name}",
        )

    def _record(
        self,
        run: Run,
        graph: StageGraph,
        stage_name: str,
        task: asyncio.Task[StageResult],
    ) -> None:
        result = run.stage_results[stage_name]
        try:
            outcome = task.result()
        except asyncio.CancelledError:
            result.transition(
                StageStatus.CANCELLED,
                reason=_DEFAULT_CANCEL_REASON,
                error_kind=ErrorKind.CANCELLED,
            )
        except Exception as exc:
            _LOG.exception("stage_internal_error", stage=stage_name, error_type=type(exc).__name__)
            result.transition(
                StageStatus.FAILED,
                reason=f"internal error: {type(exc).__name__}",
                error_kind=ErrorKind.INTERNAL,
            )
        else:
            result.attempts = outcome.attempts
            result.steps = outcome.steps
            result.transition(
                outcome.status,
                reason=outcome.reason,
                error_kind=outcome.error_kind,
                at=outcome.finished_at,
            )

        self._persist(run)
        _LOG.info(
            "stage_finished",
            stage=stage_name,
            status=result.status.value,
            reason=result.reason,
            error_kind=result.error_kind.value if result.error_kind is not None else None,
            attempts=result.attempts,
        )
        if result.status is StageStatus.FAILED:
            for dependent in graph.dependents(stage_name, transitive=True):
                self._skip(run, dependent, stage_name)

    def _skip(self, run: Run, stage_name: str, blocker: str) -> None:
        result = run.stage_results[stage_name]
        if result.status is not StageStatus.PENDING:
            return
        blocker_status = run.stage_results[blocker].status
        verb = "failed" if blocker_status in {StageStatus.FAILED, StageStatus.SKIPPED} else blocker_status.value
        result.transition(
            StageStatus.SKIPPED,
            reason=f"dependency '{blocker}' {verb}",
            error_kind=ErrorKind.DEPENDENCY_FAILED,
        )
        self._persist(run)
        _LOG.info("stage_skipped", stage=stage_name, reason=result.reason)

    async def _wind_down(
        self,
        run: Run,
        graph: StageGraph,
        tasks: dict[asyncio.Task[StageResult], str],
        token: CancellationToken,
    ) -> None:
        reason = token.reason or _DEFAULT_CANCEL_REASON
        _LOG.warning("run_cancel_requested", reason=reason, running=sorted(tasks.values()))
        for result in run.stage_results.values():
            if result.status is StageStatus.PENDING:
                result.transition(StageStatus.CANCELLED, reason=reason, error_kind=ErrorKind.CANCELLED)
        self._persist(run)

        if not tasks:
            return
        done, lingering = await asyncio.wait(set(tasks), timeout=self._cancel_grace_seconds)
        for task in done:
            self._record(run, graph, tasks.pop(task), task)
        if not lingering:
            return

        for task in lingering:
            task.cancel()
        settled, _ = await asyncio.wait(lingering, timeout=_FORCED_CANCEL_SETTLE_SECONDS)
        for task in lingering:
            stage_name = tasks.pop(task)
            result = run.stage_results[stage_name]
            if task in settled and not task.cancelled() and not result.is_terminal:
                self._record(run, graph, stage_name, task)
            if not result.is_terminal:
                result.transition(
                    StageStatus.CANCELLED,
                    reason=f"{reason} (forced after {self._cancel_grace_seconds:g}s grace period)",
                    error_kind=ErrorKind.CANCELLED,
                )
                self._persist(run)
            _LOG.warning("stage_force_cancelled", stage=stage_name)

    def _finish(self, run: Run, token: CancellationToken) -> None:
        for stage_name, result in run.stage_results.items():
            if result.status is StageStatus.RUNNING:
                result.transition(
                    StageStatus.CANCELLED,
                    reason=token.reason or "stage abandoned",
                    error_kind=ErrorKind.CANCELLED,
                )
            elif result.status is StageStatus.PENDING:
                result.transition(
                    StageStatus.SKIPPED,
                    reason="stage was not reachable",
                    error_kind=ErrorKind.DEPENDENCY_FAILED,
                )
                _LOG.warning("stage_unreachable", stage=stage_name)

        statuses = run.stage_statuses()
        # A cancel that lands after every stage settled leaves the outcome alone.
        if any(status is StageStatus.CANCELLED for status in statuses.values()):
            run.status = RunStatus.CANCELLED
            run.reason = token.reason or _DEFAULT_CANCEL_REASON
        elif all(status is StageStatus.SUCCEEDED for status in statuses.values()):
            run.status = RunStatus.SUCCEEDED
            run.reason = "all stages succeeded"
        else:
            failed = [name for name, status in statuses.items() if status is StageStatus.FAILED]
            run.status = RunStatus.FAILED
            run.reason = f"failed stages: {', '.join(failed)}" if failed else "run did not succeed"
        run.finished_at = utc_now()
        self._persist(run)
        _LOG.info(
            "run_finished",
            status=run.status.value,
            reason=run.reason,
            stage_statuses={name: status.value for name, status in run.stage_statuses().items()},
        )

    def _persist(self, run: Run) -> None:
        if self._run_repo is not None:
            self._run_repo.save(run)


__all__ = ["PipelineOrchestrator"]
