"""
shipyard — stage runner

Purpose
- Execute one stage's ordered steps inside an isolated workspace, resolving
  secrets just-in-time and applying the stage retry policy.

Functional requirements
- Steps run strictly sequentially; the first failure aborts the remainder,
  which are recorded as ``not_run``.
- A missing secret fails the stage before the step's command is launched.
- Resolved secret values are registered with the shared ``SecretMasker`` only
  for the lifetime of the step that requested them and never stored on results.
- Retries re-run the whole stage in a fresh workspace, and only for step
  failures or timeouts.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from shipyard.constants import (
    ENV_ATTEMPT,
    ENV_BRANCH,
    ENV_COMMIT_REF,
    ENV_RUN_ID,
    ENV_STAGE,
    ENV_STEP,
    ENV_WORKSPACE,
)
from shipyard.domain.errors import (
    DefinitionError,
    ErrorKind,
    RunCancelledError,
    SecretNotFoundError,
    ShipyardError,
    StepExecutionError,
    StepTimeoutError,
)
from shipyard.domain.models import (
    LiteralValue,
    SecretFileRef,
    SecretRef,
    StageResult,
    StageStatus,
    StepResult,
    StepStatus,
    utc_now,
)
from shipyard.integration_plane.workspace_manager import stage_slug
from shipyard.observability.logging import correlation_scope
from shipyard.sandbox.command_executor import CommandLaunchError
from shipyard.utils.fs import write_private_file

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from shipyard.control_plane.actions import ActionRegistry
    from shipyard.domain.models import Run, StageDefinition, StepDefinition
    from shipyard.integration_plane.workspace_manager import Workspace, WorkspaceManager
    from shipyard.sandbox.command_executor import CommandExecutor, CommandResult
    from shipyard.security.redaction import SecretMasker
    from shipyard.security.secret_store import SecretStore
    from shipyard.utils.concurrency import CancellationToken

_LOG = structlog.get_logger(__name__)

_UNSAFE_FILE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_NOT_RUN_AFTER_FAILURE = "not run: an earlier step failed"


@dataclass(frozen=True, slots=True)
class StageContext:
    """Per-run invocation context handed to every stage of one run."""

    run_id: str
    branch: str
    commit_ref: str
    log_dir: Path
    config_values: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_run(cls, run: Run, *, log_dir: Path | str) -> StageContext:
        return cls(
            run_id=run.id,
            branch=run.trigger.branch,
            commit_ref=run.trigger.commit_ref,
            log_dir=Path(log_dir) / run.id,
            config_values=dict(run.config_values),
        )

    def step_env(self, *, stage: str, step: str, attempt: int, workspace: Path) -> dict[str, str]:
        env = dict(self.config_values)
        env.update(
            {
                ENV_RUN_ID: self.run_id,
                ENV_BRANCH: self.branch,
                ENV_COMMIT_REF: self.commit_ref,
                ENV_STAGE: stage,
                ENV_STEP: step,
                ENV_ATTEMPT: str(attempt),
                ENV_WORKSPACE: str(workspace),
            }
        )
        return env


@dataclass(frozen=True, slots=True)
class _ResolvedEnv:
    env: dict[str, str]
    secret_values: tuple[str, ...]
    private_files: tuple[Path, ...]


class StageRunner:
    """Runs the steps of one stage; see module docstring for the contract."""

    def __init__(
        self,
        *,
        executor: CommandExecutor,
        secret_store: SecretStore,
        workspaces: WorkspaceManager,
        actions: ActionRegistry | None = None,
        shell: str = "/bin/sh",
        keep_workspaces: bool = False,
        masker: SecretMasker | None = None,
    ) -> None:
        resolved_masker = masker if masker is not None else executor.redactor.masker
        if resolved_masker is None:
            raise ValueError("executor redactor must carry a SecretMasker")
        if not shell:
            raise ValueError("shell must not be empty")
        self._executor = executor
        self._secret_store = secret_store
        self._workspaces = workspaces
        self._actions = actions
        self._shell = shell
        self._keep_workspaces = keep_workspaces
        self._masker = resolved_masker

    async def run_stage(
        self,
        stage: StageDefinition,
        context: StageContext,
        cancel_token: CancellationToken,
    ) -> StageResult:
        """Execute ``stage`` and return its terminal result."""
        result = StageResult()
        result.transition(StageStatus.RUNNING)
        max_attempts = stage.retries + 1
        steps: tuple[StepResult, ...] = ()
        error: ShipyardError | None = None

        with correlation_scope(stage=stage.name):
            try:
                for attempt in range(1, max_attempts + 1):
                    if cancel_token.is_cancelled:
                        error = RunCancelledError(cancel_token.reason or "cancel requested")
                        break
                    result.attempts = attempt
                    steps, error = await self._run_attempt(stage, context, attempt, cancel_token)
                    if error is None or not error.retryable or cancel_token.is_cancelled:
                        break
                    if attempt < max_attempts:
                        _LOG.warning(
                            "stage_retry",
                            attempt=attempt,
                            max_attempts=max_attempts,
                            reason=str(error),
                        )
            except Exception as exc:
                _LOG.exception("stage_internal_error", error_type=type(exc).__name__)
                result.steps = steps
                result.transition(
                    StageStatus.FAILED,
                    reason=f"internal error: {type(exc).__name__}: {self._executor.redactor.redact(str(exc))}",
                    error_kind=ErrorKind.INTERNAL,
                )
                return result

        result.steps = steps
        if error is None:
            result.transition(StageStatus.SUCCEEDED, reason="all steps succeeded")
        elif isinstance(error, RunCancelledError):
            result.transition(StageStatus.CANCELLED, reason=error.reason, error_kind=error.kind)
        else:
            result.transition(StageStatus.FAILED, reason=str(error), error_kind=error.kind)
        return result

    async def _run_attempt(
        self,
        stage: StageDefinition,
        context: StageContext,
        attempt: int,
        cancel_token: CancellationToken,
    ) -> tuple[tuple[StepResult, ...], ShipyardError | None]:
        workspace = await asyncio.to_thread(
            self._workspaces.create,
            context.run_id,
            stage.name,
            attempt,
            context.commit_ref,
        )
        results: list[StepResult] = []
        error: ShipyardError | None = None
        try:
            with correlation_scope(attempt=str(attempt)):
                for index, step in enumerate(stage.steps):
                    if error is not None:
                        results.append(
                            StepResult(name=step.name, status=StepStatus.NOT_RUN, reason=_NOT_RUN_AFTER_FAILURE)
                        )
                        continue
                    if cancel_token.is_cancelled:
                        error = RunCancelledError(cancel_token.reason or "cancel requested")
                        results.append(
                            StepResult(name=step.name, status=StepStatus.NOT_RUN, reason=error.reason)
                        )
                        continue
                    step_result, error = await self._run_step(
                        stage, step, index, context, workspace, attempt, cancel_token
                    )
                    results.append(step_result)
        finally:
            if not self._keep_workspaces:
                await asyncio.to_thread(self._workspaces.remove, workspace)
        return tuple(results), error

    async def _run_step(
        self,
        stage: StageDefinition,
        step: StepDefinition,
        index: int,
        context: StageContext,
        workspace: Workspace,
        attempt: int,
        cancel_token: CancellationToken,
    ) -> tuple[StepResult, ShipyardError | None]:
        with correlation_scope(step=step.name):
            started_at = utc_now()
            _LOG.info("step_started", index=index)
            try:
                argv = self._command_for(step, stage)
                resolved = self._resolve_env(step, context, workspace, attempt)
            except (SecretNotFoundError, DefinitionError) as exc:
                _LOG.warning("step_setup_failed", error_kind=exc.kind.value, reason=str(exc))
                return (
                    StepResult(
                        name=step.name,
                        status=StepStatus.FAILED,
                        started_at=started_at,
                        finished_at=utc_now(),
                        reason=str(exc),
                    ),
                    exc,
                )

            timeout = _effective_timeout(step, stage)
            output_path = (
                context.log_dir
                / stage_slug(stage.name)
                / f"{attempt}-{index + 1:02d}-{_file_slug(step.name)}.log"
            )
            cwd = workspace.path / step.working_directory if step.working_directory else workspace.path

            command: CommandResult | None = None
            error: ShipyardError | None = None
            with self._masker.masking(resolved.secret_values):
                try:
                    if not cwd.is_dir():
                        raise StepExecutionError(
                            step.name, f"working directory {step.working_directory!r} does not exist"
                        )
                    command = await self._executor.invoke(
                        argv,
                        env=resolved.env,
                        working_dir=cwd,
                        timeout_seconds=timeout,
                        cancel_token=cancel_token,
                        output_path=output_path,
                        workspace_root=workspace.path,
                    )
                except CommandLaunchError as exc:
                    error = StepExecutionError(step.name, str(exc))
                except StepExecutionError as exc:
                    error = exc
                finally:
                    for private_file in resolved.private_files:
                        with suppress(FileNotFoundError):
                            private_file.unlink()

            step_result, error = self._step_outcome(
                step, command, error, started_at, timeout, cancel_token
            )
            _LOG.info(
                "step_finished",
                status=step_result.status.value,
                exit_status=step_result.exit_code,
                duration_ms=step_result.duration_ms,
                output_ref=step_result.output_ref,
            )
            return step_result, error

    def _step_outcome(
        self,
        step: StepDefinition,
        command: CommandResult | None,
        launch_error: ShipyardError | None,
        started_at: datetime,
        timeout: float | None,
        cancel_token: CancellationToken,
    ) -> tuple[StepResult, ShipyardError | None]:
        finished_at = utc_now()
        if command is None:
            assert launch_error is not None
            return (
                StepResult(
                    name=step.name,
                    status=StepStatus.FAILED,
                    started_at=started_at,
                    finished_at=finished_at,
                    reason=str(launch_error),
                ),
                launch_error,
            )

        status: StepStatus
        error: ShipyardError | None
        if command.cancelled:
            error = RunCancelledError(cancel_token.reason or "cancel requested")
            status, reason = StepStatus.CANCELLED, error.reason
        elif command.timed_out:
            error = StepTimeoutError(
                step.name, timeout if timeout is not None else self._executor.default_timeout_seconds
            )
            status, reason = StepStatus.TIMED_OUT, str(error)
        elif command.exit_status == 0:
            error = None
            status, reason = StepStatus.SUCCEEDED, None
        else:
            error = StepExecutionError(
                step.name,
                f"exited with status {command.exit_status}",
                exit_code=command.exit_status,
            )
            status, reason = StepStatus.FAILED, str(error)

        return (
            StepResult(
                name=step.name,
                status=status,
                exit_code=command.exit_status,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=command.duration_ms,
                output_ref=command.output_ref,
                reason=reason,
            ),
            error,
        )

    def _command_for(self, step: StepDefinition, stage: StageDefinition) -> tuple[str, ...]:
        if step.run is not None:
            return (self._shell, "-c", step.run)
        if step.command is not None:
            return step.command
        assert step.uses is not None
        path = f"stage {stage.name!r}.step {step.name!r}.uses"
        if self._actions is None:
            raise DefinitionError(f"unknown action {step.uses!r}", path=path)
        return self._actions.resolve(step.uses, path=path)

    def _resolve_env(
        self,
        step: StepDefinition,
        context: StageContext,
        workspace: Workspace,
        attempt: int,
    ) -> _ResolvedEnv:
        """Resolve every binding; nothing touches disk until all secrets resolved."""
        env = context.step_env(stage=workspace.stage, step=step.name, attempt=attempt, workspace=workspace.path)
        secret_values: list[str] = []
        pending_files: list[tuple[str, str]] = []
        for key, binding in step.env.items():
            if isinstance(binding, LiteralValue):
                env[key] = binding.value
            elif isinstance(binding, SecretRef):
                value = self._secret_store.resolve(binding.name).reveal()
                secret_values.append(value)
                env[key] = value
            elif isinstance(binding, SecretFileRef):
                value = self._secret_store.resolve(binding.name).reveal()
                secret_values.append(value)
                pending_files.append((key, value))

        private_files: list[Path] = []
        for key, value in pending_files:
            path = write_private_file(workspace.private_dir / key, value)
            private_files.append(path)
            env[key] = str(path)
        return _ResolvedEnv(env=env, secret_values=tuple(secret_values), private_files=tuple(private_files))


def _effective_timeout(step: StepDefinition, stage: StageDefinition) -> float | None:
    if step.timeout_seconds is not None:
        return step.timeout_seconds
    return stage.timeout_seconds


def _file_slug(name: str) -> str:
    return _UNSAFE_FILE_CHARS.sub("_", name).strip("._") or "step"


__all__ = ["StageContext", "StageRunner"]
