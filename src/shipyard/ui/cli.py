"""Command-line interface router for shipyard."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from shipyard.config import ConfigLoadError, ConfigValidationError, ShipyardSettings, load_config
from shipyard.control_plane import ActionRegistry, PipelineOrchestrator, StageRunner
from shipyard.domain.errors import DefinitionError
from shipyard.domain.models import Run, RunStatus, TriggerEvent, TriggerSource
from shipyard.ingestion.pipeline_loader import (
    load_pipeline_document,
    parse_pipeline,
    trigger_branches,
)
from shipyard.integration_plane.triggers import TriggerListener, parse_push_payload
from shipyard.integration_plane.workspace_manager import WorkspaceManager, WorkspaceStrategy
from shipyard.main import ExitCode
from shipyard.observability.logging import (
    LoggingConfig,
    configure_structlog,
    setup_structured_logging,
    shutdown_logging,
)
from shipyard.persistence import RunRepo, StateDB
from shipyard.sandbox.command_executor import CommandExecutor
from shipyard.security.redaction import Redactor, SecretMasker
from shipyard.security.secret_store import (
    EnvSecretStore,
    FileSecretStore,
    MappingSecretStore,
)
from shipyard.ui.render import CLIRenderer, create_renderer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from shipyard.domain.models import PipelineDefinition, RunOutcome
    from shipyard.security.secret_store import SecretStore

DEFAULT_COMMIT_REF: Final[str] = "HEAD"
_INTERRUPT_REASON: Final[str] = "interrupted"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.USAGE_ERROR)

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Runtime:
    settings: ShipyardSettings
    actions: ActionRegistry
    orchestrator: PipelineOrchestrator
    redactor: Redactor


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="shipyard",
        description=(
            "shipyard — minimal CI/CD pipeline orchestrator.\n\n"
            "Common workflows:\n"
            "  shipyard validate ci.yml                       Check a pipeline definition\n"
            "  shipyard run ci.yml                            Run a pipeline now\n"
            "  shipyard trigger ci.yml --branch main --commit <sha>\n"
            "  shipyard history                               List recent runs\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to shipyard TOML config (default: ./shipyard.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Log at DEBUG level and show detailed output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Load and validate a pipeline definition",
    )
    validate_parser.add_argument("pipeline", help="Path to the pipeline YAML")
    validate_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    validate_parser.set_defaults(handler=_cmd_validate)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a pipeline immediately (bypasses the branch filter)",
        description=(
            "Start a manual run of a pipeline.\n\n"
            "Examples:\n"
            "  shipyard run ci.yml\n"
            "  shipyard run ci.yml --branch feature/x --commit 3f2a1c9 --workers 2\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("pipeline", help="Path to the pipeline YAML")
    run_parser.add_argument("--branch", default=None, help="Branch recorded on the run")
    run_parser.add_argument(
        "--commit",
        default=DEFAULT_COMMIT_REF,
        help=f"Commit ref recorded on the run (default: {DEFAULT_COMMIT_REF})",
    )
    run_parser.add_argument("--workers", type=int, default=None, help="Max concurrent stages")
    run_parser.add_argument("--source", default=None, help="Checkout copied into stage workspaces")
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run)

    # trigger -------------------------------------------------------------
    trigger_parser = subparsers.add_parser(
        "trigger",
        parents=[common],
        help="Deliver a push event through the branch-filtered trigger listener",
    )
    trigger_parser.add_argument("pipeline", help="Path to the pipeline YAML")
    trigger_parser.add_argument("--branch", default=None, help="Pushed branch")
    trigger_parser.add_argument("--commit", default=None, help="Pushed commit ref")
    trigger_parser.add_argument("--payload", default=None, help="Push webhook JSON file")
    trigger_parser.add_argument("--workers", type=int, default=None, help="Max concurrent stages")
    trigger_parser.add_argument("--source", default=None, help="Checkout copied into stage workspaces")
    trigger_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    trigger_parser.set_defaults(handler=_cmd_trigger)

    # history -------------------------------------------------------------
    history_parser = subparsers.add_parser("history", parents=[common], help="List recent runs")
    history_parser.add_argument(
        "--status",
        choices=tuple(status.value for status in RunStatus),
        default=None,
        help="Only runs with this status",
    )
    history_parser.add_argument("--branch", default=None, help="Only runs for this branch")
    history_parser.add_argument("--limit", type=int, default=20, help="Max runs to list (default: 20)")
    history_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    history_parser.set_defaults(handler=_cmd_history)

    # show ----------------------------------------------------------------
    show_parser = subparsers.add_parser("show", parents=[common], help="Show one run in detail")
    show_parser.add_argument("run_id", help="Run ID")
    show_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    show_parser.set_defaults(handler=_cmd_show)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.USAGE_ERROR)

    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    actions = ActionRegistry(settings.actions)
    document, pipeline = _load_pipeline(args.pipeline, settings, actions)
    order = list(pipeline.validate().topological_order())
    branches = trigger_branches(document) or settings.trigger_branches

    payload: dict[str, object] = {
        "command": "validate",
        "pipeline": pipeline.name,
        "order": order,
        "trigger_branches": list(branches),
        "stages": [
            {
                "name": stage.name,
                "needs": list(stage.needs),
                "steps": [step.name for step in stage.steps],
                "retries": stage.retries,
                "secrets": list(stage.secret_names()),
            }
            for stage in pipeline.stages
        ],
    }
    if args.json:
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", pipeline.name)
    renderer.kv("Order", " -> ".join(order))
    renderer.kv("Trigger branches", ", ".join(branches))
    renderer.table(
        ("STAGE", "NEEDS", "STEPS", "SECRETS"),
        [
            (
                stage.name,
                ", ".join(stage.needs) or "-",
                str(len(stage.steps)),
                ", ".join(stage.secret_names()) or "-",
            )
            for stage in pipeline.stages
        ],
        title="Stages:",
    )
    return int(ExitCode.SUCCESS)


def _cmd_run(args: argparse.Namespace) -> int:
    settings = _load_settings(args, workers=args.workers)
    actions = ActionRegistry(settings.actions)
    _, pipeline = _load_pipeline(args.pipeline, settings, actions)
    branch = args.branch or settings.trigger_branches[0]
    run = Run.create(
        pipeline,
        TriggerEvent(branch=branch, commit_ref=args.commit, source=TriggerSource.MANUAL),
    )
    runtime = _build_runtime(settings, actions, source=args.source)

    _start_logging(runtime, run.id)
    try:
        outcome = _run_with_interrupts(runtime.orchestrator, runtime.orchestrator.execute(run))
    finally:
        shutdown_logging()
    return _report_outcome(args, runtime, outcome)


def _cmd_trigger(args: argparse.Namespace) -> int:
    settings = _load_settings(args, workers=args.workers)
    actions = ActionRegistry(settings.actions)
    document, pipeline = _load_pipeline(args.pipeline, settings, actions)

    source = TriggerSource.PUSH
    if args.payload is not None:
        push = parse_push_payload(_read_payload(args.payload))
        if push is None:
            return _report_ignored(args, reason="payload is a tag push or branch deletion")
        branch, commit_ref = push
        source = TriggerSource.WEBHOOK
    else:
        if not args.branch or not args.commit:
            raise CLIError("trigger requires --branch and --commit, or --payload")
        branch, commit_ref = args.branch, args.commit

    runtime = _build_runtime(settings, actions, source=args.source)
    listener = TriggerListener(
        runtime.orchestrator,
        pipeline,
        branches=trigger_branches(document) or settings.trigger_branches,
    )
    run = listener.create_run(branch, commit_ref, source=source)
    if run is None:
        return _report_ignored(
            args,
            reason=f"branch {branch!r} does not match {', '.join(listener.branches)}",
        )

    _start_logging(runtime, run.id)
    try:
        outcome = _run_with_interrupts(runtime.orchestrator, runtime.orchestrator.execute(run))
    finally:
        shutdown_logging()
    return _report_outcome(args, runtime, outcome)


def _cmd_history(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    if args.limit <= 0:
        raise CLIError("--limit must be > 0")
    run_repo = RunRepo(StateDB(settings.state_db))
    runs = run_repo.list(status=args.status, branch=args.branch, limit=args.limit)

    if args.json:
        _emit_json({"command": "history", "runs": [_run_summary(run) for run in runs]})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not runs:
        renderer.text(f"No runs recorded in {settings.state_db}")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ("RUN", "PIPELINE", "STATUS", "BRANCH", "COMMIT", "CREATED"),
        [
            (
                run.id,
                run.pipeline.name,
                run.status.value,
                run.trigger.branch,
                run.trigger.commit_ref[:12],
                run.created_at.isoformat(timespec="seconds"),
            )
            for run in runs
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_show(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    run_repo = RunRepo(StateDB(settings.state_db))
    try:
        run = run_repo.get(args.run_id)
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    if run is None:
        raise CLIError(f"run not found: {args.run_id}")

    if args.json:
        _emit_json({"command": "show", "run": run.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Run", run.id)
    renderer.kv("Pipeline", run.pipeline.name)
    renderer.kv("Status", run.status.value)
    renderer.kv("Reason", run.reason or "-")
    renderer.kv("Trigger", f"{run.trigger.source.value} {run.trigger.branch}@{run.trigger.commit_ref}")
    _render_stages(renderer, run)
    if renderer.verbose:
        for stage_name, result in run.stage_results.items():
            if not result.steps:
                continue
            renderer.section(f"{stage_name} steps:")
            renderer.items(
                [
                    f"{step.name}: {step.status.value}"
                    + (f" (exit {step.exit_code})" if step.exit_code is not None else "")
                    + (f" -> {step.output_ref}" if step.output_ref else "")
                    for step in result.steps
                ]
            )
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _load_settings(args: argparse.Namespace, *, workers: int | None = None) -> ShipyardSettings:
    overrides: dict[str, object] = {}
    if workers is not None:
        overrides["orchestrator.max_workers"] = workers
    if args.verbose:
        overrides["observability.log_level"] = "DEBUG"
    try:
        config = load_config(args.config_path, cli_overrides=overrides)
        return ShipyardSettings.from_mapping(config)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _load_pipeline(
    raw_path: str,
    settings: ShipyardSettings,
    actions: ActionRegistry,
) -> tuple[Mapping[str, object], PipelineDefinition]:
    path = Path(raw_path).expanduser()
    if not path.is_file():
        raise CLIError(f"pipeline file not found: {path}")
    try:
        document = load_pipeline_document(path)
        pipeline = parse_pipeline(
            document,
            actions=actions,
            default_name=path.stem,
            default_retries=settings.orchestrator.default_stage_retries,
        )
    except DefinitionError as exc:
        raise CLIError(f"invalid pipeline {path}: {exc}") from exc
    return document, pipeline


def _build_runtime(
    settings: ShipyardSettings,
    actions: ActionRegistry,
    *,
    source: str | None,
) -> _Runtime:
    masker = SecretMasker()
    redactor = Redactor(masker)
    executor = CommandExecutor(
        default_timeout_seconds=settings.runner.step_timeout_seconds,
        kill_grace_seconds=settings.runner.kill_grace_seconds,
        inherit_env=settings.runner.inherit_env,
        redactor=redactor,
    )
    source_dir = Path(source) if source is not None else Path.cwd()
    try:
        workspaces = WorkspaceManager(
            settings.workspace.root,
            source_dir,
            strategy=WorkspaceStrategy(settings.workspace.strategy),
        )
    except (OSError, ValueError) as exc:
        raise CLIError(f"invalid workspace source {source_dir}: {exc}") from exc
    runner = StageRunner(
        executor=executor,
        secret_store=_secret_store(settings),
        workspaces=workspaces,
        actions=actions,
        shell=settings.runner.shell,
        keep_workspaces=settings.workspace.keep,
        masker=masker,
    )
    orchestrator = PipelineOrchestrator(
        runner=runner,
        max_workers=settings.orchestrator.max_workers,
        cancel_grace_seconds=settings.orchestrator.cancel_grace_seconds,
        log_dir=settings.log_dir,
        run_repo=RunRepo(StateDB(settings.state_db)),
    )
    return _Runtime(settings=settings, actions=actions, orchestrator=orchestrator, redactor=redactor)


def _secret_store(settings: ShipyardSettings) -> SecretStore:
    if settings.secrets.backend == "env":
        return EnvSecretStore(prefix=settings.secrets.env_prefix)
    if settings.secrets.backend == "file":
        return FileSecretStore(settings.secrets.directory)
    return MappingSecretStore()


def _start_logging(runtime: _Runtime, run_id: str) -> None:
    setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=runtime.settings.log_dir,
            level=runtime.settings.log_level,
            log_to_stdout=runtime.settings.log_to_stdout,
            redactor=runtime.redactor,
        )
    )


def _run_with_interrupts(
    orchestrator: PipelineOrchestrator,
    execution: Awaitable[RunOutcome],
) -> RunOutcome:
    """Drive ``execution`` on a fresh loop; SIGINT/SIGTERM request cancellation of active runs."""

    async def _main() -> RunOutcome:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, _cancel_active_runs, orchestrator)
                installed.append(sig)
        try:
            return await execution
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(_main())


def _cancel_active_runs(orchestrator: PipelineOrchestrator) -> None:
    for run_id in orchestrator.active_runs():
        orchestrator.request_cancel(run_id, _INTERRUPT_REASON)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _report_outcome(args: argparse.Namespace, runtime: _Runtime, outcome: RunOutcome) -> int:
    exit_code = _exit_code_for(outcome.status)
    log_dir = runtime.settings.log_dir / outcome.run_id
    if args.json:
        payload = outcome.to_dict()
        payload["command"] = args.command
        payload["log_dir"] = log_dir.as_posix()
        _emit_json(payload)
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Run", outcome.run_id)
    renderer.kv("Status", outcome.status.value)
    renderer.kv("Reason", outcome.reason)
    renderer.table(
        ("STAGE", "STATUS"),
        [(name, status.value) for name, status in outcome.stage_statuses.items()],
        title="Stages:",
    )
    renderer.kv("Logs", log_dir.as_posix())
    renderer.next_steps([f"shipyard show {outcome.run_id}"])
    return int(exit_code)


def _report_ignored(args: argparse.Namespace, *, reason: str) -> int:
    if args.json:
        _emit_json({"command": args.command, "status": "ignored", "reason": reason})
    else:
        _get_renderer(args).kv("Ignored", reason)
    return int(ExitCode.TRIGGER_IGNORED)


def _render_stages(renderer: CLIRenderer, run: Run) -> None:
    renderer.table(
        ("STAGE", "STATUS", "ATTEMPTS", "REASON"),
        [
            (
                name,
                result.status.value,
                str(result.attempts),
                result.reason or "-",
            )
            for name, result in run.stage_results.items()
        ],
        title="Stages:",
    )


def _run_summary(run: Run) -> dict[str, object]:
    return {
        "run_id": run.id,
        "pipeline": run.pipeline.name,
        "status": run.status.value,
        "branch": run.trigger.branch,
        "commit_ref": run.trigger.commit_ref,
        "created_at": run.to_dict()["created_at"],
        "reason": run.reason,
        "stage_statuses": {name: status.value for name, status in run.stage_statuses().items()},
    }


def _exit_code_for(status: RunStatus) -> ExitCode:
    if status is RunStatus.SUCCEEDED:
        return ExitCode.SUCCESS
    if status is RunStatus.CANCELLED:
        return ExitCode.RUN_CANCELLED
    return ExitCode.RUN_FAILED


def _read_payload(raw_path: str) -> Mapping[str, object]:
    path = Path(raw_path).expanduser()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"unable to read payload {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CLIError(f"invalid JSON payload {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise CLIError(f"payload {path} must be a JSON object")
    return payload


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


__all__ = ["CLIError", "build_parser", "run_cli"]
