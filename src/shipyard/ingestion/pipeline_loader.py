"""
shipyard — pipeline definition loader

Purpose
- Parse a pipeline YAML document into an immutable ``PipelineDefinition``.

What should be included in this file
- The accepted document subset: ``name``, ``on.push.branches`` and ``jobs``
  (alias ``stages``) with ``needs``, ``retries``, ``timeout-minutes``, ``env``
  and ``steps``.
- Secret expressions: ``${{ secrets.NAME }}`` and ``${{ secrets.NAME | file }}``.

Functional requirements
- Every rejection is a ``DefinitionError`` carrying the document path of the
  offending node (for example ``jobs.deploy.steps[0]``).
- Graph errors (cycles, unknown ``needs``) are raised at load time, before any
  run can be created.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Final

import yaml

from shipyard.domain.errors import DefinitionError
from shipyard.domain.models import (
    EnvBinding,
    LiteralValue,
    PipelineDefinition,
    SecretFileRef,
    SecretRef,
    StageDefinition,
    StepDefinition,
)

if TYPE_CHECKING:
    from shipyard.control_plane.actions import ActionRegistry

_SECRET_EXPRESSION: Final[re.Pattern[str]] = re.compile(
    r"^\$\{\{\s*secrets\.(?P<name>[A-Za-z_][A-Za-z0-9_.\-]*)\s*(?P<file>\|\s*file\s*)?\}\}$"
)
_EXPRESSION_MARKER: Final[str] = "${{"

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"name", "on", "jobs", "stages", "env"})
_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {"needs", "steps", "retries", "timeout-minutes", "timeout-seconds", "env"}
)
_STEP_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "run",
        "command",
        "uses",
        "env",
        "timeout-minutes",
        "timeout-seconds",
        "working-directory",
    }
)


def load_pipeline(
    path: str | Path,
    *,
    actions: ActionRegistry | None = None,
    default_retries: int = 0,
) -> PipelineDefinition:
    """Load and validate the pipeline definition stored at ``path``."""
    source = Path(path)
    document = load_pipeline_document(source)
    return parse_pipeline(
        document,
        actions=actions,
        default_name=source.stem,
        default_retries=default_retries,
    )


def load_pipeline_document(path: str | Path) -> Mapping[str, object]:
    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise DefinitionError(f"unable to read pipeline file: {exc}", path=source.as_posix()) from exc
    except yaml.YAMLError as exc:
        raise DefinitionError(f"invalid YAML: {exc}", path=source.as_posix()) from exc
    if not isinstance(payload, Mapping):
        raise DefinitionError("pipeline document must be a mapping", path=source.as_posix())
    return _normalize_keys(payload)


def parse_pipeline(
    document: Mapping[object, object],
    *,
    actions: ActionRegistry | None = None,
    default_name: str | None = None,
    default_retries: int = 0,
) -> PipelineDefinition:
    """Convert a parsed YAML document into a validated ``PipelineDefinition``."""
    root = _normalize_keys(document)
    _reject_unknown_keys(root, _TOP_LEVEL_KEYS, "")

    if "jobs" in root and "stages" in root:
        raise DefinitionError("use either 'jobs' or 'stages', not both", path="jobs")
    stages_key = "stages" if "stages" in root else "jobs"
    raw_stages = root.get(stages_key)
    if not isinstance(raw_stages, Mapping) or not raw_stages:
        raise DefinitionError("must be a non-empty mapping of stage name to stage", path=stages_key)

    name = root.get("name", default_name)
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError("must be a non-empty string", path="name")

    pipeline_env = _parse_env(root.get("env"), "env")
    stages: list[StageDefinition] = []
    for stage_name, raw_stage in raw_stages.items():
        stage_path = f"{stages_key}.{stage_name}"
        if not isinstance(stage_name, str):
            raise DefinitionError("stage names must be strings", path=stage_path)
        stages.append(
            _parse_stage(
                stage_name,
                raw_stage,
                stage_path,
                actions=actions,
                inherited_env=pipeline_env,
                default_retries=default_retries,
            )
        )

    try:
        pipeline = PipelineDefinition(name=name.strip(), stages=tuple(stages))
    except ValueError as exc:
        raise DefinitionError(str(exc), path=stages_key) from exc
    try:
        pipeline.validate()
    except DefinitionError as exc:
        exc.path = stages_key
        raise
    return pipeline


def trigger_branches(document: Mapping[object, object]) -> tuple[str, ...]:
    """Branch patterns from ``on.push.branches``; empty when the document does not say."""
    root = _normalize_keys(document)
    trigger = root.get("on")
    if not isinstance(trigger, Mapping):
        return ()
    push = _normalize_keys(trigger).get("push")
    if not isinstance(push, Mapping):
        return ()
    branches = push.get("branches")
    if branches is None:
        return ()
    if isinstance(branches, str):
        return (branches,)
    if not isinstance(branches, Sequence):
        raise DefinitionError("must be a string or a list of strings", path="on.push.branches")
    out: list[str] = []
    for index, branch in enumerate(branches):
        if not isinstance(branch, str) or not branch.strip():
            raise DefinitionError("must be a non-empty string", path=f"on.push.branches[{index}]")
        out.append(branch.strip())
    return tuple(out)


def _parse_stage(
    name: str,
    raw: object,
    path: str,
    *,
    actions: ActionRegistry | None,
    inherited_env: Mapping[str, EnvBinding],
    default_retries: int,
) -> StageDefinition:
    if not isinstance(raw, Mapping):
        raise DefinitionError("stage must be a mapping", path=path)
    stage = _normalize_keys(raw)
    _reject_unknown_keys(stage, _STAGE_KEYS, path)

    needs = _parse_needs(stage.get("needs"), f"{path}.needs")
    retries = stage.get("retries", default_retries)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise DefinitionError("must be an integer >= 0", path=f"{path}.retries")
    timeout = _parse_timeout(stage, path)

    raw_steps = stage.get("steps")
    if isinstance(raw_steps, (str, bytes)) or not isinstance(raw_steps, Sequence) or not raw_steps:
        raise DefinitionError("must be a non-empty list of steps", path=f"{path}.steps")

    stage_env = {**inherited_env, **_parse_env(stage.get("env"), f"{path}.env")}
    steps = tuple(
        _parse_step(item, index, f"{path}.steps[{index}]", actions=actions, inherited_env=stage_env)
        for index, item in enumerate(raw_steps)
    )
    try:
        return StageDefinition(
            name=name,
            steps=steps,
            needs=needs,
            retries=retries,
            timeout_seconds=timeout,
        )
    except ValueError as exc:
        raise DefinitionError(str(exc), path=path) from exc


def _parse_step(
    raw: object,
    index: int,
    path: str,
    *,
    actions: ActionRegistry | None,
    inherited_env: Mapping[str, EnvBinding],
) -> StepDefinition:
    if not isinstance(raw, Mapping):
        raise DefinitionError("step must be a mapping", path=path)
    step = _normalize_keys(raw)
    _reject_unknown_keys(step, _STEP_KEYS, path)

    provided = [key for key in ("run", "command", "uses") if step.get(key) is not None]
    if len(provided) != 1:
        raise DefinitionError("exactly one of 'run', 'command' or 'uses' is required", path=path)

    name = step.get("name", f"step-{index + 1}")
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError("must be a non-empty string", path=f"{path}.name")

    command = step.get("command")
    if command is not None:
        if isinstance(command, str) or not isinstance(command, Sequence):
            raise DefinitionError("must be a list of strings", path=f"{path}.command")
        command = tuple(_scalar_text(part, f"{path}.command[{i}]") for i, part in enumerate(command))
        for i, part in enumerate(command):
            _reject_inline_expression(part, f"{path}.command[{i}]")

    uses = step.get("uses")
    if uses is not None:
        if not isinstance(uses, str) or not uses.strip():
            raise DefinitionError("must be a non-empty string", path=f"{path}.uses")
        if actions is not None:
            actions.resolve(uses, path=f"{path}.uses")

    run = step.get("run")
    if run is not None:
        if not isinstance(run, str):
            raise DefinitionError("must be a string", path=f"{path}.run")
        _reject_inline_expression(run, f"{path}.run")

    working_directory = step.get("working-directory")
    if working_directory is not None and not isinstance(working_directory, str):
        raise DefinitionError("must be a string", path=f"{path}.working-directory")

    env = {**inherited_env, **_parse_env(step.get("env"), f"{path}.env")}
    timeout = _parse_timeout(step, path)
    try:
        return StepDefinition(
            name=name.strip(),
            run=run,
            command=command,
            uses=uses,
            env=env,
            timeout_seconds=timeout,
            working_directory=working_directory,
        )
    except ValueError as exc:
        raise DefinitionError(str(exc), path=path) from exc


def _parse_needs(raw: object, path: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if not isinstance(raw, Sequence):
        raise DefinitionError("must be a stage name or a list of stage names", path=path)
    out: list[str] = []
    for index, item in enumerate(raw):
        if not isinstance(item, str) or not item.strip():
            raise DefinitionError("must be a non-empty string", path=f"{path}[{index}]")
        out.append(item)
    return tuple(out)


def _parse_timeout(node: Mapping[str, object], path: str) -> float | None:
    minutes = node.get("timeout-minutes")
    seconds = node.get("timeout-seconds")
    if minutes is not None and seconds is not None:
        raise DefinitionError("use either 'timeout-minutes' or 'timeout-seconds'", path=path)
    if minutes is not None:
        return _positive_number(minutes, f"{path}.timeout-minutes") * 60.0
    if seconds is not None:
        return _positive_number(seconds, f"{path}.timeout-seconds")
    return None


def _positive_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DefinitionError("must be a number", path=path)
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        raise DefinitionError("must be > 0", path=path)
    return parsed


def _parse_env(raw: object, path: str) -> dict[str, EnvBinding]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise DefinitionError("must be a mapping of variable name to value", path=path)
    return {
        str(key): _parse_binding(value, f"{path}.{key}")
        for key, value in raw.items()
    }


def _parse_binding(value: object, path: str) -> EnvBinding:
    text = _scalar_text(value, path)
    match = _SECRET_EXPRESSION.fullmatch(text.strip())
    if match is not None:
        if match.group("file"):
            return SecretFileRef(match.group("name"))
        return SecretRef(match.group("name"))
    if _EXPRESSION_MARKER in text:
        raise DefinitionError(
            "unsupported expression; only '${{ secrets.NAME }}' and "
            "'${{ secrets.NAME | file }}' are allowed as the whole value",
            path=path,
        )
    return LiteralValue(text)


def _reject_inline_expression(text: str, path: str) -> None:
    if _EXPRESSION_MARKER in text:
        raise DefinitionError(
            "expressions are not expanded in commands; bind the secret under 'env:' "
            "(e.g. TOKEN: '${{ secrets.TOKEN }}') and reference $TOKEN instead",
            path=path,
        )


def _scalar_text(value: object, path: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise DefinitionError(f"expected a scalar value, got {type(value).__name__}", path=path)


def _normalize_keys(node: Mapping[object, object]) -> dict[str, object]:
    # YAML 1.1 loads a bare ``on`` key as boolean True.
    out: dict[str, object] = {}
    for key, value in node.items():
        if key is True:
            out["on"] = value
        elif isinstance(key, str):
            out[key] = value
        else:
            out[str(key)] = value
    return out


def _reject_unknown_keys(node: Mapping[str, object], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(key for key in node if key not in allowed)
    if unknown:
        where = f"{path}.{unknown[0]}" if path else unknown[0]
        raise DefinitionError(f"unknown field(s): {', '.join(unknown)}", path=where)


__all__ = [
    "load_pipeline",
    "load_pipeline_document",
    "parse_pipeline",
    "trigger_branches",
]
