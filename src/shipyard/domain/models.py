"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final, NoReturn, TypeVar, cast

from shipyard.constants import RUN_RECORD_SCHEMA_VERSION
from shipyard.domain import ids as domain_ids
from shipyard.domain.errors import DefinitionError, ErrorKind

if TYPE_CHECKING:
    from shipyard.planning.stage_graph import StageGraph


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT: Final[int] = 8192
_MAX_NAME: Final[int] = 128
_ENV_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SECRET_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    NOT_RUN = "not_run"


class TriggerSource(StrEnum):
    PUSH = "push"
    WEBHOOK = "webhook"
    MANUAL = "manual"


STAGE_TERMINAL_STATUSES: Final[frozenset[StageStatus]] = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}
)
RUN_TERMINAL_STATUSES: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
)

_STAGE_TRANSITIONS: Final[dict[StageStatus, frozenset[StageStatus]]] = {
    StageStatus.PENDING: frozenset(
        {StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.CANCELLED}
    ),
    StageStatus.RUNNING: frozenset(
        {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED}
    ),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
    StageStatus.CANCELLED: frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# Environment bindings
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LiteralValue:
    """Plain environment value copied into the step environment as-is."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            _definition_fail("LiteralValue.value", "must be a string")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"kind": "literal", "value": self.value}


@dataclass(frozen=True, slots=True)
class SecretRef:
    """Secret resolved just-in-time and injected as the variable's value."""

    name: str

    def __post_init__(self) -> None:
        _validate_secret_name(self.name, "SecretRef.name")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"kind": "secret", "name": self.name}


@dataclass(frozen=True, slots=True)
class SecretFileRef:
    """Secret materialised as a private file; the variable receives its path."""

    name: str

    def __post_init__(self) -> None:
        _validate_secret_name(self.name, "SecretFileRef.name")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"kind": "secret_file", "name": self.name}


EnvBinding = LiteralValue | SecretRef | SecretFileRef
_BINDING_TYPES: Final = (LiteralValue, SecretRef, SecretFileRef)


def env_binding_from_dict(data: object, path: str) -> EnvBinding:
    parsed = _expect_object(data, path, required={"kind"}, optional={"value", "name"})
    kind = parsed["kind"]
    if kind == "literal":
        return LiteralValue(_as_str(parsed.get("value", ""), f"{path}.value", min_len=0, strip=False))
    if kind == "secret":
        return SecretRef(_as_str(parsed.get("name"), f"{path}.name"))
    if kind == "secret_file":
        return SecretFileRef(_as_str(parsed.get("name"), f"{path}.name"))
    _fail(f"{path}.kind", f"unknown binding kind {kind!r}")


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StepDefinition(CanonicalModel):
    """One external command invocation within a stage."""

    name: str
    run: str | None = None
    command: tuple[str, ...] | None = None
    uses: str | None = None
    env: Mapping[str, EnvBinding] = field(default_factory=dict)
    timeout_seconds: float | None = None
    working_directory: str | None = None

    def __post_init__(self) -> None:
        path = f"step {self.name!r}"
        _validate_name(self.name, "StepDefinition.name")
        provided = [
            key
            for key, value in (("run", self.run), ("command", self.command), ("uses", self.uses))
            if value is not None
        ]
        if len(provided) != 1:
            _definition_fail(path, "exactly one of 'run', 'command' or 'uses' is required")
        if self.run is not None and (not isinstance(self.run, str) or not self.run.strip()):
            _definition_fail(f"{path}.run", "must be a non-empty string")
        if self.command is not None:
            command = tuple(self.command)
            if not command or not all(isinstance(part, str) and part for part in command):
                _definition_fail(f"{path}.command", "must be a non-empty list of strings")
            object.__setattr__(self, "command", command)
        if self.uses is not None:
            _validate_name(self.uses, f"{path}.uses")

        env = dict(self.env)
        for key, binding in env.items():
            if not isinstance(key, str) or not _ENV_NAME_RE.fullmatch(key):
                _definition_fail(f"{path}.env", f"invalid environment variable name {key!r}")
            if not isinstance(binding, _BINDING_TYPES):
                _definition_fail(f"{path}.env.{key}", "must be LiteralValue, SecretRef or SecretFileRef")
        object.__setattr__(self, "env", env)

        _validate_timeout(self.timeout_seconds, f"{path}.timeout_seconds")
        if self.working_directory is not None:
            _validate_relative_path(self.working_directory, f"{path}.working_directory")

    def secret_names(self) -> tuple[str, ...]:
        return tuple(
            sorted(
                binding.name
                for binding in self.env.values()
                if isinstance(binding, (SecretRef, SecretFileRef))
            )
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StepDefinition:
        parsed = _expect_object(
            data,
            "StepDefinition",
            required={"name"},
            optional={"run", "command", "uses", "env", "timeout_seconds", "working_directory"},
        )
        raw_env = parsed.get("env") or {}
        if not isinstance(raw_env, Mapping):
            _fail("StepDefinition.env", "expected object")
        command = parsed.get("command")
        return cls(
            name=_as_str(parsed["name"], "StepDefinition.name"),
            run=_as_optional_str(parsed.get("run"), "StepDefinition.run"),
            command=(
                tuple(_as_str(part, "StepDefinition.command[]") for part in _as_sequence(command, "StepDefinition.command"))
                if command is not None
                else None
            ),
            uses=_as_optional_str(parsed.get("uses"), "StepDefinition.uses"),
            env={
                str(key): env_binding_from_dict(value, f"StepDefinition.env.{key}")
                for key, value in raw_env.items()
            },
            timeout_seconds=_as_optional_float(parsed.get("timeout_seconds"), "StepDefinition.timeout_seconds"),
            working_directory=_as_optional_str(parsed.get("working_directory"), "StepDefinition.working_directory"),
        )


@dataclass(frozen=True, slots=True)
class StageDefinition(CanonicalModel):
    """Named unit of work: ordered steps gated by ``needs``."""

    name: str
    steps: tuple[StepDefinition, ...]
    needs: tuple[str, ...] = ()
    retries: int = 0
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        _validate_name(self.name, "StageDefinition.name")
        path = f"stage {self.name!r}"
        steps = tuple(self.steps)
        if not steps:
            _definition_fail(f"{path}.steps", "must contain at least one step")
        if not all(isinstance(step, StepDefinition) for step in steps):
            _definition_fail(f"{path}.steps", "must contain StepDefinition instances")
        step_names = [step.name for step in steps]
        if len(set(step_names)) != len(step_names):
            _definition_fail(f"{path}.steps", "step names must be unique within a stage")
        object.__setattr__(self, "steps", steps)

        needs = tuple(self.needs)
        for dependency in needs:
            _validate_name(dependency, f"{path}.needs")
        if len(set(needs)) != len(needs):
            _definition_fail(f"{path}.needs", "contains duplicate values")
        if self.name in needs:
            _definition_fail(f"{path}.needs", "stage must not depend on itself")
        object.__setattr__(self, "needs", needs)

        if isinstance(self.retries, bool) or not isinstance(self.retries, int) or self.retries < 0:
            _definition_fail(f"{path}.retries", "must be an integer >= 0")
        _validate_timeout(self.timeout_seconds, f"{path}.timeout_seconds")

    def secret_names(self) -> tuple[str, ...]:
        names: set[str] = set()
        for step in self.steps:
            names.update(step.secret_names())
        return tuple(sorted(names))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageDefinition:
        parsed = _expect_object(
            data,
            "StageDefinition",
            required={"name", "steps"},
            optional={"needs", "retries", "timeout_seconds"},
        )
        return cls(
            name=_as_str(parsed["name"], "StageDefinition.name"),
            steps=tuple(
                StepDefinition.from_dict(_expect_mapping(item, f"StageDefinition.steps[{index}]"))
                for index, item in enumerate(_as_sequence(parsed["steps"], "StageDefinition.steps"))
            ),
            needs=_as_str_tuple(parsed.get("needs", ()), "StageDefinition.needs"),
            retries=_as_int(parsed.get("retries", 0), "StageDefinition.retries", minimum=0),
            timeout_seconds=_as_optional_float(parsed.get("timeout_seconds"), "StageDefinition.timeout_seconds"),
        )


@dataclass(frozen=True, slots=True)
class PipelineDefinition(CanonicalModel):
    """Ordered set of stage definitions; immutable once loaded."""

    name: str
    stages: tuple[StageDefinition, ...]

    def __post_init__(self) -> None:
        _validate_name(self.name, "PipelineDefinition.name")
        stages = tuple(self.stages)
        if not stages:
            _definition_fail("PipelineDefinition.stages", "must contain at least one stage")
        seen: set[str] = set()
        for stage in stages:
            if not isinstance(stage, StageDefinition):
                _definition_fail("PipelineDefinition.stages", "must contain StageDefinition instances")
            if stage.name in seen:
                _definition_fail("PipelineDefinition.stages", f"duplicate stage name {stage.name!r}")
            seen.add(stage.name)
        object.__setattr__(self, "stages", stages)

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    def stage(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(f"unknown stage: {name}")

    def validate(self) -> StageGraph:
        """Build the dependency graph, raising ``DefinitionError`` on cycles or unknown needs."""
        from shipyard.planning.stage_graph import StageGraph

        graph = StageGraph.from_pipeline(self)
        graph.topological_order()
        return graph

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineDefinition:
        parsed = _expect_object(data, "PipelineDefinition", required={"name", "stages"})
        return cls(
            name=_as_str(parsed["name"], "PipelineDefinition.name"),
            stages=tuple(
                StageDefinition.from_dict(_expect_mapping(item, f"PipelineDefinition.stages[{index}]"))
                for index, item in enumerate(_as_sequence(parsed["stages"], "PipelineDefinition.stages"))
            ),
        )


# ---------------------------------------------------------------------------
# Runs and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TriggerEvent(CanonicalModel):
    branch: str
    commit_ref: str
    received_at: datetime = field(default_factory=utc_now)
    source: TriggerSource = TriggerSource.PUSH

    def __post_init__(self) -> None:
        _as_str(self.branch, "TriggerEvent.branch", max_len=255)
        _as_str(self.commit_ref, "TriggerEvent.commit_ref", max_len=255)
        object.__setattr__(self, "received_at", _as_datetime(self.received_at, "TriggerEvent.received_at"))
        object.__setattr__(self, "source", _as_enum(TriggerSource, self.source, "TriggerEvent.source"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TriggerEvent:
        parsed = _expect_object(
            data,
            "TriggerEvent",
            required={"branch", "commit_ref", "received_at"},
            optional={"source"},
        )
        return cls(
            branch=_as_str(parsed["branch"], "TriggerEvent.branch"),
            commit_ref=_as_str(parsed["commit_ref"], "TriggerEvent.commit_ref"),
            received_at=_as_datetime(parsed["received_at"], "TriggerEvent.received_at"),
            source=_as_enum(TriggerSource, parsed.get("source", "push"), "TriggerEvent.source"),
        )


@dataclass(frozen=True, slots=True)
class StepResult(CanonicalModel):
    name: str
    status: StepStatus
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int = 0
    output_ref: str | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StepResult:
        parsed = _expect_object(
            data,
            "StepResult",
            required={"name", "status"},
            optional={
                "exit_code",
                "started_at",
                "finished_at",
                "duration_ms",
                "output_ref",
                "reason",
            },
        )
        exit_code = parsed.get("exit_code")
        return cls(
            name=_as_str(parsed["name"], "StepResult.name"),
            status=_as_enum(StepStatus, parsed["status"], "StepResult.status"),
            exit_code=_as_int(exit_code, "StepResult.exit_code") if exit_code is not None else None,
            started_at=_as_optional_datetime(parsed.get("started_at"), "StepResult.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "StepResult.finished_at"),
            duration_ms=_as_int(parsed.get("duration_ms", 0), "StepResult.duration_ms", minimum=0),
            output_ref=_as_optional_str(parsed.get("output_ref"), "StepResult.output_ref"),
            reason=_as_optional_str(parsed.get("reason"), "StepResult.reason"),
        )


@dataclass(slots=True)
class StageResult(CanonicalModel):
    """Mutable per-stage record owned by the orchestrator for one run."""

    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    reason: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0
    steps: tuple[StepResult, ...] = ()

    def __post_init__(self) -> None:
        self.status = _as_enum(StageStatus, self.status, "StageResult.status")
        if self.error_kind is not None:
            self.error_kind = _as_enum(ErrorKind, self.error_kind, "StageResult.error_kind")
        if self.status in STAGE_TERMINAL_STATUSES and not self.reason:
            _fail("StageResult.reason", f"terminal status {self.status.value!r} requires a reason")

    @property
    def is_terminal(self) -> bool:
        return self.status in STAGE_TERMINAL_STATUSES

    def transition(
        self,
        status: StageStatus,
        *,
        reason: str | None = None,
        error_kind: ErrorKind | None = None,
        at: datetime | None = None,
    ) -> None:
        """Apply a state-machine transition; illegal transitions raise ``ValueError``."""
        allowed = _STAGE_TRANSITIONS[self.status]
        if status not in allowed:
            _fail(
                "StageResult.status",
                f"illegal transition {self.status.value} -> {status.value}",
            )
        timestamp = at if at is not None else utc_now()
        if status is StageStatus.RUNNING:
            self.started_at = timestamp
        elif status in STAGE_TERMINAL_STATUSES:
            if not reason:
                _fail("StageResult.reason", f"terminal status {status.value!r} requires a reason")
            self.finished_at = timestamp
        self.status = status
        if reason is not None:
            self.reason = reason
        if error_kind is not None:
            self.error_kind = error_kind

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageResult:
        parsed = _expect_object(
            data,
            "StageResult",
            required={"status"},
            optional={"started_at", "finished_at", "reason", "error_kind", "attempts", "steps"},
        )
        error_kind = parsed.get("error_kind")
        return cls(
            status=_as_enum(StageStatus, parsed["status"], "StageResult.status"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "StageResult.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "StageResult.finished_at"),
            reason=_as_optional_str(parsed.get("reason"), "StageResult.reason"),
            error_kind=(
                _as_enum(ErrorKind, error_kind, "StageResult.error_kind")
                if error_kind is not None
                else None
            ),
            attempts=_as_int(parsed.get("attempts", 0), "StageResult.attempts", minimum=0),
            steps=tuple(
                StepResult.from_dict(_expect_mapping(item, f"StageResult.steps[{index}]"))
                for index, item in enumerate(_as_sequence(parsed.get("steps", []), "StageResult.steps"))
            ),
        )


@dataclass(frozen=True, slots=True)
class RunOutcome(CanonicalModel):
    """Terminal summary returned by ``PipelineOrchestrator.start``."""

    run_id: str
    status: RunStatus
    stage_statuses: Mapping[str, StageStatus]
    reason: str

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED


@dataclass(slots=True)
class Run(CanonicalModel):
    """One instantiation of a pipeline definition triggered by an event."""

    id: str
    pipeline: PipelineDefinition
    trigger: TriggerEvent
    created_at: datetime = field(default_factory=utc_now)
    status: RunStatus = RunStatus.CREATED
    stage_results: dict[str, StageResult] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    reason: str | None = None
    config_values: dict[str, str] = field(default_factory=dict)
    schema_version: int = RUN_RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_run_id(self.id)
        except ValueError as exc:
            _fail("Run.id", str(exc))
        self.status = _as_enum(RunStatus, self.status, "Run.status")
        self.created_at = _as_datetime(self.created_at, "Run.created_at")
        for stage_name in self.pipeline.stage_names:
            self.stage_results.setdefault(stage_name, StageResult())
        unknown = sorted(set(self.stage_results) - set(self.pipeline.stage_names))
        if unknown:
            _fail("Run.stage_results", f"results for undefined stages: {unknown}")
        for key, value in self.config_values.items():
            if not _ENV_NAME_RE.fullmatch(key) or not isinstance(value, str):
                _fail("Run.config_values", f"invalid config value binding {key!r}")

    @classmethod
    def create(
        cls,
        pipeline: PipelineDefinition,
        trigger: TriggerEvent,
        *,
        config_values: Mapping[str, str] | None = None,
        run_id: str | None = None,
    ) -> Run:
        return cls(
            id=run_id if run_id is not None else domain_ids.generate_run_id(),
            pipeline=pipeline,
            trigger=trigger,
            config_values=dict(config_values or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    def stage_statuses(self) -> dict[str, StageStatus]:
        return {name: self.stage_results[name].status for name in self.pipeline.stage_names}

    def outcome(self) -> RunOutcome:
        if not self.is_terminal:
            _fail("Run.status", f"run {self.id} is not terminal ({self.status.value})")
        return RunOutcome(
            run_id=self.id,
            status=self.status,
            stage_statuses=self.stage_statuses(),
            reason=self.reason or self.status.value,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Run:
        parsed = _expect_object(
            data,
            "Run",
            required={"id", "pipeline", "trigger", "created_at", "status"},
            optional={
                "stage_results",
                "started_at",
                "finished_at",
                "reason",
                "config_values",
                "schema_version",
            },
        )
        raw_results = parsed.get("stage_results") or {}
        if not isinstance(raw_results, Mapping):
            _fail("Run.stage_results", "expected object")
        raw_config = parsed.get("config_values") or {}
        if not isinstance(raw_config, Mapping):
            _fail("Run.config_values", "expected object")
        return cls(
            id=_as_str(parsed["id"], "Run.id"),
            pipeline=PipelineDefinition.from_dict(_expect_mapping(parsed["pipeline"], "Run.pipeline")),
            trigger=TriggerEvent.from_dict(_expect_mapping(parsed["trigger"], "Run.trigger")),
            created_at=_as_datetime(parsed["created_at"], "Run.created_at"),
            status=_as_enum(RunStatus, parsed["status"], "Run.status"),
            stage_results={
                str(name): StageResult.from_dict(_expect_mapping(item, f"Run.stage_results.{name}"))
                for name, item in raw_results.items()
            },
            started_at=_as_optional_datetime(parsed.get("started_at"), "Run.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "Run.finished_at"),
            reason=_as_optional_str(parsed.get("reason"), "Run.reason"),
            config_values={str(key): _as_str(value, f"Run.config_values.{key}", min_len=0, strip=False) for key, value in raw_config.items()},
            schema_version=_as_int(parsed.get("schema_version", RUN_RECORD_SCHEMA_VERSION), "Run.schema_version", minimum=1),
        )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _definition_fail(path: str, message: str) -> NoReturn:
    raise DefinitionError(message, path=path)


def _validate_name(value: object, path: str) -> None:
    if not isinstance(value, str) or not value.strip():
        _definition_fail(path, "must be a non-empty string")
    if len(value) > _MAX_NAME:
        _definition_fail(path, f"must be <= {_MAX_NAME} characters")
    if value != value.strip():
        _definition_fail(path, "must not have leading or trailing whitespace")


def _validate_secret_name(value: object, path: str) -> None:
    if not isinstance(value, str) or not _SECRET_NAME_RE.fullmatch(value):
        _definition_fail(path, f"invalid secret name {value!r}")


def _validate_timeout(value: object, path: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _definition_fail(path, "must be a number")
    if not math.isfinite(value) or value <= 0:
        _definition_fail(path, "must be > 0")


def _validate_relative_path(value: object, path: str) -> None:
    if not isinstance(value, str) or not value or "\x00" in value:
        _definition_fail(path, "must be a non-empty path")
    pure = PurePosixPath(value)
    if pure.is_absolute():
        _definition_fail(path, "must be a relative POSIX path")
    if any(part == ".." for part in pure.parts):
        _definition_fail(path, "must not contain '..' traversal")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = dict(_expect_mapping(value, path))
    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _expect_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
    return cast("Mapping[str, object]", value)


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT, strip: bool = True) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_float(value: object, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path)))


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, datetime):
        return iso8601z(value)
    if isinstance(value, _BINDING_TYPES):
        return value.to_dict()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "RUN_TERMINAL_STATUSES",
    "STAGE_TERMINAL_STATUSES",
    "CanonicalModel",
    "EnvBinding",
    "JSONValue",
    "LiteralValue",
    "PipelineDefinition",
    "Run",
    "RunOutcome",
    "RunStatus",
    "SecretFileRef",
    "SecretRef",
    "StageDefinition",
    "StageResult",
    "StageStatus",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "TriggerEvent",
    "TriggerSource",
    "canonical_json",
    "env_binding_from_dict",
    "iso8601z",
    "utc_now",
]
