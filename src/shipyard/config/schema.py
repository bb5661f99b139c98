"""
shipyard — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helper and the typed settings view consumed by
  components.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secret values; secrets come from a secret store backend.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal, TypedDict

from shipyard.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_TRIGGER_BRANCH,
    LOGS_DIR,
    STATE_DB_PATH,
    WORKSPACES_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

WORKSPACE_STRATEGIES: Final[tuple[str, ...]] = ("copy", "git-worktree")
SECRET_BACKENDS: Final[tuple[str, ...]] = ("env", "file", "none")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_PREFIX_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_ACTION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-/@]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("workspace", "root"),
    ("secrets", "directory"),
    ("paths", "state_db"),
    ("paths", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class TriggerConfig(TypedDict):
    branches: list[str]


class OrchestratorSection(TypedDict):
    max_workers: int
    cancel_grace_seconds: float
    default_stage_retries: int


class RunnerConfig(TypedDict):
    step_timeout_seconds: float
    kill_grace_seconds: float
    shell: str
    inherit_env: list[str]


class WorkspaceConfig(TypedDict):
    root: str
    strategy: Literal["copy", "git-worktree"]
    keep: bool


class SecretsConfig(TypedDict):
    backend: Literal["env", "file", "none"]
    env_prefix: str
    directory: str


class PathsConfig(TypedDict):
    state_db: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool


class ShipyardConfig(TypedDict):
    meta: MetaConfig
    trigger: TriggerConfig
    orchestrator: OrchestratorSection
    runner: RunnerConfig
    workspace: WorkspaceConfig
    secrets: SecretsConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    actions: dict[str, list[str]]


DEFAULT_CONFIG: Final[ShipyardConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "trigger": {
        "branches": [DEFAULT_TRIGGER_BRANCH],
    },
    "orchestrator": {
        "max_workers": 1,
        "cancel_grace_seconds": 10.0,
        "default_stage_retries": 0,
    },
    "runner": {
        "step_timeout_seconds": 1800.0,
        "kill_grace_seconds": 5.0,
        "shell": "/bin/sh",
        "inherit_env": ["PATH", "LANG", "TZ"],
    },
    "workspace": {
        "root": str(WORKSPACES_DIR),
        "strategy": "copy",
        "keep": False,
    },
    "secrets": {
        "backend": "env",
        "env_prefix": "SHIPYARD_SECRET_",
        "directory": ".shipyard/secrets",
    },
    "paths": {
        "state_db": str(STATE_DB_PATH),
        "log_dir": str(LOGS_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
    },
    "actions": {},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


# ---------------------------------------------------------------------------
# Typed settings view
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    max_workers: int
    cancel_grace_seconds: float
    default_stage_retries: int


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    step_timeout_seconds: float
    kill_grace_seconds: float
    shell: str
    inherit_env: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class WorkspaceSettings:
    root: Path
    strategy: str
    keep: bool


@dataclass(frozen=True, slots=True)
class SecretsSettings:
    backend: str
    env_prefix: str
    directory: Path


@dataclass(frozen=True, slots=True)
class ShipyardSettings:
    """Validated, typed view of an effective config mapping."""

    trigger_branches: tuple[str, ...]
    orchestrator: OrchestratorSettings
    runner: RunnerSettings
    workspace: WorkspaceSettings
    secrets: SecretsSettings
    state_db: Path
    log_dir: Path
    log_level: str
    log_to_stdout: bool
    actions: Mapping[str, tuple[str, ...]]

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> ShipyardSettings:
        validated = assert_valid_config(merge_config(default_config(), config))
        orchestrator = validated["orchestrator"]
        runner = validated["runner"]
        workspace = validated["workspace"]
        secrets = validated["secrets"]
        paths = validated["paths"]
        observability = validated["observability"]
        return cls(
            trigger_branches=tuple(validated["trigger"]["branches"]),
            orchestrator=OrchestratorSettings(
                max_workers=orchestrator["max_workers"],
                cancel_grace_seconds=orchestrator["cancel_grace_seconds"],
                default_stage_retries=orchestrator["default_stage_retries"],
            ),
            runner=RunnerSettings(
                step_timeout_seconds=runner["step_timeout_seconds"],
                kill_grace_seconds=runner["kill_grace_seconds"],
                shell=runner["shell"],
                inherit_env=tuple(runner["inherit_env"]),
            ),
            workspace=WorkspaceSettings(
                root=Path(workspace["root"]),
                strategy=workspace["strategy"],
                keep=workspace["keep"],
            ),
            secrets=SecretsSettings(
                backend=secrets["backend"],
                env_prefix=secrets["env_prefix"],
                directory=Path(secrets["directory"]),
            ),
            state_db=Path(paths["state_db"]),
            log_dir=Path(paths["log_dir"]),
            log_level=observability["log_level"],
            log_to_stdout=observability["log_to_stdout"],
            actions={name: tuple(argv) for name, argv in validated["actions"].items()},
        )


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def default_config() -> ShipyardConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade shipyard.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the shipyard runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


# ---------------------------------------------------------------------------
# Section validators
# ---------------------------------------------------------------------------


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "trigger": _validate_trigger,
        "orchestrator": _validate_orchestrator,
        "runner": _validate_runner,
        "workspace": _validate_workspace,
        "secrets": _validate_secrets,
        "paths": _validate_paths,
        "observability": _validate_observability,
        "actions": _validate_actions,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(validators):
        _section(payload, key=key, issues=issues, validator=validators[key], out=out)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_obj = _as_object(raw, key, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, key, issues)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_trigger(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"branches"}, path, issues)
    _require_keys(payload, {"branches"}, path, issues)
    out: dict[str, Any] = {}
    if "branches" in payload:
        branches = _as_str_list(payload["branches"], _join(path, "branches"), issues)
        if branches is not None:
            if not branches:
                issues.add(_join(path, "branches"), "must contain at least one branch pattern")
            else:
                out["branches"] = branches
    return out


def _validate_orchestrator(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_workers", "cancel_grace_seconds", "default_stage_retries"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "max_workers" in payload:
        parsed_workers = _as_int(payload["max_workers"], _join(path, "max_workers"), issues, minimum=1)
        if parsed_workers is not None:
            out["max_workers"] = parsed_workers
    if "cancel_grace_seconds" in payload:
        parsed_grace = _as_float(
            payload["cancel_grace_seconds"], _join(path, "cancel_grace_seconds"), issues, minimum=0.0
        )
        if parsed_grace is not None:
            out["cancel_grace_seconds"] = parsed_grace
    if "default_stage_retries" in payload:
        parsed_retries = _as_int(
            payload["default_stage_retries"], _join(path, "default_stage_retries"), issues, minimum=0
        )
        if parsed_retries is not None:
            out["default_stage_retries"] = parsed_retries
    return out


def _validate_runner(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"step_timeout_seconds", "kill_grace_seconds", "shell", "inherit_env"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "step_timeout_seconds" in payload:
        parsed_timeout = _as_float(
            payload["step_timeout_seconds"], _join(path, "step_timeout_seconds"), issues, minimum=0.0
        )
        if parsed_timeout is not None:
            if parsed_timeout == 0:
                issues.add(_join(path, "step_timeout_seconds"), "must be > 0")
            else:
                out["step_timeout_seconds"] = parsed_timeout
    if "kill_grace_seconds" in payload:
        parsed_grace = _as_float(
            payload["kill_grace_seconds"], _join(path, "kill_grace_seconds"), issues, minimum=0.0
        )
        if parsed_grace is not None:
            out["kill_grace_seconds"] = parsed_grace
    if "shell" in payload:
        parsed_shell = _as_path_text(payload["shell"], _join(path, "shell"), issues)
        if parsed_shell is not None:
            out["shell"] = parsed_shell
    if "inherit_env" in payload:
        names = _as_str_list(payload["inherit_env"], _join(path, "inherit_env"), issues)
        if names is not None:
            for index, name in enumerate(names):
                if not _ENV_NAME_PATTERN.fullmatch(name):
                    issues.add(f"{_join(path, 'inherit_env')}[{index}]", "must be an env var name")
            out["inherit_env"] = names
    return out


def _validate_workspace(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"root", "strategy", "keep"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "root" in payload:
        parsed_root = _as_path_text(payload["root"], _join(path, "root"), issues)
        if parsed_root is not None:
            out["root"] = parsed_root
    if "strategy" in payload:
        parsed_strategy = _as_enum(
            payload["strategy"], _join(path, "strategy"), issues, allowed_values=WORKSPACE_STRATEGIES
        )
        if parsed_strategy is not None:
            out["strategy"] = parsed_strategy
    if "keep" in payload:
        parsed_keep = _as_bool(payload["keep"], _join(path, "keep"), issues)
        if parsed_keep is not None:
            out["keep"] = parsed_keep
    return out


def _validate_secrets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"backend", "env_prefix", "directory"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "backend" in payload:
        parsed_backend = _as_enum(
            payload["backend"], _join(path, "backend"), issues, allowed_values=SECRET_BACKENDS
        )
        if parsed_backend is not None:
            out["backend"] = parsed_backend
    if "env_prefix" in payload:
        parsed_prefix = _as_str(payload["env_prefix"], _join(path, "env_prefix"), issues)
        if parsed_prefix is not None:
            if not _ENV_PREFIX_PATTERN.fullmatch(parsed_prefix):
                issues.add(
                    _join(path, "env_prefix"),
                    "must be an upper-case env var prefix (example: SHIPYARD_SECRET_)",
                )
            else:
                out["env_prefix"] = parsed_prefix
    if "directory" in payload:
        parsed_directory = _as_path_text(payload["directory"], _join(path, "directory"), issues)
        if parsed_directory is not None:
            out["directory"] = parsed_directory
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"state_db", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        parsed_level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_to_stdout" in payload:
        parsed_stdout = _as_bool(payload["log_to_stdout"], _join(path, "log_to_stdout"), issues)
        if parsed_stdout is not None:
            out["log_to_stdout"] = parsed_stdout
    return out


def _validate_actions(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        action_path = _join(path, name)
        if not _ACTION_NAME_PATTERN.fullmatch(name):
            issues.add(action_path, "invalid action name")
            continue
        argv = _as_str_list(payload[name], action_path, issues)
        if argv is None:
            continue
        if not argv:
            issues.add(action_path, "argv must not be empty")
            continue
        out[name] = argv
    return out


# ---------------------------------------------------------------------------
# Scalar coercion helpers
# ---------------------------------------------------------------------------


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; configure a secrets backend instead",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    tokens = tuple(token for token in _normalize_key(key).split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        out[key] = _deep_copy_value(value[key])
    return out


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SECRET_BACKENDS",
    "WORKSPACE_STRATEGIES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "OrchestratorSettings",
    "RunnerSettings",
    "SecretsSettings",
    "ShipyardConfig",
    "ShipyardSettings",
    "WorkspaceSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
