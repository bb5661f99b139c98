"""
shipyard — runtime config loader.

Purpose
- Produce the effective configuration from built-in defaults, a TOML file,
  ``SHIPYARD_<SECTION>_<KEY>`` environment variables and CLI overrides, in
  increasing order of precedence.

Functional requirements
- An explicitly named config file must exist; the implicit ``./shipyard.toml``
  is optional.
- Environment values are coerced to the type of the value they replace.
- Relative paths are resolved against the directory holding the config file.
- The merged result is validated before any component is built.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from shipyard.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "shipyard.toml"
ENV_PREFIX: Final[str] = "SHIPYARD_"

# Free-form tables have no fixed keys to bind environment variables to.
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"actions", "meta"})

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""

    path = (Path(config_path).expanduser() if config_path is not None else Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    file_layer = _read_toml(path, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    env_layer = _env_layer(os.environ if environ is None else environ)
    cli_layer: dict[str, Any] = {}
    for dotted, value in sorted((cli_overrides or {}).items()):
        if value is None:
            continue
        keys = tuple(part for part in dotted.split(".") if part)
        if not keys:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(cli_layer, keys, value)

    config = assert_valid_config(merge_config(merge_config(config, env_layer), cli_layer))
    return normalize_paths(config, base_dir=path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path field made absolute against ``base_dir``."""

    normalized = merge_config({}, config)
    for keys in PATH_FIELDS:
        section = normalized.get(keys[0])
        if not isinstance(section, dict) or not isinstance(section.get(keys[1]), str):
            continue
        candidate = Path(os.path.expandvars(section[keys[1]])).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        section[keys[1]] = Path(os.path.normpath(candidate)).as_posix()
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of the effective config."""

    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def env_name_for(keys: tuple[str, ...]) -> str:
    """``("orchestrator", "max_workers")`` -> ``SHIPYARD_ORCHESTRATOR_MAX_WORKERS``."""

    return ENV_PREFIX + "_".join(key.upper() for key in keys)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect bound variables, coerced to the type of the built-in default."""

    layer: dict[str, Any] = {}
    for keys, current in _leaves(default_config()):
        if keys[0] in _UNBOUND_SECTIONS:
            continue
        name = env_name_for(keys)
        raw = environ.get(name)
        if raw is None:
            continue
        coerce = _coercer_for(current)
        if coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(keys)}: {exc}") from exc
        _assign(layer, keys, value)
    return layer


def _leaves(payload: Mapping[str, object], prefix: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _coercer_for(current: object) -> Callable[[str], object] | None:
    if isinstance(current, bool):
        return _to_bool
    if isinstance(current, int):
        return _to_int
    if isinstance(current, float):
        return _to_float
    if isinstance(current, str):
        return str
    if isinstance(current, (list, tuple)):
        # SHIPYARD_TRIGGER_BRANCHES=main,release/*
        return lambda raw: [item.strip() for item in raw.split(",") if item.strip()]
    return None


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _assign(target: dict[str, Any], keys: tuple[str, ...], value: object) -> None:
    for key in keys[:-1]:
        child = target.get(key)
        if not isinstance(child, dict):
            child = target[key] = {}
        target = child
    target[keys[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_name_for",
    "load_config",
    "normalize_paths",
]
