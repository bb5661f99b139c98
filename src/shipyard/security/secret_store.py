"""
shipyard — secret store adapters

Purpose
- Narrow ``resolve(name) -> SecretValue`` interface between the stage runner
  and concrete credential backends.

Functional requirements
- Undeclared names raise ``SecretNotFoundError``.
- Adapters never log or persist resolved values and keep no cross-stage cache;
  a value is handed only to the step that requested it.
- Reads are safe under concurrent access.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from shipyard.domain.errors import SecretNotFoundError
from shipyard.security.redaction import REDACTED_VALUE

_FILE_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_.\-]+$")


class SecretValue:
    """Opaque wrapper whose ``repr``/``str`` never show the plaintext."""

    __slots__ = ("_name", "_value")

    def __init__(self, name: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("secret value must be a string")
        self._name = name
        self._value = value

    @property
    def name(self) -> str:
        return self._name

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"SecretValue(name={self._name!r}, value={REDACTED_VALUE!r})"

    def __str__(self) -> str:
        return REDACTED_VALUE

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretValue):
            return NotImplemented
        return self._name == other._name and self._value == other._value

    def __hash__(self) -> int:
        return hash((self._name, self._value))


@runtime_checkable
class SecretStore(Protocol):
    def resolve(self, name: str) -> SecretValue: ...


class MappingSecretStore:
    """In-memory store over an immutable snapshot of ``name -> plaintext``."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets: Mapping[str, str] = dict(secrets or {})

    def resolve(self, name: str) -> SecretValue:
        try:
            return SecretValue(name, self._secrets[name])
        except KeyError:
            raise SecretNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._secrets


class EnvSecretStore:
    """Secrets exposed as ``<prefix><NAME>`` environment variables of the orchestrator process."""

    def __init__(self, *, prefix: str = "SHIPYARD_SECRET_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def resolve(self, name: str) -> SecretValue:
        value = self._environ.get(f"{self._prefix}{name}")
        if value is None:
            raise SecretNotFoundError(name)
        return SecretValue(name, value)


class FileSecretStore:
    """One file per secret in ``directory`` (mounted-secret layout); trailing newline stripped."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    def resolve(self, name: str) -> SecretValue:
        if not _FILE_NAME_RE.fullmatch(name) or name in {".", ".."}:
            raise SecretNotFoundError(name)
        path = self._directory / name
        try:
            raw = path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise SecretNotFoundError(name) from None
        return SecretValue(name, raw[:-1] if raw.endswith("\n") else raw)


class ChainSecretStore:
    """Consult stores in order; the first that declares the name wins."""

    def __init__(self, stores: Sequence[SecretStore]) -> None:
        if not stores:
            raise ValueError("stores must not be empty")
        self._stores = tuple(stores)

    def resolve(self, name: str) -> SecretValue:
        for store in self._stores:
            try:
                return store.resolve(name)
            except SecretNotFoundError:
                continue
        raise SecretNotFoundError(name)


__all__ = [
    "ChainSecretStore",
    "EnvSecretStore",
    "FileSecretStore",
    "MappingSecretStore",
    "SecretStore",
    "SecretValue",
]
