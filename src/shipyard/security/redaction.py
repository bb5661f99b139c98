"""
shipyard — security redaction utilities

Purpose
- Redaction rules for step output, orchestrator logs and persisted run records.

What should be included in this file
- Secret-like text patterns (tokens, private keys, credentials embedded in URLs,
  kubeconfig key material).
- ``SecretMasker``: a registry of live secret plaintexts resolved for running
  steps, masked verbatim and in common encodings.

Functional requirements
- Secret values resolved during a step never appear in captured output or logs.
- Transforms are deterministic and idempotent for stable inputs.

Non-functional requirements
- Masking is safe for concurrent use by stages running on the same event loop
  and by logging threads.
"""

from __future__ import annotations

import base64
import re
import threading
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Final, TypeAlias
from urllib.parse import quote

REDACTED_VALUE: Final[str] = "***REDACTED***"

PatternLike: TypeAlias = str | re.Pattern[str]

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth",
        "auth_token",
        "authorization",
        "client_secret",
        "credential",
        "credentials",
        "kubeconfig",
        "password",
        "passwd",
        "private_key",
        "registry_password",
        "secret",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_client_secret",
    "_private_key",
    "_password",
    "_passwd",
    "_secret",
    "_token",
)

_DERIVED_VARIANT_MIN_LENGTH: Final[int] = 4

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_DEFAULT_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_header",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*(?:bearer|basic)\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="url_credentials",
        pattern=re.compile(r"(\b[a-z][a-z0-9+.\-]*://[^\s:/@]+:)([^\s@/]+)(@)"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|refresh[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="kubeconfig_key_material",
        pattern=re.compile(
            r"(?m)(^\s*(?:client-key-data|client-certificate-data|token)\s*:\s*)(\S{8,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="docker_auth",
        pattern=re.compile(r"(\"auth\"\s*:\s*\")([A-Za-z0-9+/=]{8,})(\")"),
        sensitive_group=2,
    ),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


@dataclass(frozen=True, slots=True)
class RedactionConfig:
    """Policy that controls pattern-based redaction."""

    replacement: str = REDACTED_VALUE
    key_denylist: frozenset[str] = DEFAULT_SENSITIVE_KEY_DENYLIST
    text_denylist_patterns: tuple[PatternLike, ...] = ()
    enable_default_rules: bool = True

    def __post_init__(self) -> None:
        if not self.replacement:
            raise ValueError("replacement must be non-empty")


DEFAULT_REDACTION_CONFIG: Final[RedactionConfig] = RedactionConfig()


class SecretMasker:
    """
    Reference-counted registry of secret plaintexts that must never be emitted.

    Values are registered by the stage runner for the lifetime of a step and
    masked verbatim, line by line for multi-line values, and in base64 and
    percent-encoded form.
    """

    def __init__(self, *, replacement: str = REDACTED_VALUE) -> None:
        self._replacement = replacement
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._pattern: re.Pattern[str] | None = None

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._counts)

    def register(self, value: str) -> None:
        variants = _variants(value)
        if not variants:
            return
        with self._lock:
            self._counts.update(variants)
            self._pattern = None

    def release(self, value: str) -> None:
        variants = _variants(value)
        with self._lock:
            for variant in variants:
                remaining = self._counts[variant] - 1
                if remaining > 0:
                    self._counts[variant] = remaining
                else:
                    self._counts.pop(variant, None)
            self._pattern = None

    @contextmanager
    def masking(self, values: Iterable[str]) -> Iterator[None]:
        """Register ``values`` for the duration of the block."""
        registered = [value for value in values if value]
        for value in registered:
            self.register(value)
        try:
            yield
        finally:
            for value in registered:
                self.release(value)

    @property
    def longest(self) -> int:
        """Length of the longest registered form; 0 when nothing is registered."""
        with self._lock:
            return max(map(len, self._counts), default=0)

    def mask(self, text: str) -> str:
        pattern = self._compiled()
        if pattern is None or not text:
            return text
        return pattern.sub(self._replacement, text)

    def spans(self, text: str) -> list[tuple[int, int]]:
        pattern = self._compiled()
        if pattern is None:
            return []
        return [match.span() for match in pattern.finditer(text)]

    def _compiled(self) -> re.Pattern[str] | None:
        with self._lock:
            if self._pattern is None and self._counts:
                ordered = sorted(self._counts, key=lambda item: (-len(item), item))
                self._pattern = re.compile("|".join(re.escape(item) for item in ordered))
            return self._pattern


class Redactor:
    """Pattern rules plus live secret masking; the single text sanitizer for output and logs."""

    __slots__ = ("_masker", "_rules", "_replacement")

    def __init__(
        self,
        masker: SecretMasker | None = None,
        *,
        config: RedactionConfig | None = None,
    ) -> None:
        resolved = config if config is not None else DEFAULT_REDACTION_CONFIG
        self._masker = masker
        self._replacement = resolved.replacement
        self._rules = _resolve_rules(resolved)

    @property
    def masker(self) -> SecretMasker | None:
        return self._masker

    def __call__(self, text: str) -> str:
        return self.redact(text)

    def redact(self, text: str) -> str:
        redacted = self._masker.mask(text) if self._masker is not None else text
        for rule in self._rules:
            redacted = _apply_text_rule(redacted, rule=rule, replacement=self._replacement)
        return redacted


def redact_text(
    text: str,
    *,
    config: RedactionConfig | None = None,
    masker: SecretMasker | None = None,
) -> str:
    """Redact secret-like text. Deterministic and idempotent for stable inputs."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    return Redactor(masker, config=config).redact(text)


def is_sensitive_key(key: str, *, config: RedactionConfig | None = None) -> bool:
    """Return whether ``key`` names a credential-like field."""

    resolved = config if config is not None else DEFAULT_REDACTION_CONFIG
    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in resolved.key_denylist:
        return True
    return any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES)


def redact_structure(
    value: object,
    *,
    config: RedactionConfig | None = None,
    masker: SecretMasker | None = None,
    redact_keys: bool = True,
) -> object:
    """
    Return a deep-redacted copy of nested JSON-like structures.

    With ``redact_keys`` values under sensitive keys are replaced wholesale;
    every string is passed through the text redactor.
    """

    redactor = Redactor(masker, config=config)
    resolved = config if config is not None else DEFAULT_REDACTION_CONFIG
    return _redact_structure(value, redactor=redactor, config=resolved, redact_keys=redact_keys)


def _redact_structure(
    value: object,
    *,
    redactor: Redactor,
    config: RedactionConfig,
    redact_keys: bool,
) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redactor.redact(value)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key in sorted(value, key=str):
            item = value[key]
            if redact_keys and isinstance(key, str) and is_sensitive_key(key, config=config):
                out[key] = config.replacement if item is not None else None
            else:
                out[key] = _redact_structure(
                    item, redactor=redactor, config=config, redact_keys=redact_keys
                )
        return out
    if isinstance(value, (list, tuple)):
        items = [
            _redact_structure(item, redactor=redactor, config=config, redact_keys=redact_keys)
            for item in value
        ]
        return items if isinstance(value, list) else tuple(items)
    return value


def _variants(value: str) -> set[str]:
    if not isinstance(value, str) or not value:
        return set()
    variants = {value}
    if len(value) < _DERIVED_VARIANT_MIN_LENGTH:
        return variants

    stripped = value.strip()
    if len(stripped) >= _DERIVED_VARIANT_MIN_LENGTH:
        variants.add(stripped)
    for line in value.splitlines():
        line = line.strip()
        if len(line) >= _DERIVED_VARIANT_MIN_LENGTH:
            variants.add(line)
    raw = value.encode("utf-8")
    variants.add(base64.b64encode(raw).decode("ascii"))
    variants.add(base64.b64encode(raw).decode("ascii").rstrip("="))
    encoded = quote(value, safe="")
    if encoded != value:
        variants.add(encoded)
    return variants


def _resolve_rules(config: RedactionConfig) -> tuple[_TextRule, ...]:
    custom: list[_TextRule] = []
    for index, pattern in enumerate(config.text_denylist_patterns):
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)
        custom.append(_TextRule(name=f"custom_denylist_{index}", pattern=compiled))
    base = _DEFAULT_TEXT_RULES if config.enable_default_rules else ()
    return base + tuple(custom)


def _apply_text_rule(text: str, *, rule: _TextRule, replacement: str) -> str:
    def repl(match: re.Match[str]) -> str:
        if rule.sensitive_group is None:
            return replacement
        full = match.group(0)
        start, end = match.span(rule.sensitive_group)
        offset_start = start - match.start(0)
        offset_end = end - match.start(0)
        return f"{full[:offset_start]}{replacement}{full[offset_end:]}"

    return rule.pattern.sub(repl, text)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_REDACTION_CONFIG",
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "RedactionConfig",
    "Redactor",
    "SecretMasker",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
