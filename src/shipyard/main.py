"""Executable CLI entrypoint for ``shipyard``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit codes; scripts wrapping ``shipyard`` rely on these values."""

    SUCCESS = 0
    RUN_FAILED = 1
    USAGE_ERROR = 2
    RUN_CANCELLED = 3
    TRIGGER_IGNORED = 4
    INTERNAL_ERROR = 70


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and map whatever comes out of it onto an ``ExitCode``."""

    try:
        from shipyard.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return ExitCode.RUN_CANCELLED
    except Exception as exc:  # noqa: BLE001 - process boundary
        if _is_usage_error(exc):
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
            return ExitCode.USAGE_ERROR
        traceback.print_exception(exc, file=sys.stderr)
        return ExitCode.INTERNAL_ERROR


def _normalize_exit_code(raw_code: object) -> int:
    if raw_code is None:
        return ExitCode.SUCCESS
    if isinstance(raw_code, int):
        try:
            return ExitCode(raw_code)
        except ValueError:
            return ExitCode.INTERNAL_ERROR
    if isinstance(raw_code, str) and raw_code.strip():
        print(raw_code.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


def _is_usage_error(exc: BaseException) -> bool:
    from shipyard.config.schema import ConfigValidationError
    from shipyard.domain.errors import DefinitionError

    # ConfigLoadError is a ValueError.
    usage_types = (
        ConfigValidationError,
        DefinitionError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
        ValueError,
    )
    return any(isinstance(item, usage_types) for item in _causes(exc))


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "cli_entrypoint"]
