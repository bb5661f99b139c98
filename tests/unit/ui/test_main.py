"""Unit tests for exit-code normalization at the process boundary."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shipyard import main as main_module
from shipyard.config.loader import ConfigLoadError
from shipyard.domain.errors import DefinitionError
from shipyard.main import ExitCode, cli_entrypoint

if TYPE_CHECKING:
    from collections.abc import Callable


def _raising(exc: BaseException) -> Callable[..., int]:
    def _run_cli(argv: object = None) -> int:
        raise exc

    return _run_cli


@pytest.mark.unit
def test_exit_codes_are_stable() -> None:
    assert [int(code) for code in ExitCode] == [0, 1, 2, 3, 4, 70]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (KeyboardInterrupt(), ExitCode.RUN_CANCELLED),
        (SystemExit(2), ExitCode.USAGE_ERROR),
        (SystemExit(None), ExitCode.SUCCESS),
        (SystemExit("boom"), ExitCode.INTERNAL_ERROR),
        (ConfigLoadError("bad toml"), ExitCode.USAGE_ERROR),
        (DefinitionError("missing", path="jobs"), ExitCode.USAGE_ERROR),
        (RuntimeError("bug"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exceptions_are_routed_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    exc: BaseException,
    expected: ExitCode,
) -> None:
    monkeypatch.setattr("shipyard.ui.cli.run_cli", _raising(exc))

    assert cli_entrypoint([]) == expected
    if expected is ExitCode.INTERNAL_ERROR:
        assert capsys.readouterr().err.strip()


@pytest.mark.unit
def test_wrapped_usage_errors_are_found_in_the_cause_chain(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        try:
            raise FileNotFoundError("ci.yml")
        except FileNotFoundError as inner:
            raise RuntimeError("load failed") from inner
    except RuntimeError as outer:
        wrapped = outer

    monkeypatch.setattr("shipyard.ui.cli.run_cli", _raising(wrapped))

    assert cli_entrypoint([]) == ExitCode.USAGE_ERROR


@pytest.mark.unit
def test_unknown_return_codes_become_internal_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("shipyard.ui.cli.run_cli", lambda argv=None: 99)

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    assert main_module._normalize_exit_code(int(ExitCode.TRIGGER_IGNORED)) == ExitCode.TRIGGER_IGNORED
