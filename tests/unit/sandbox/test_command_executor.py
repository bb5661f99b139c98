"""
shipyard — unit tests for the external command executor

Purpose
- Verify exit status capture, environment allow-listing, output redaction,
  and timeout/cancel process-group termination with real POSIX commands.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from shipyard.sandbox.command_executor import (
    _MAX_PENDING_LINE_CHARS,
    CommandExecutor,
    CommandLaunchError,
    _OutputSink,
)
from shipyard.security.redaction import REDACTED_VALUE, Redactor, SecretMasker
from shipyard.utils.concurrency import CancellationToken

_HOST_PATH = os.environ.get("PATH", "/usr/bin:/bin")


def _executor(**kwargs: object) -> CommandExecutor:
    options: dict[str, object] = {
        "kill_grace_seconds": 0.2,
        "environ": {"PATH": _HOST_PATH, "ORCHESTRATOR_ONLY": "leak-me"},
    }
    options.update(kwargs)
    return CommandExecutor(**options)  # type: ignore[arg-type]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invoke_captures_exit_status_and_output(tmp_path: Path) -> None:
    output = tmp_path / "logs" / "step.log"

    result = await _executor().invoke(
        ("/bin/sh", "-c", "echo hello; echo oops >&2; exit 3"),
        env={},
        working_dir=tmp_path,
        output_path=output,
    )

    assert result.exit_status == 3
    assert not result.succeeded
    assert not result.timed_out
    assert result.output_ref == str(output)
    assert output.read_text(encoding="utf-8") == "hello\noops\n"
    assert result.output_tail == "hello\noops\n"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_host_environment_is_not_inherited(tmp_path: Path) -> None:
    result = await _executor().invoke(
        ("/bin/sh", "-c", 'echo "${ORCHESTRATOR_ONLY:-unset} $DECLARED"'),
        env={"DECLARED": "yes"},
        working_dir=tmp_path,
    )

    assert result.succeeded
    assert result.output_ref is None
    assert result.output_tail == "unset yes\n"


@pytest.mark.unit
def test_build_env_overlays_declared_values() -> None:
    executor = _executor(inherit_env=("PATH", "LANG"))

    env = executor.build_env({"PATH": "/opt/bin", "STAGE": "deploy"})

    assert env == {"PATH": "/opt/bin", "STAGE": "deploy"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_registered_secrets_are_redacted_from_output(tmp_path: Path) -> None:
    masker = SecretMasker()
    executor = _executor(redactor=Redactor(masker))
    output = tmp_path / "step.log"

    with masker.masking(["s3cr3t-registry-pass"]):
        result = await executor.invoke(
            ("/bin/sh", "-c", 'echo "login with $PASSWORD"'),
            env={"PASSWORD": "s3cr3t-registry-pass"},
            working_dir=tmp_path,
            output_path=output,
        )

    text = output.read_text(encoding="utf-8")
    assert result.succeeded
    assert "s3cr3t-registry-pass" not in text
    assert text == f"login with {REDACTED_VALUE}\n"


@pytest.mark.unit
@pytest.mark.parametrize("gap", [-12, -1, 0, 10, 20, 40])
def test_overlong_line_is_flushed_without_splitting_a_secret(tmp_path: Path, gap: int) -> None:
    # ``gap`` is the distance from the secret's end to the end of the first read.
    secret = "tok-9f8e7d6c5b4a3f2e1d0c"
    masker = SecretMasker()
    masker.register(secret)
    output = tmp_path / "step.log"
    sink = _OutputSink(output, Redactor(masker), tail_lines=5)
    first_read = _MAX_PENDING_LINE_CHARS + 1
    line = "x" * (first_read - gap - len(secret)) + secret + "y" * (max(gap, 0) + 8) + "\n"

    sink.feed(line[:first_read].encode("utf-8"))
    sink.feed(line[first_read:].encode("utf-8"))
    sink.close()

    text = output.read_text(encoding="utf-8")
    assert secret not in text
    assert text == line.replace(secret, REDACTED_VALUE)


@pytest.mark.unit
def test_multibyte_characters_split_across_reads_are_preserved(tmp_path: Path) -> None:
    output = tmp_path / "step.log"
    sink = _OutputSink(output, Redactor(SecretMasker()), tail_lines=5)

    sink.feed(b"caf\xc3")
    sink.feed(b"\xa9\n")
    sink.close()

    assert output.read_text(encoding="utf-8") == "café\n"
    assert sink.tail == "café\n"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_terminates_process_group(tmp_path: Path) -> None:
    started = time.monotonic()

    result = await _executor().invoke(
        ("/bin/sh", "-c", "sleep 30 & sleep 30"),
        env={},
        working_dir=tmp_path,
        timeout_seconds=0.5,
    )

    assert result.timed_out
    assert result.exit_status is None
    assert not result.succeeded
    assert time.monotonic() - started < 10


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sigterm_ignoring_process_is_force_killed(tmp_path: Path) -> None:
    started = time.monotonic()

    result = await _executor().invoke(
        ("/bin/sh", "-c", "trap '' TERM; while true; do sleep 0.1; done"),
        env={},
        working_dir=tmp_path,
        timeout_seconds=0.3,
    )

    assert result.timed_out
    assert time.monotonic() - started < 10


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancel_token_stops_running_command(tmp_path: Path) -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.3, token.cancel, "operator abort")

    result = await _executor().invoke(
        ("/bin/sh", "-c", "sleep 30"),
        env={},
        working_dir=tmp_path,
        cancel_token=token,
    )

    assert result.cancelled
    assert not result.timed_out
    assert result.exit_status is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_executable_raises_launch_error(tmp_path: Path) -> None:
    with pytest.raises(CommandLaunchError) as exc_info:
        await _executor().invoke(
            ("definitely-not-a-real-binary-xyz",),
            env={},
            working_dir=tmp_path,
        )
    assert exc_info.value.executable == "definitely-not-a-real-binary-xyz"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_working_dir_must_stay_inside_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()

    with pytest.raises(ValueError, match="escapes the workspace"):
        await _executor().invoke(
            ("/bin/sh", "-c", "true"),
            env={},
            working_dir=tmp_path,
            workspace_root=workspace,
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_command_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        await _executor().invoke((), env={}, working_dir=tmp_path)


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"default_timeout_seconds": 0},
        {"kill_grace_seconds": -1},
        {"tail_lines": 0},
    ],
)
def test_constructor_validates_limits(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        CommandExecutor(**kwargs)  # type: ignore[arg-type]
