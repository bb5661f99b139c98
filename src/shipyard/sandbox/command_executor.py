"""
shipyard — external command executor

Purpose
- Run one step command as an asyncio subprocess in its own process group,
  stream redacted output to a file and enforce timeout and cancellation.

Functional requirements
- The host environment is not inherited except for an allow-list (``PATH`` by
  default) plus the explicitly declared step environment.
- On timeout or cancel the process group receives ``SIGTERM``; whatever is still
  alive after the kill grace period is force-killed along with its descendants.
- Captured output is redacted line by line before it touches disk.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, TextIO

import psutil

from shipyard.domain.errors import ShipyardError
from shipyard.security.redaction import Redactor, SecretMasker
from shipyard.utils.concurrency import WaitOutcome, wait_cancellable
from shipyard.utils.fs import is_within

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from shipyard.utils.concurrency import CancellationToken

DEFAULT_INHERIT_ENV: Final[tuple[str, ...]] = ("PATH", "LANG", "TZ")

_READ_CHUNK_BYTES: Final[int] = 64 * 1024
_MAX_PENDING_LINE_CHARS: Final[int] = 1024 * 1024
_DEFAULT_TAIL_LINES: Final[int] = 20


class SandboxError(ShipyardError):
    """Base class for command execution failures."""


class CommandLaunchError(SandboxError):
    """The command could not be started (missing binary, bad cwd, ...)."""

    def __init__(self, executable: str, message: str) -> None:
        self.executable = executable
        super().__init__(f"failed to launch {executable!r}: {message}")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one external command invocation."""

    command: tuple[str, ...]
    cwd: str
    exit_status: int | None
    output_ref: str | None
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0
    output_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0 and not self.timed_out and not self.cancelled


class _OutputSink:
    """Line-buffered redacting writer for a process' merged stdout/stderr."""

    def __init__(self, path: Path | None, redactor: Redactor, *, tail_lines: int) -> None:
        self._redactor = redactor
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._handle: TextIO | None = None
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = path.open("w", encoding="utf-8")

    def feed(self, chunk: bytes) -> None:
        text = self._pending + self._decoder.decode(chunk)
        start = 0
        newline = text.find("\n")
        while newline >= 0:
            self._emit(text[start : newline + 1])
            start = newline + 1
            newline = text.find("\n", start)
        self._pending = text[start:]
        if len(self._pending) > _MAX_PENDING_LINE_CHARS:
            cut = self._flush_point(self._pending)
            if cut:
                self._emit(self._pending[:cut])
                self._pending = self._pending[cut:]

    def close(self) -> None:
        self._pending += self._decoder.decode(b"", final=True)
        if self._pending:
            self._emit(self._pending)
            self._pending = ""
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    @property
    def tail(self) -> str:
        return "".join(self._tail)

    def _flush_point(self, text: str) -> int:
        """Where an overlong line may be split without cutting through a secret."""
        masker = self._redactor.masker
        if masker is None:
            return len(text)
        # Hold back enough for a secret whose remainder has not been read yet.
        cut = max(len(text) - max(masker.longest - 1, 0), 0)
        for start, end in masker.spans(text):
            if start < cut < end:
                return end
        return cut

    def _emit(self, text: str) -> None:
        redacted = self._redactor.redact(text.replace("\r\n", "\n"))
        self._tail.append(redacted)
        if self._handle is not None:
            self._handle.write(redacted)
            self._handle.flush()


class CommandExecutor:
    """Async executor for step commands."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float = 1800.0,
        kill_grace_seconds: float = 5.0,
        inherit_env: Sequence[str] = DEFAULT_INHERIT_ENV,
        redactor: Redactor | None = None,
        tail_lines: int = _DEFAULT_TAIL_LINES,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must be >= 0")
        if tail_lines <= 0:
            raise ValueError("tail_lines must be > 0")
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._kill_grace_seconds = float(kill_grace_seconds)
        self._inherit_env = tuple(inherit_env)
        self._redactor = redactor if redactor is not None else Redactor(SecretMasker())
        self._tail_lines = tail_lines
        self._environ = environ if environ is not None else os.environ

    @property
    def default_timeout_seconds(self) -> float:
        return self._default_timeout_seconds

    @property
    def kill_grace_seconds(self) -> float:
        return self._kill_grace_seconds

    @property
    def redactor(self) -> Redactor:
        return self._redactor

    def build_env(self, env: Mapping[str, str]) -> dict[str, str]:
        """Allow-listed host variables overlaid with the declared step environment."""
        resolved = {
            key: self._environ[key] for key in self._inherit_env if key in self._environ
        }
        resolved.update(env)
        return resolved

    async def invoke(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str],
        working_dir: Path | str,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
        output_path: Path | str | None = None,
        workspace_root: Path | str | None = None,
    ) -> CommandResult:
        argv = tuple(command)
        if not argv:
            raise ValueError("command must not be empty")
        cwd = Path(working_dir)
        if workspace_root is not None and not is_within(cwd, workspace_root):
            raise ValueError(f"working directory escapes the workspace: {cwd}")
        timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout_seconds
        sink_path = Path(output_path) if output_path is not None else None

        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=self.build_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise CommandLaunchError(argv[0], self._redactor.redact(str(exc))) from exc

        sink = _OutputSink(sink_path, self._redactor, tail_lines=self._tail_lines)
        reader = asyncio.create_task(_pump(process.stdout, sink))
        try:
            waited = await wait_cancellable(
                process.wait(),
                timeout_seconds=timeout,
                cancel_token=cancel_token,
            )
            if not waited.completed:
                await self._terminate(process, waited.future)
            await self._drain(process, reader)
        except asyncio.CancelledError:
            _kill_process_tree(process.pid, _snapshot_descendants(process.pid))
            with suppress(ProcessLookupError):
                process.kill()
            reader.cancel()
            raise
        finally:
            sink.close()

        timed_out = waited.outcome is WaitOutcome.TIMED_OUT
        cancelled = waited.outcome is WaitOutcome.CANCELLED
        return CommandResult(
            command=argv,
            cwd=str(cwd),
            exit_status=process.returncode if waited.completed else None,
            output_ref=str(sink_path) if sink_path is not None else None,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=_elapsed_ms(started_ns),
            output_tail=sink.tail,
        )

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        wait_future: asyncio.Future[int],
    ) -> None:
        """SIGTERM the process group, then force-kill the tree after the grace period."""
        descendants = _snapshot_descendants(process.pid)
        _signal_group(process.pid, signal.SIGTERM)
        if self._kill_grace_seconds > 0:
            await asyncio.wait({wait_future}, timeout=self._kill_grace_seconds)
        if not wait_future.done():
            with suppress(ProcessLookupError):
                process.kill()
        _kill_process_tree(process.pid, descendants)
        await wait_future

    async def _drain(self, process: asyncio.subprocess.Process, reader: asyncio.Task[None]) -> None:
        # Background children may keep the pipe open after the direct child exits.
        done, _ = await asyncio.wait({reader}, timeout=max(self._kill_grace_seconds, 0.1))
        if reader in done:
            reader.result()
            return
        _kill_process_tree(process.pid, _snapshot_descendants(process.pid))
        reader.cancel()
        with suppress(asyncio.CancelledError):
            await reader


async def _pump(stream: asyncio.StreamReader | None, sink: _OutputSink) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        sink.feed(chunk)


def _snapshot_descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _signal_group(pgid: int, sig: signal.Signals) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(pgid, sig)


def _kill_process_tree(pgid: int, descendants: Sequence[psutil.Process]) -> None:
    """SIGKILL the process group and any recorded descendant that left it."""
    _signal_group(pgid, signal.SIGKILL)
    for child in descendants:
        with suppress(psutil.Error):
            child.kill()


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


__all__ = [
    "DEFAULT_INHERIT_ENV",
    "CommandExecutor",
    "CommandLaunchError",
    "CommandResult",
    "SandboxError",
]
