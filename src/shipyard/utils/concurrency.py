"""Async concurrency primitives used by the stage runner and orchestrator."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancel requested") -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


class WaitOutcome(StrEnum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class WaitResult(Generic[T]):
    outcome: WaitOutcome
    future: asyncio.Future[T]

    @property
    def completed(self) -> bool:
        return self.outcome is WaitOutcome.COMPLETED

    def result(self) -> T:
        return self.future.result()


async def wait_cancellable(
    awaitable: Awaitable[T],
    *,
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> WaitResult[T]:
    """
    Wait for ``awaitable`` until it completes, times out or the token fires.

    Unlike ``asyncio.wait_for`` the awaited future is left running on timeout or
    cancellation: callers own the shutdown sequence of whatever it waits on
    (e.g. a process that must be signalled before it is reaped).
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")

    future: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    if cancel_token is None:
        done, _ = await asyncio.wait({future}, timeout=timeout_seconds)
        outcome = WaitOutcome.COMPLETED if future in done else WaitOutcome.TIMED_OUT
        return WaitResult(outcome, future)

    if cancel_token.is_cancelled:
        return WaitResult(WaitOutcome.CANCELLED, future)

    cancel_wait_task = asyncio.create_task(cancel_token.wait())
    try:
        done, _ = await asyncio.wait(
            {future, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task

    if future in done:
        return WaitResult(WaitOutcome.COMPLETED, future)
    if cancel_wait_task in done:
        return WaitResult(WaitOutcome.CANCELLED, future)
    return WaitResult(WaitOutcome.TIMED_OUT, future)


__all__ = [
    "CancellationToken",
    "WaitOutcome",
    "WaitResult",
    "wait_cancellable",
]
