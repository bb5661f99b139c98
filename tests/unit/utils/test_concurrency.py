"""Unit tests for cancellable waiting and the cooperative cancellation token."""

from __future__ import annotations

import asyncio

import pytest

from shipyard.utils.concurrency import CancellationToken, WaitOutcome, wait_cancellable


async def _value_after(delay: float, value: int = 1) -> int:
    await asyncio.sleep(delay)
    return value


@pytest.mark.unit
@pytest.mark.asyncio
async def test_completed_wait_returns_result() -> None:
    waited = await wait_cancellable(_value_after(0.01, 7), timeout_seconds=1.0)

    assert waited.outcome is WaitOutcome.COMPLETED
    assert waited.completed
    assert waited.result() == 7


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_leaves_future_running() -> None:
    waited = await wait_cancellable(_value_after(0.2, 3), timeout_seconds=0.01)

    assert waited.outcome is WaitOutcome.TIMED_OUT
    assert not waited.future.done()
    assert await waited.future == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_token_fires_before_completion() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")

    waited = await wait_cancellable(_value_after(5), timeout_seconds=None, cancel_token=token)

    assert waited.outcome is WaitOutcome.CANCELLED
    waited.future.cancel()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_already_cancelled_token_short_circuits() -> None:
    token = CancellationToken()
    token.cancel()

    waited = await wait_cancellable(_value_after(5), timeout_seconds=1.0, cancel_token=token)

    assert waited.outcome is WaitOutcome.CANCELLED
    waited.future.cancel()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_positive_timeout_is_rejected() -> None:
    coroutine = _value_after(0)
    with pytest.raises(ValueError, match="timeout_seconds"):
        await wait_cancellable(coroutine, timeout_seconds=0)
    coroutine.close()


@pytest.mark.unit
def test_token_keeps_first_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled

    token.cancel("first")
    token.cancel("second")

    assert token.is_cancelled
    assert token.reason == "first"
