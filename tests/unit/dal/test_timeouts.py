"""Unit tests for the gateway timeout helper."""

import asyncio

import pytest

from dal.util.timeouts import ConnectTimeoutError, QueryTimeoutError, run_with_timeout


@pytest.mark.asyncio
async def test_run_with_timeout_returns_result():
    """Verify run_with_timeout returns the operation result."""
    result = await run_with_timeout(lambda: asyncio.sleep(0, result="ok"), 1)
    assert result == "ok"


@pytest.mark.asyncio
async def test_run_with_timeout_without_budget_runs_unbounded():
    """A missing or non-positive budget disables the timeout."""
    assert await run_with_timeout(lambda: asyncio.sleep(0, result=1), None) == 1
    assert await run_with_timeout(lambda: asyncio.sleep(0, result=2), 0) == 2


@pytest.mark.asyncio
async def test_run_with_timeout_raises_typed_error_and_cancels():
    """Verify the cancel hook runs and the configured error is raised."""
    called = False

    async def _cancel():
        nonlocal called
        called = True

    with pytest.raises(ConnectTimeoutError) as excinfo:
        await run_with_timeout(
            lambda: asyncio.sleep(1),
            0.01,
            _cancel,
            engine="postgresql",
            operation_name="connect",
            error_cls=ConnectTimeoutError,
        )

    assert called is True
    assert str(excinfo.value) == "postgresql connect timed out after 0.01s."
    assert excinfo.value.timeout_seconds == 0.01


@pytest.mark.asyncio
async def test_cancel_hook_failure_does_not_mask_timeout():
    """A failing cancel hook is logged; the timeout still propagates."""

    def _cancel():
        raise RuntimeError("cancel failed")

    with pytest.raises(QueryTimeoutError):
        await run_with_timeout(lambda: asyncio.sleep(1), 0.01, _cancel)


def test_timeout_errors_are_timeouts():
    assert issubclass(QueryTimeoutError, TimeoutError)
