import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Type, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


class OperationTimeoutError(TimeoutError):
    """Timeout raised by the gateway with engine and operation context."""

    def __init__(self, engine: str, operation_name: str, timeout_seconds: Optional[float]) -> None:
        """Initialize timeout details with engine/operation context."""
        self.engine = engine
        self.operation_name = operation_name
        self.timeout_seconds = timeout_seconds
        timeout_display = "unknown"
        if isinstance(timeout_seconds, (int, float)):
            timeout_display = f"{float(timeout_seconds):g}"
        super().__init__(f"{engine} {operation_name} timed out after {timeout_display}s.")


class ConnectTimeoutError(OperationTimeoutError):
    """Opening a pool against the external database took too long."""


class QueryTimeoutError(OperationTimeoutError):
    """A statement exceeded its execution budget."""


async def run_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_seconds: Optional[float],
    cancel: Optional[Callable[[], Awaitable[None]]] = None,
    *,
    engine: str = "unknown",
    operation_name: str = "operation",
    error_cls: Type[OperationTimeoutError] = QueryTimeoutError,
) -> T:
    """Run an awaitable operation with a timeout and optional cancellation hook.

    The inner awaitable is cancelled by ``asyncio.wait_for`` before ``error_cls``
    is raised, so callers' ``finally`` blocks still run.
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        if cancel:
            try:
                result = cancel()
                if inspect.isawaitable(result):
                    await result
            except Exception as cancel_exc:
                logger.warning("Timeout cancellation failed: %s", cancel_exc)
        raise error_cls(
            engine=engine,
            operation_name=operation_name,
            timeout_seconds=timeout_seconds,
        ) from exc
