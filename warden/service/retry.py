from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from warden.logging import get_logger
from warden.service.errors import OperationTimeoutError
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

# Failures treated as transient infrastructure errors
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    StoreUnavailable,
)


async def run_io(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    idempotent: bool = True,
    backoff: float = 0.05,
) -> T:
    """Run a blocking store call in a worker thread under a timeout.

    Idempotent reads get one retry after ``backoff`` seconds; writes are
    attempted once. Transient failures surface as ``OperationTimeoutError``.
    """
    attempts = 2 if idempotent else 1
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            logger.warning(
                "io_attempt_failed",
                operation=operation,
                attempt=attempt,
                error=type(exc).__name__,
            )
            if attempt < attempts:
                await asyncio.sleep(backoff)
    raise OperationTimeoutError(
        f"{operation} did not complete in time", detail={"operation": operation}
    ) from last_exc
