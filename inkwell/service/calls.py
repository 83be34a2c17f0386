from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from inkwell.logging import get_logger
from inkwell.service.errors import DependencyError, DependencyTimeoutError
from inkwell.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def bounded(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    dependency: str,
    **kwargs: Any,
) -> T:
    """Run a blocking collaborator call in a worker thread under a deadline.

    A missed deadline raises DependencyTimeoutError and an unreachable backing
    store raises DependencyError. Every other exception propagates unchanged so
    the caller can translate it. Cancelling the awaiting task cancels the wait
    immediately; the worker thread is left to finish on its own.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout
        )
    except asyncio.TimeoutError as exc:
        logger.error("dependency_timeout", dependency=dependency, timeout=timeout)
        raise DependencyTimeoutError(
            f"{dependency} did not respond in time",
            detail={"dependency": dependency, "timeout_seconds": timeout},
        ) from exc
    except StorageUnavailable as exc:
        logger.error(
            "dependency_unavailable",
            dependency=dependency,
            backend=exc.backend,
            error=exc.message,
        )
        raise DependencyError(
            f"{dependency} unavailable", detail={"dependency": dependency}
        ) from exc


async def run_with_deadline(coro: Awaitable[T], timeout: float, *, operation: str) -> T:
    """Bound a whole service operation, used by the HTTP layer."""
    try:
        return await asyncio.wait_for(coro, timeout)
    except asyncio.TimeoutError as exc:
        logger.error("operation_timeout", operation=operation, timeout=timeout)
        raise DependencyTimeoutError(
            "request timed out",
            detail={"operation": operation, "timeout_seconds": timeout},
        ) from exc
