"""
Timing helpers for network-bound coroutines.

``timed_async`` logs how long a coroutine took and warns when it runs past
``CDP_LINK_PERF_THRESHOLD_MS``. Set ``CDP_LINK_PERF_TRACKING=0`` to disable.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Coroutine
from typing import Any, ParamSpec, TypeVar

from cdp_link.logging_abstraction import CdpLogger, get_logger

__all__ = [
    "measure_time",
    "timed_async",
]

P = ParamSpec("P")
T = TypeVar("T")

logger = get_logger(__name__)


def measure_time(start_time: float) -> float:
    """Milliseconds elapsed since ``start_time`` (a ``time.perf_counter()`` value)."""
    return (time.perf_counter() - start_time) * 1000


def timed_async(
    operation_name: str | None = None,
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Decorate a coroutine function so each call is timed and logged.

    Args:
        operation_name: Label used in the log line (defaults to the function name)

    Example:
        @timed_async("port_probe")
        async def probe(self, ports):
            ...
    """

    def decorator(func: Callable[P, Coroutine[Any, Any, T]]) -> Callable[P, Coroutine[Any, Any, T]]:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            # Read at call time so tests and --debug runs can toggle it
            from cdp_link import const  # noqa: PLC0415

            if not const.CDP_LINK_PERF_TRACKING:
                return await func(*args, **kwargs)

            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _log_timing(logger, op_name, measure_time(start_time), const.CDP_LINK_PERF_THRESHOLD_MS)

        return wrapper

    return decorator


def _log_timing(log: CdpLogger, operation_name: str, elapsed_ms: float, threshold_ms: int) -> None:
    context = {
        "operation": operation_name,
        "duration_ms": round(elapsed_ms, 2),
        "threshold_ms": threshold_ms,
    }
    if elapsed_ms > threshold_ms:
        log.warning(
            "[%s] completed in %.1fms (threshold: %dms)",
            operation_name,
            elapsed_ms,
            threshold_ms,
            extra={**context, "exceeded_threshold": True},
        )
    else:
        log.debug(
            "[%s] completed in %.1fms",
            operation_name,
            elapsed_ms,
            extra={**context, "exceeded_threshold": False},
        )
