"""
Correlation IDs for grouping the log lines of one connect attempt or request.

The ID lives in a contextvar, so every asyncio task sees the value that was
current when it was created and can scope its own without leaking it.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "cdp_link_correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a fresh UUID4 hex string."""
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str]:
    """
    Scope a correlation ID to a block, restoring the outer one on exit.

    Args:
        correlation_id: ID to use; a new one is generated when omitted

    Yields:
        The correlation ID active inside the block

    Example:
        with correlation_context() as attempt_id:
            logger.info("Probing candidate ports")
    """
    active_id = correlation_id or generate_correlation_id()
    token = _correlation_id.set(active_id)
    try:
        yield active_id
    finally:
        _correlation_id.reset(token)


def ensure_correlation_id() -> str:
    """Return the current correlation ID, creating one for this context if unset."""
    current_id = get_correlation_id()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
