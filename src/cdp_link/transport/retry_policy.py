"""Exponential backoff for reconnect attempts.

The policy is stateful: the connection manager sleeps for
``current_delay_seconds`` after a failed attempt, calls ``escalate()`` to grow
it, and calls ``reset()`` after every successful connect.
"""

from __future__ import annotations


class RetryPolicy:
    """Exponential backoff bounded by ``[base_delay_seconds, max_delay_seconds]``."""

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        backoff_factor: float = 2.0,
    ):
        """Initialize retry policy.

        Args:
            base_delay_seconds: Delay before the first retry, and after any success (default: 1.0s)
            max_delay_seconds: Upper bound on any delay (default: 30.0s)
            backoff_factor: Multiplier applied after each failed attempt (default: 2.0)

        Raises:
            ValueError: If the bounds are not positive and ordered, or the factor is below 1
        """
        if base_delay_seconds <= 0:
            msg = f"base_delay_seconds must be positive, got {base_delay_seconds}"
            raise ValueError(msg)
        if max_delay_seconds < base_delay_seconds:
            msg = f"max_delay_seconds ({max_delay_seconds}) must be >= base_delay_seconds ({base_delay_seconds})"
            raise ValueError(msg)
        if backoff_factor < 1:
            msg = f"backoff_factor must be >= 1, got {backoff_factor}"
            raise ValueError(msg)

        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_factor = backoff_factor
        self.current_delay_seconds = base_delay_seconds

    def reset(self) -> None:
        """Return to the base delay."""
        self.current_delay_seconds = self.base_delay_seconds

    def escalate(self) -> float:
        """Grow the current delay by the backoff factor, capped at the maximum.

        Returns:
            The new current delay in seconds
        """
        self.current_delay_seconds = min(
            self.current_delay_seconds * self.backoff_factor,
            self.max_delay_seconds,
        )
        return self.current_delay_seconds

    def get_delay(self, attempt: int) -> float:
        """Delay for a 0-indexed retry attempt, without touching the current delay.

        Formula: min(base_delay * factor ** attempt, max_delay)
        """
        return min(
            self.base_delay_seconds * (self.backoff_factor**attempt),
            self.max_delay_seconds,
        )

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"factor={self.backoff_factor}, "
            f"current={self.current_delay_seconds}s)"
        )
