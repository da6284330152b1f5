"""
Deadlines for store round trips.

A ``Deadline`` is an absolute point on the monotonic clock. Passing the same
deadline to several awaits shares one time budget between them, which is
how a transaction bounds its total duration.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..exceptions import OperationTimeoutError

T = TypeVar("T")


class Deadline:
    """
    Absolute expiry time for one or more operations.

    Example:
        deadline = Deadline(2.5)
        doc = await run_with_deadline(collection.find_one(q), deadline, "find_one")
    """

    def __init__(self, timeout: float | None, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the deadline.

        Args:
            timeout: Seconds from now (None means no deadline)
            clock: Monotonic clock, injectable for tests
        """
        if timeout is not None and timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        self.timeout = timeout
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout

    @classmethod
    def coerce(cls, value: "Deadline | float | None") -> "Deadline | None":
        """Accept a Deadline, a number of seconds, or None."""
        if value is None or isinstance(value, Deadline):
            return value
        return cls(float(value))

    def remaining(self) -> float | None:
        """Seconds left (never negative), or None without a deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def max_time_ms(self) -> int | None:
        """Remaining budget as a server-side ``maxTimeMS`` value."""
        remaining = self.remaining()
        if remaining is None:
            return None
        return max(1, int(remaining * 1000))

    def check(self, operation: str, **context: Any) -> None:
        """
        Raise if the deadline has passed.

        Raises:
            OperationTimeoutError: If no time is left
        """
        if self.expired:
            raise OperationTimeoutError(
                f"Deadline exceeded before {operation}",
                timeout=self.timeout,
                context={"operation": operation, **context},
            )

    def __repr__(self) -> str:
        return f"Deadline(timeout={self.timeout}, remaining={self.remaining()})"


async def run_with_deadline(
    awaitable: Awaitable[T],
    deadline: Deadline | float | None,
    operation: str,
    **context: Any,
) -> T:
    """
    Await a store call, failing with OperationTimeoutError once the deadline passes.

    Args:
        awaitable: The store call
        deadline: Deadline, seconds, or None for no limit
        operation: Operation name for the error message

    Returns:
        The awaitable's result

    Raises:
        OperationTimeoutError: If the deadline expires first
    """
    deadline = Deadline.coerce(deadline)
    if deadline is None:
        return await awaitable

    remaining = deadline.remaining()
    if remaining is not None and remaining <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        deadline.check(operation, **context)

    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except OperationTimeoutError:
        raise
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(
            f"{operation} did not complete within {deadline.timeout}s",
            timeout=deadline.timeout,
            context={"operation": operation, **context},
        ) from e
