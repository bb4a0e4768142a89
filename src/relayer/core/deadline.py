"""
Deadline helper.

Tracks a single time budget shared by several sequential network calls.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class DeadlineExceeded(asyncio.TimeoutError):
    """Raised when an operation runs past its deadline."""
    pass


class Deadline:
    """
    An absolute point in time on the event loop clock.

    A deadline created with ``timeout=None`` never expires.

    Usage:
        ```python
        deadline = Deadline(5.0)
        nonce = await deadline.run(chain.get_transaction_count(address))
        tx_hash = await deadline.run(chain.send_raw_transaction(raw))
        ```
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._expires_at: Optional[float] = None
        if timeout is not None:
            self._expires_at = asyncio.get_running_loop().time() + timeout

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - asyncio.get_running_loop().time())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` within the remaining budget.

        Raises:
            DeadlineExceeded: If the budget runs out first
        """
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        if remaining <= 0:
            # Close the coroutine so it is not reported as never awaited
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded(f"Deadline of {self.timeout}s exceeded")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            if isinstance(e, DeadlineExceeded):
                raise
            raise DeadlineExceeded(f"Deadline of {self.timeout}s exceeded") from e
