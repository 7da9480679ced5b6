"""Concurrency slot accounting for single-message dispatch."""

import asyncio


class ConcurrencySlots:
    """Counts how many messages are being handled against a limit.

    All mutations happen synchronously on the event loop, so no lock is
    needed. in_use never drops below 0 and reserve() never grants more
    than is available.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be a positive integer, got {limit}")
        self._limit = limit
        self._in_use = 0
        self._released = asyncio.Event()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    def available(self) -> int:
        return max(0, self._limit - self._in_use)

    def reserve(self, n: int = 1) -> int:
        """Take up to n slots and return how many were granted."""
        granted = min(max(0, n), self.available())
        self._in_use += granted
        if self.available() == 0:
            self._released.clear()
        return granted

    def release(self, n: int = 1) -> None:
        self._in_use = max(0, self._in_use - max(0, n))
        if self.available() > 0:
            self._released.set()

    def set_limit(self, limit: int) -> None:
        """Change the limit, keeping reservations already handed out.

        Lowering the limit below in_use leaves available() at 0 until enough
        running messages have released their slots.
        """
        if limit < 1:
            raise ValueError(f"limit must be a positive integer, got {limit}")
        self._limit = limit
        if self.available() > 0:
            self._released.set()
        else:
            self._released.clear()

    async def wait_for_release(self, timeout: float) -> bool:
        """Wait until a slot is free or timeout passes.

        Returns:
            True if capacity is available when the wait ends.
        """
        if self.available() > 0:
            return True
        try:
            await asyncio.wait_for(self._released.wait(), timeout)
        except TimeoutError:
            pass
        return self.available() > 0

    def __repr__(self) -> str:
        return f"ConcurrencySlots(limit={self._limit}, in_use={self._in_use})"
