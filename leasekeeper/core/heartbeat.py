"""Lease heartbeat: keeps in-flight messages invisible while handlers run."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from leasekeeper.core.message import Message

RenewCallback = Callable[[Sequence[Message]], Awaitable[None]]


class LeaseHeartbeat:
    """Periodically renews the lease of a set of messages.

    Every `interval` seconds the renew callback is awaited with the messages
    still in flight. The callback is responsible for reporting its own
    failures; an exception escaping it is logged and the next tick retries.

    Use as an async context manager so the timer is cleared on every exit
    path of the handler it guards:

        async with LeaseHeartbeat(messages, 30, renew):
            await handler(messages)
    """

    def __init__(
        self,
        messages: Sequence[Message],
        interval: float,
        renew: RenewCallback,
        logger: logging.Logger | None = None,
    ) -> None:
        self.messages = list(messages)
        self.interval = interval
        self._renew = renew
        self._log = logger or logging.getLogger("leasekeeper.heartbeat")
        self._task: asyncio.Task[None] | None = None
        self.beats = 0
        self.stop_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.beats += 1
            try:
                await self._renew(self.messages)
            except Exception as e:
                self._log.error(
                    f"Lease renewal raised exception: {e}",
                    extra={"message_ids": [m.id for m in self.messages], "error": str(e)},
                )

    async def stop(self) -> None:
        """Cancel the timer. Safe to call more than once."""
        task, self._task = self._task, None
        if task is None:
            return
        self.stop_count += 1
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "LeaseHeartbeat":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
