"""Transport protocol for lease-based queues.

ALL queue I/O lives in transports, not in the Consumer. The consumer only
decides when to receive, what to delete and whose lease to change.
"""

from collections.abc import Sequence
from typing import Protocol

from leasekeeper.core.message import Message


class QueueTransport(Protocol):
    """Protocol defining the operations a lease-based queue must offer.

    Transports are responsible for:
    - Receiving messages and leasing them for a visibility timeout (receive_messages)
    - Deleting handled messages by receipt handle (delete_message, delete_message_batch)
    - Changing the remaining lease of in-flight messages (change_visibility,
      change_visibility_batch)

    Failures are raised as leasekeeper.core.errors.TransportError, or as
    builtin ConnectionError/OSError for socket-level problems. Calls must be
    safe to cancel: stop(abort=True) cancels the awaiting task.
    """

    async def receive_messages(
        self,
        queue_url: str,
        max_messages: int,
        wait_time_seconds: float,
        visibility_timeout: int | None = None,
        attribute_names: Sequence[str] = (),
        message_attribute_names: Sequence[str] = (),
    ) -> list[Message]:
        """Receive up to max_messages, long-polling up to wait_time_seconds.

        Args:
            queue_url: Queue to receive from.
            max_messages: Upper bound on messages returned (1-10).
            wait_time_seconds: How long to wait for messages to arrive.
            visibility_timeout: Lease duration; None uses the queue default.
            attribute_names: System attributes to include ("All" for every one).
            message_attribute_names: User attributes to include ("All" for every one).

        Returns:
            The received messages, possibly empty.
        """
        ...

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        ...

    async def delete_message_batch(self, queue_url: str, receipt_handles: Sequence[str]) -> None:
        """Delete several messages; raises if any of them could not be deleted."""
        ...

    async def change_visibility(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        """Set the remaining lease of one message to visibility_timeout seconds.

        A timeout of 0 makes the message immediately available again.
        """
        ...

    async def change_visibility_batch(
        self, queue_url: str, entries: Sequence[tuple[str, int]]
    ) -> None:
        """Change several leases; entries are (receipt_handle, visibility_timeout)."""
        ...
