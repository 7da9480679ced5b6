"""In-memory lease queue for development and testing."""

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from leasekeeper.core.errors import TransportError
from leasekeeper.core.message import Message


@dataclass
class _StoredMessage:
    id: str
    body: str
    message_attributes: dict[str, Any]
    sent_timestamp: int
    receive_count: int = 0
    first_receive_timestamp: int | None = None
    visible_at: float = 0.0
    receipt_handle: str | None = None


@dataclass
class _Queue:
    url: str
    visibility_timeout: int
    messages: dict[str, _StoredMessage] = field(default_factory=dict)
    condition: asyncio.Condition | None = None

    def get_condition(self) -> asyncio.Condition:
        if self.condition is None:
            self.condition = asyncio.Condition()
        return self.condition


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryTransport:
    """Lease-based queue held entirely in process memory.

    Mirrors SQS semantics closely enough to exercise a Consumer end to end:
    received messages are hidden for their visibility timeout, each delivery
    gets a fresh receipt handle, only the latest handle may delete or change
    the lease, and expired leases make messages receivable again with an
    incremented receive count. Nothing survives the process.

    Args:
        default_visibility_timeout: Lease applied when receive does not set one.
        max_size: Maximum messages per queue. 0 means unbounded (default).
    """

    def __init__(self, default_visibility_timeout: int = 30, max_size: int = 0) -> None:
        self._queues: dict[str, _Queue] = {}
        self._default_visibility_timeout = default_visibility_timeout
        self._max_size = max_size

    def create_queue(self, queue_url: str, visibility_timeout: int | None = None) -> str:
        """Create the queue if it does not exist and return its URL."""
        if queue_url not in self._queues:
            self._queues[queue_url] = _Queue(
                url=queue_url,
                visibility_timeout=(
                    visibility_timeout
                    if visibility_timeout is not None
                    else self._default_visibility_timeout
                ),
            )
        return queue_url

    def _get_queue(self, queue_url: str) -> _Queue:
        queue = self._queues.get(queue_url)
        if queue is None:
            raise TransportError(
                f"The specified queue does not exist: {queue_url}",
                code="AWS.SimpleQueueService.NonExistentQueue",
                status_code=400,
                fault="client",
            )
        return queue

    async def send_message(
        self,
        queue_url: str,
        body: str,
        message_attributes: dict[str, Any] | None = None,
    ) -> str:
        """Append a message and return its id."""
        queue = self._get_queue(queue_url)
        if self._max_size > 0 and len(queue.messages) >= self._max_size:
            raise TransportError(
                f"Queue full (max_size={self._max_size}), cannot send message",
                code="OverLimit",
                status_code=403,
                fault="client",
            )
        message_id = str(uuid4())
        queue.messages[message_id] = _StoredMessage(
            id=message_id,
            body=body,
            message_attributes=dict(message_attributes or {}),
            sent_timestamp=_now_ms(),
        )
        condition = queue.get_condition()
        async with condition:
            condition.notify_all()
        return message_id

    def _take(
        self,
        queue: _Queue,
        max_messages: int,
        visibility_timeout: int,
        attribute_names: Sequence[str],
        message_attribute_names: Sequence[str],
    ) -> list[Message]:
        now = asyncio.get_running_loop().time()
        taken: list[Message] = []
        for stored in queue.messages.values():
            if len(taken) >= max_messages:
                break
            if stored.visible_at > now:
                continue
            stored.receive_count += 1
            if stored.first_receive_timestamp is None:
                stored.first_receive_timestamp = _now_ms()
            stored.receipt_handle = f"{stored.id}#{uuid4().hex}"
            stored.visible_at = now + visibility_timeout
            taken.append(self._to_message(stored, attribute_names, message_attribute_names))
        return taken

    @staticmethod
    def _to_message(
        stored: _StoredMessage,
        attribute_names: Sequence[str],
        message_attribute_names: Sequence[str],
    ) -> Message:
        system = {
            "SentTimestamp": str(stored.sent_timestamp),
            "ApproximateReceiveCount": str(stored.receive_count),
            "ApproximateFirstReceiveTimestamp": str(stored.first_receive_timestamp),
        }
        if "All" not in attribute_names:
            system = {k: v for k, v in system.items() if k in attribute_names}

        user = stored.message_attributes
        if "All" not in message_attribute_names:
            user = {k: v for k, v in user.items() if k in message_attribute_names}

        return Message(
            id=stored.id,
            receipt_handle=stored.receipt_handle or "",
            body=stored.body,
            attributes=system,
            message_attributes=dict(user),
            receive_count=stored.receive_count,
        )

    async def receive_messages(
        self,
        queue_url: str,
        max_messages: int,
        wait_time_seconds: float,
        visibility_timeout: int | None = None,
        attribute_names: Sequence[str] = (),
        message_attribute_names: Sequence[str] = (),
    ) -> list[Message]:
        queue = self._get_queue(queue_url)
        lease = visibility_timeout if visibility_timeout is not None else queue.visibility_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_time_seconds
        condition = queue.get_condition()

        async with condition:
            while True:
                taken = self._take(
                    queue, max_messages, lease, attribute_names, message_attribute_names
                )
                now = loop.time()
                if taken or now >= deadline:
                    return taken

                # Wake on new messages or when the earliest lease expires
                timeout = deadline - now
                pending = [m.visible_at - now for m in queue.messages.values() if m.visible_at > now]
                if pending:
                    timeout = min(timeout, min(pending))
                try:
                    await asyncio.wait_for(condition.wait(), timeout)
                except TimeoutError:
                    pass

    def _find_leased(self, queue: _Queue, receipt_handle: str) -> _StoredMessage:
        message_id = receipt_handle.split("#", 1)[0]
        stored = queue.messages.get(message_id)
        if stored is None or stored.receipt_handle != receipt_handle:
            raise TransportError(
                f"The receipt handle is not valid: {receipt_handle}",
                code="ReceiptHandleIsInvalid",
                status_code=400,
                fault="client",
            )
        return stored

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        queue = self._get_queue(queue_url)
        stored = self._find_leased(queue, receipt_handle)
        del queue.messages[stored.id]

    async def delete_message_batch(self, queue_url: str, receipt_handles: Sequence[str]) -> None:
        queue = self._get_queue(queue_url)
        failed: list[str] = []
        for receipt_handle in receipt_handles:
            try:
                stored = self._find_leased(queue, receipt_handle)
            except TransportError:
                failed.append(receipt_handle)
                continue
            del queue.messages[stored.id]
        if failed:
            raise TransportError(
                f"Failed to delete {len(failed)} of {len(receipt_handles)} messages",
                code="BatchEntryFailed",
                status_code=400,
                fault="client",
            )

    async def change_visibility(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        queue = self._get_queue(queue_url)
        stored = self._find_leased(queue, receipt_handle)
        now = asyncio.get_running_loop().time()
        if stored.visible_at <= now:
            raise TransportError(
                f"Message {stored.id} is not in flight",
                code="MessageNotInflight",
                status_code=400,
                fault="client",
            )
        stored.visible_at = now + visibility_timeout
        if visibility_timeout == 0:
            condition = queue.get_condition()
            async with condition:
                condition.notify_all()

    async def change_visibility_batch(
        self, queue_url: str, entries: Sequence[tuple[str, int]]
    ) -> None:
        failed = 0
        for receipt_handle, visibility_timeout in entries:
            try:
                await self.change_visibility(queue_url, receipt_handle, visibility_timeout)
            except TransportError:
                failed += 1
        if failed:
            raise TransportError(
                f"Failed to change visibility of {failed} of {len(entries)} messages",
                code="BatchEntryFailed",
                status_code=400,
                fault="client",
            )

    def qsize(self, queue_url: str) -> int:
        """Return how many messages the queue holds, visible or in flight."""
        return len(self._get_queue(queue_url).messages)

    def in_flight(self, queue_url: str) -> int:
        """Return how many messages are currently leased."""
        now = asyncio.get_running_loop().time()
        return sum(1 for m in self._get_queue(queue_url).messages.values() if m.visible_at > now)
