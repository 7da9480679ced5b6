"""Tests for InMemoryTransport lease semantics."""

import asyncio

import pytest

from leasekeeper.core.consumer import Consumer
from leasekeeper.core.errors import TransportError
from leasekeeper.core.events import EventKind
from leasekeeper.transports.memory import InMemoryTransport

QUEUE = "memory://orders"


class TestSendReceive:
    """Basic send and receive."""

    @pytest.mark.timeout(5)
    async def test_receive_returns_sent_messages_in_order(self, memory_transport):
        ids = [await memory_transport.send_message(QUEUE, f"body-{i}") for i in range(3)]

        messages = await memory_transport.receive_messages(QUEUE, 10, 0)

        assert [m.id for m in messages] == ids
        assert [m.body for m in messages] == ["body-0", "body-1", "body-2"]
        assert all(m.receive_count == 1 for m in messages)

    @pytest.mark.timeout(5)
    async def test_respects_max_messages(self, memory_transport):
        for i in range(5):
            await memory_transport.send_message(QUEUE, str(i))

        assert len(await memory_transport.receive_messages(QUEUE, 2, 0)) == 2
        assert len(await memory_transport.receive_messages(QUEUE, 10, 0)) == 3

    @pytest.mark.timeout(5)
    async def test_received_messages_are_invisible(self, memory_transport):
        await memory_transport.send_message(QUEUE, "hello")

        first = await memory_transport.receive_messages(QUEUE, 1, 0)
        second = await memory_transport.receive_messages(QUEUE, 1, 0)

        assert len(first) == 1
        assert second == []
        assert memory_transport.in_flight(QUEUE) == 1
        assert memory_transport.qsize(QUEUE) == 1

    @pytest.mark.timeout(5)
    async def test_long_poll_wakes_on_send(self, memory_transport):
        loop = asyncio.get_running_loop()

        async def send_later():
            await asyncio.sleep(0.05)
            await memory_transport.send_message(QUEUE, "late")

        task = asyncio.create_task(send_later())
        started = loop.time()
        messages = await memory_transport.receive_messages(QUEUE, 1, 2)
        await task

        assert [m.body for m in messages] == ["late"]
        assert loop.time() - started < 1

    @pytest.mark.timeout(5)
    async def test_long_poll_times_out_empty(self, memory_transport):
        assert await memory_transport.receive_messages(QUEUE, 1, 0.05) == []

    @pytest.mark.timeout(5)
    async def test_unknown_queue(self, memory_transport):
        with pytest.raises(TransportError) as exc_info:
            await memory_transport.receive_messages("memory://missing", 1, 0)

        assert exc_info.value.code == "AWS.SimpleQueueService.NonExistentQueue"

    @pytest.mark.timeout(5)
    async def test_full_queue_rejects_send(self):
        bounded = InMemoryTransport(max_size=1)
        bounded.create_queue(QUEUE)
        await bounded.send_message(QUEUE, "one")

        with pytest.raises(TransportError) as exc_info:
            await bounded.send_message(QUEUE, "two")

        assert exc_info.value.code == "OverLimit"


class TestAttributes:
    """Attribute filtering on receive."""

    @pytest.mark.timeout(5)
    async def test_no_attributes_by_default(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x", message_attributes={"tenant": "acme"})

        message = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]

        assert message.attributes == {}
        assert message.message_attributes == {}

    @pytest.mark.timeout(5)
    async def test_all_attributes(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x", message_attributes={"tenant": "acme"})

        message = (
            await memory_transport.receive_messages(
                QUEUE, 1, 0, attribute_names=["All"], message_attribute_names=["All"]
            )
        )[0]

        assert message.attributes["ApproximateReceiveCount"] == "1"
        assert "SentTimestamp" in message.attributes
        assert message.message_attributes == {"tenant": "acme"}

    @pytest.mark.timeout(5)
    async def test_named_attributes(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x", message_attributes={"tenant": "acme", "trace": "t"})

        message = (
            await memory_transport.receive_messages(
                QUEUE,
                1,
                0,
                attribute_names=["SentTimestamp"],
                message_attribute_names=["trace"],
            )
        )[0]

        assert list(message.attributes) == ["SentTimestamp"]
        assert message.message_attributes == {"trace": "t"}


class TestLeases:
    """Receipt handles, deletes and visibility changes."""

    @pytest.mark.timeout(5)
    async def test_delete_removes_message(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x")
        message = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]

        await memory_transport.delete_message(QUEUE, message.receipt_handle)

        assert memory_transport.qsize(QUEUE) == 0

    @pytest.mark.timeout(5)
    async def test_expired_lease_redelivers_with_new_handle(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x")
        first = (await memory_transport.receive_messages(QUEUE, 1, 0, visibility_timeout=0))[0]

        second = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]

        assert second.id == first.id
        assert second.receive_count == 2
        assert second.receipt_handle != first.receipt_handle

        with pytest.raises(TransportError) as exc_info:
            await memory_transport.delete_message(QUEUE, first.receipt_handle)
        assert exc_info.value.code == "ReceiptHandleIsInvalid"

    @pytest.mark.timeout(5)
    async def test_change_visibility_to_zero_makes_visible(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x")
        message = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]

        await memory_transport.change_visibility(QUEUE, message.receipt_handle, 0)

        again = await memory_transport.receive_messages(QUEUE, 1, 0)
        assert [m.id for m in again] == [message.id]

    @pytest.mark.timeout(5)
    async def test_change_visibility_requires_inflight(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x")
        message = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]
        await memory_transport.change_visibility(QUEUE, message.receipt_handle, 0)

        with pytest.raises(TransportError) as exc_info:
            await memory_transport.change_visibility(QUEUE, message.receipt_handle, 30)

        assert exc_info.value.code == "MessageNotInflight"

    @pytest.mark.timeout(5)
    async def test_batch_delete_reports_invalid_entries(self, memory_transport):
        await memory_transport.send_message(QUEUE, "x")
        message = (await memory_transport.receive_messages(QUEUE, 1, 0))[0]

        with pytest.raises(TransportError) as exc_info:
            await memory_transport.delete_message_batch(QUEUE, [message.receipt_handle, "bogus#handle"])

        assert exc_info.value.code == "BatchEntryFailed"
        assert memory_transport.qsize(QUEUE) == 0

    @pytest.mark.timeout(5)
    async def test_change_visibility_batch(self, memory_transport):
        for body in ("a", "b"):
            await memory_transport.send_message(QUEUE, body)
        messages = await memory_transport.receive_messages(QUEUE, 2, 0)

        await memory_transport.change_visibility_batch(QUEUE, [(m.receipt_handle, 0) for m in messages])

        assert memory_transport.in_flight(QUEUE) == 0


class TestWithConsumer:
    """The in-memory memory_transport drives a full consumer."""

    @pytest.mark.timeout(5)
    async def test_consumer_drains_queue(self, memory_transport):
        for i in range(5):
            await memory_transport.send_message(QUEUE, f"order-{i}")
        handled = []

        async def handler(message):
            await asyncio.sleep(0.01)
            handled.append(message.body)

        consumer = Consumer.create(
            memory_transport,
            queue_url=QUEUE,
            handle_message=handler,
            batch_size=2,
            concurrency=3,
            wait_time_seconds=0.05,
        )
        processed = []
        consumer.on(EventKind.MESSAGE_PROCESSED, processed.append)

        consumer.start()
        while len(processed) < 5:
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert sorted(handled) == [f"order-{i}" for i in range(5)]
        assert memory_transport.qsize(QUEUE) == 0

    @pytest.mark.timeout(5)
    async def test_failed_message_is_redelivered(self, memory_transport):
        await memory_transport.send_message(QUEUE, "flaky")
        attempts = []

        def handler(message):
            attempts.append(message.receive_count)
            if message.receive_count == 1:
                raise RuntimeError("first attempt fails")

        consumer = Consumer.create(
            memory_transport,
            queue_url=QUEUE,
            handle_message=handler,
            terminate_visibility_timeout=True,
            wait_time_seconds=0.05,
        )
        processed = []
        consumer.on(EventKind.MESSAGE_PROCESSED, processed.append)

        consumer.start()
        while not processed:
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert attempts == [1, 2]
        assert memory_transport.qsize(QUEUE) == 0
