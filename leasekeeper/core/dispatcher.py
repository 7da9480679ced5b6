"""Dispatcher: runs handlers and turns their results into acknowledgments."""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from leasekeeper.core.config import ConsumerConfig
from leasekeeper.core.errors import (
    HandlerTimeoutError,
    QueueError,
    RequestAbortedError,
    classify_handler_error,
    classify_transport_error,
)
from leasekeeper.core.events import EventKind, EventReporter, error_event_kind
from leasekeeper.core.heartbeat import LeaseHeartbeat
from leasekeeper.core.message import Message, result_message_id

if TYPE_CHECKING:
    from leasekeeper.transports.base import QueueTransport

T = TypeVar("T")

TransportCaller = Callable[[Awaitable[T]], Awaitable[T]]


async def _direct(call: Awaitable[T]) -> T:
    return await call


class Dispatcher:
    """Hands received messages to the configured handler.

    Every failure is classified and reported through the event reporter;
    nothing raised by a handler or by a delete/visibility call escapes
    dispatch_message() or dispatch_batch().
    """

    def __init__(
        self,
        transport: "QueueTransport",
        get_config: Callable[[], ConsumerConfig],
        reporter: EventReporter,
        call_transport: TransportCaller | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.transport = transport
        self._get_config = get_config
        self._reporter = reporter
        self._call = call_transport or _direct
        self._log = logger or logging.getLogger("leasekeeper.dispatcher")
        self._abandoned: set[asyncio.Future[Any]] = set()

    @property
    def queue_url(self) -> str:
        return self._get_config().queue_url

    @property
    def abandoned_count(self) -> int:
        """Timed-out handler tasks that are still running."""
        return len(self._abandoned)

    def received(self, messages: Sequence[Message]) -> None:
        """Emit message_received for each message, in order."""
        for message in messages:
            self._reporter.emit(EventKind.MESSAGE_RECEIVED, message=message)

    # ------------------------------------------------------------------
    # Single mode
    # ------------------------------------------------------------------

    async def dispatch_message(self, message: Message) -> None:
        """Handle one message and delete it when the result says so.

        message_received must already have been emitted via received().
        """
        config = self._get_config()
        self._log.info(
            f"Handling message {message.id}",
            extra={"queue_url": config.queue_url, "message_id": message.id},
        )

        try:
            async with self._heartbeat([message], batch=False):
                result = await self._invoke(config.handle_message, message, [message.id])
        except Exception as e:
            self._report(classify_handler_error(e, config.queue_url, [message.id]), [message])
            await self._release_leases([message], batch=False)
            return

        if not self._acknowledges(config, message, result):
            self._log.debug(
                f"Handler did not acknowledge message {message.id}",
                extra={"queue_url": config.queue_url, "message_id": message.id},
            )
            return

        if await self._delete([message], batch=False):
            self._reporter.emit(EventKind.MESSAGE_PROCESSED, message=message)

    @staticmethod
    def _acknowledges(config: ConsumerConfig, message: Message, result: Any) -> bool:
        if config.always_acknowledge or result is None:
            return True
        if isinstance(result, (Message, Mapping)):
            return result_message_id(result) == message.id
        return True

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    async def dispatch_batch(self, messages: Sequence[Message]) -> None:
        """Handle a whole receive batch with one handler call."""
        config = self._get_config()
        ids = [m.id for m in messages]
        self.received(messages)
        self._log.info(
            f"Handling batch of {len(messages)} messages",
            extra={"queue_url": config.queue_url, "message_ids": ids},
        )

        try:
            async with self._heartbeat(messages, batch=True):
                result = await self._invoke(config.handle_message_batch, list(messages), ids)
        except Exception as e:
            self._report(classify_handler_error(e, config.queue_url, ids), messages)
            await self._release_leases(messages, batch=True)
            return

        acked = self._acknowledged_subset(config, messages, result)
        if not acked:
            self._log.debug(
                "Batch handler acknowledged no messages",
                extra={"queue_url": config.queue_url, "message_ids": ids},
            )
            return

        if await self._delete(acked, batch=True):
            for message in acked:
                self._reporter.emit(EventKind.MESSAGE_PROCESSED, message=message)

    @staticmethod
    def _acknowledged_subset(
        config: ConsumerConfig, messages: Sequence[Message], result: Any
    ) -> list[Message]:
        if config.always_acknowledge or result is None:
            return list(messages)
        if isinstance(result, Sequence) and not isinstance(result, (str, bytes)):
            returned = {result_message_id(item) for item in result}
            return [m for m in messages if m.id in returned]
        return list(messages)

    # ------------------------------------------------------------------
    # Handler invocation
    # ------------------------------------------------------------------

    async def _invoke(self, handler: Callable[..., Any], arg: Any, message_ids: list[str]) -> Any:
        """Call handler, racing awaitable results against the handler timeout.

        A handler that loses the race is abandoned, not cancelled: the
        consumer stops waiting for it and the message is left un-acknowledged.
        Sync handlers return before any race can start, so they are never
        timed out.
        """
        result = handler(arg)
        if not inspect.isawaitable(result):
            return result

        timeout = self._get_config().handle_message_timeout
        if timeout is None:
            return await result

        task = asyncio.ensure_future(result)
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        self._abandon(task, message_ids)
        raise HandlerTimeoutError(timeout, queue_url=self.queue_url, message_ids=message_ids)

    def _abandon(self, task: asyncio.Future[Any], message_ids: list[str]) -> None:
        self._abandoned.add(task)

        def _settled(fut: asyncio.Future[Any]) -> None:
            self._abandoned.discard(fut)
            if fut.cancelled():
                return
            error = fut.exception()
            if error is not None:
                self._log.debug(
                    f"Abandoned handler finished with exception: {error}",
                    extra={"queue_url": self.queue_url, "message_ids": message_ids},
                )

        task.add_done_callback(_settled)

    # ------------------------------------------------------------------
    # Transport calls
    # ------------------------------------------------------------------

    def _heartbeat(
        self, messages: Sequence[Message], batch: bool
    ) -> contextlib.AbstractAsyncContextManager[Any]:
        interval = self._get_config().heartbeat_interval
        if interval is None:
            return contextlib.nullcontext()

        async def renew(in_flight: Sequence[Message]) -> None:
            await self._renew_leases(in_flight, batch)

        return LeaseHeartbeat(messages, interval, renew, logger=self._log)

    async def _renew_leases(self, messages: Sequence[Message], batch: bool) -> None:
        config = self._get_config()
        timeout = config.visibility_timeout
        if timeout is None:
            return
        self._log.debug(
            f"Renewing lease of {len(messages)} messages to {timeout}s",
            extra={"queue_url": config.queue_url, "message_ids": [m.id for m in messages]},
        )
        try:
            await self._change_visibility(config, [(m, timeout) for m in messages], batch)
        except Exception as e:
            self._report_transport_failure(e, "Change visibility", messages, renewal=True)

    async def _release_leases(self, messages: Sequence[Message], batch: bool) -> None:
        """Apply the lease-shortening policy after a handler failure."""
        config = self._get_config()
        try:
            entries = [(m, config.lease_after_failure(m)) for m in messages]
            entries = [(m, t) for m, t in entries if t is not None]
            if entries:
                await self._change_visibility(config, entries, batch)
        except Exception as e:
            self._report_transport_failure(e, "Change visibility", messages)

    async def _change_visibility(
        self,
        config: ConsumerConfig,
        entries: list[tuple[Message, int]],
        batch: bool,
    ) -> None:
        if batch:
            await self._call(
                self.transport.change_visibility_batch(
                    config.queue_url, [(m.receipt_handle, t) for m, t in entries]
                )
            )
        else:
            for message, timeout in entries:
                await self._call(
                    self.transport.change_visibility(
                        config.queue_url, message.receipt_handle, timeout
                    )
                )

    async def _delete(self, messages: Sequence[Message], batch: bool) -> bool:
        """Delete messages, returning False if the call failed."""
        config = self._get_config()
        if not config.should_delete_messages:
            self._log.debug(
                "Skipping delete, message deletion is disabled",
                extra={"queue_url": config.queue_url, "message_ids": [m.id for m in messages]},
            )
            return True

        try:
            if batch:
                await self._call(
                    self.transport.delete_message_batch(
                        config.queue_url, [m.receipt_handle for m in messages]
                    )
                )
            else:
                await self._call(
                    self.transport.delete_message(config.queue_url, messages[0].receipt_handle)
                )
        except Exception as e:
            self._report_transport_failure(e, "Delete message", messages)
            return False
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report_transport_failure(
        self,
        error: Exception,
        operation: str,
        messages: Sequence[Message],
        renewal: bool = False,
    ) -> None:
        ids = [m.id for m in messages]
        if isinstance(error, RequestAbortedError):
            self._log.debug(
                f"{operation} aborted",
                extra={"queue_url": self.queue_url, "message_ids": ids},
            )
            return
        self._report(
            classify_transport_error(
                error,
                operation,
                self.queue_url,
                ids,
                renewal=renewal,
                extended=self._get_config().extended_transport_errors,
            ),
            messages,
        )

    def _report(self, error: QueueError, messages: Sequence[Message]) -> None:
        kind = error_event_kind(error)
        level = logging.WARNING if kind is EventKind.TIMEOUT_ERROR else logging.ERROR
        self._log.log(
            level,
            str(error),
            extra={
                "queue_url": self.queue_url,
                "message_ids": list(error.message_ids),
                "error_kind": error.kind.value,
            },
        )
        self._reporter.emit(kind, error=error, messages=tuple(messages))
