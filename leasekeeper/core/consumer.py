"""Consumer: the poll loop driving receive -> dispatch -> acknowledge.

The Consumer is the only long-running component. It:
- Asks the slot manager how many messages it may fetch
- Receives them through the transport with long polling
- Hands them to the Dispatcher (one task per message, or one per batch)
- Backs off after connection errors and keeps polling until stopped
- Drains in-flight work on stop()

IMPORTANT: the Consumer never raises background failures to its caller.
Everything that goes wrong after start() is reported through events.
"""

import asyncio
import contextvars
import inspect
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

from leasekeeper.core.config import ConsumerConfig, HandlerMode, load_config
from leasekeeper.core.dispatcher import Dispatcher
from leasekeeper.core.errors import ErrorKind, RequestAbortedError, classify_transport_error
from leasekeeper.core.events import ConsumerStatus, EventKind, EventReporter, Listener
from leasekeeper.core.logging import configure_consumer_logger
from leasekeeper.core.message import Message
from leasekeeper.core.slots import ConcurrencySlots

if TYPE_CHECKING:
    from leasekeeper.transports.base import QueueTransport

T = TypeVar("T")

# How often stop() re-checks for outstanding work while draining
DRAIN_CHECK_INTERVAL = 0.05

# Set while a consumer's dispatch code (and the handlers it calls) is running
_dispatching: contextvars.ContextVar["Consumer | None"] = contextvars.ContextVar(
    "leasekeeper_dispatching", default=None
)


class Consumer:
    """Managed consumer for a lease-based queue.

    Example:
        consumer = Consumer.create(
            transport,
            queue_url="orders",
            handle_message=process_order,
            batch_size=10,
            concurrency=20,
        )
        consumer.on(EventKind.PROCESSING_ERROR, lambda event: alert(event.error))
        consumer.start()
        ...
        await consumer.stop()
    """

    def __init__(self, transport: "QueueTransport", config: ConsumerConfig) -> None:
        self.transport = transport
        self._config = config
        self._log = configure_consumer_logger()
        self._reporter = EventReporter(config.queue_url, logger=self._log)
        self._slots = ConcurrencySlots(config.concurrency_limit)
        self._dispatcher = Dispatcher(
            transport,
            lambda: self._config,
            self._reporter,
            call_transport=self._call_transport,
            logger=self._log,
        )

        self._running = False
        self._polling = False
        self._poll_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()
        # Received messages waiting for a concurrency slot, with their settle futures
        self._pending: deque[tuple[Message, asyncio.Future[None]]] = deque()
        self._stop_requested: asyncio.Event | None = None
        self._abort_signal: asyncio.Event | None = None
        self._stopped: asyncio.Event | None = None
        self._receive_idle: asyncio.Event | None = None

        if config.has_both_handlers:
            self._log.warning(
                "Both handle_message and handle_message_batch are set; "
                "handle_message_batch takes precedence",
                extra={"queue_url": config.queue_url},
            )

    @classmethod
    def create(cls, transport: "QueueTransport", **options: Any) -> "Consumer":
        """Build a consumer from keyword options.

        Raises:
            ConfigurationError: If the options are invalid.
        """
        return cls(transport, load_config(**options))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def config(self) -> ConsumerConfig:
        return self._config

    @property
    def queue_url(self) -> str:
        return self._config.queue_url

    @property
    def status(self) -> ConsumerStatus:
        return ConsumerStatus(is_running=self._running, is_polling=self._polling)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def slots(self) -> ConcurrencySlots:
        return self._slots

    @property
    def in_flight(self) -> int:
        """Dispatch tasks that have not settled yet."""
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, kind: EventKind | str, listener: Listener) -> None:
        self._reporter.on(kind, listener)

    def once(self, kind: EventKind | str, listener: Listener) -> None:
        self._reporter.once(kind, listener)

    def off(self, kind: EventKind | str, listener: Listener) -> None:
        self._reporter.off(kind, listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling. Does nothing if the consumer is already running.

        Must be called from a running event loop.
        """
        if self._running:
            self._log.debug("Consumer already running", extra={"queue_url": self.queue_url})
            return

        self._running = True
        self._stop_requested = asyncio.Event()
        self._abort_signal = asyncio.Event()
        self._stopped = asyncio.Event()
        self._receive_idle = asyncio.Event()
        self._receive_idle.set()
        self._drain_task = None

        self._log.info(
            "Consumer starting",
            extra={
                "queue_url": self.queue_url,
                "handler_mode": self._config.handler_mode.value,
                "batch_size": self._config.batch_size,
                "concurrency": self._slots.limit,
            },
        )
        self._reporter.emit(EventKind.STARTED)
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def run(self) -> None:
        """Start the consumer and return once it has stopped."""
        self.start()
        if self._stopped is not None:
            await self._stopped.wait()

    async def stop(self, abort: bool = False) -> None:
        """Stop polling and wait for in-flight work to drain.

        Repeated or concurrent calls share one drain and produce a single
        stopped event. Called from inside a handler, stop() starts the drain
        but returns without waiting for it, since the drain waits on that
        very handler.

        Args:
            abort: Cancel transport calls in flight and refuse new ones.
        """
        if not self._running:
            self._log.debug("Consumer already stopped", extra={"queue_url": self.queue_url})
            return

        if abort and self._abort_signal is not None and not self._abort_signal.is_set():
            self._log.info("Aborting in-flight requests", extra={"queue_url": self.queue_url})
            self._abort_signal.set()
            self._reporter.emit(EventKind.ABORTED)

        if self._drain_task is None:
            self._log.info("Consumer stopping", extra={"queue_url": self.queue_url})
            if self._stop_requested is not None:
                self._stop_requested.set()
            self._drain_task = asyncio.create_task(self._drain())

        if _dispatching.get() is self:
            return
        await asyncio.shield(self._drain_task)

    def _outstanding(self) -> bool:
        return self._polling or bool(self._in_flight) or bool(self._pending)

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        timeout = self._config.drain_timeout
        timed_out = False
        try:
            if timeout > 0:
                self._reporter.emit(EventKind.WAITING_FOR_POLLING_TO_COMPLETE)
                deadline = loop.time() + timeout
                while self._outstanding():
                    if loop.time() >= deadline:
                        timed_out = True
                        self._log.warning(
                            f"Drain timeout of {timeout}s exceeded with "
                            f"{len(self._in_flight)} dispatch tasks outstanding",
                            extra={"queue_url": self.queue_url},
                        )
                        self._reporter.emit(
                            EventKind.WAITING_FOR_POLLING_TO_COMPLETE_TIMEOUT_EXCEEDED
                        )
                        break
                    await asyncio.sleep(DRAIN_CHECK_INTERVAL)
        finally:
            aborted = self._abort_signal is not None and self._abort_signal.is_set()
            await self._cancel_poll_task(wait_for_receive=not (aborted or timed_out))
            self._running = False
            self._polling = False
            self._log.info("Consumer stopped", extra={"queue_url": self.queue_url})
            self._reporter.emit(EventKind.STOPPED)
            if self._stopped is not None:
                self._stopped.set()

    async def _cancel_poll_task(self, wait_for_receive: bool) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        if wait_for_receive and self._receive_idle is not None:
            # The receive may already hold leases; its messages must reach dispatch
            await self._receive_idle.wait()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_option(self, name: str, value: Any) -> None:
        """Change one runtime option.

        Raises:
            ConfigurationError: If the option is not updatable or the value is
                invalid. The current configuration is left untouched.
        """
        self._config = self._config.apply_update(name, value)

        if name in ("batch_size", "concurrency"):
            self._slots.set_limit(self._config.concurrency_limit)
            self._dispatch_pending()

        self._log.info(
            f"Option {name} updated",
            extra={"queue_url": self.queue_url, "option": name, "value": value},
        )
        self._reporter.emit(EventKind.OPTION_UPDATED, name=name, value=value)

        if (
            name in ("batch_size", "concurrency")
            and self._config.handler_mode is HandlerMode.SINGLE
            and self._slots.available() == 0
        ):
            self._reporter.emit(
                EventKind.CONCURRENCY_LIMIT_REACHED,
                limit=self._slots.limit,
                waiting=self._config.batch_size,
            )

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        stop_requested = self._stop_requested
        if stop_requested is None:
            return

        while not stop_requested.is_set():
            try:
                delay = await self._poll_once()
            except Exception as e:
                self._log.exception(
                    f"Error in poll loop: {e}", extra={"queue_url": self.queue_url}
                )
                delay = self._config.polling_wait_time

            if delay > 0 and not stop_requested.is_set():
                try:
                    await asyncio.wait_for(stop_requested.wait(), delay)
                except TimeoutError:
                    pass

    def _messages_to_request(self, config: ConsumerConfig) -> int:
        if config.handler_mode is HandlerMode.BATCH:
            return config.batch_size
        return min(config.batch_size, self._slots.available())

    async def _poll_once(self) -> float:
        """Run one receive cycle and return the delay before the next one."""
        config = self._config
        count = self._messages_to_request(config)

        if count == 0:
            self._log.debug(
                f"Concurrency limit of {self._slots.limit} reached, pausing",
                extra={"queue_url": config.queue_url},
            )
            self._reporter.emit(
                EventKind.CONCURRENCY_LIMIT_REACHED,
                limit=self._slots.limit,
                waiting=config.batch_size,
            )
            await self._slots.wait_for_release(config.backpressure_delay)
            return 0

        self._polling = True
        idle = self._receive_idle
        if idle is not None:
            idle.clear()
        try:
            try:
                await self._run_callback(config.pre_receive_message_callback)
                messages = await self._call_transport(
                    self.transport.receive_messages(
                        config.queue_url,
                        count,
                        config.wait_time_seconds,
                        config.visibility_timeout,
                        config.attribute_names,
                        config.message_attribute_names,
                    )
                )
            except RequestAbortedError:
                self._log.debug("Receive aborted", extra={"queue_url": config.queue_url})
                return 0
            except Exception as e:
                return self._receive_failed(config, e)

            try:
                await self._run_callback(config.post_receive_message_callback)
            except Exception as e:
                # Received messages are leased already, so they still go to dispatch
                self._receive_failed(config, e, operation="Post-receive callback")

            if not messages:
                self._reporter.emit(EventKind.EMPTY)
                return config.polling_wait_time

            if config.handler_mode is HandlerMode.BATCH:
                batch = self._track(self._process_batch(messages))
                if idle is not None:
                    idle.set()
                # Shielded so cancelling the poll loop never cancels the batch
                await asyncio.shield(batch)
            else:
                self._dispatch_each(messages)
            return config.polling_wait_time
        finally:
            if idle is not None:
                idle.set()
            self._polling = False

    @staticmethod
    async def _run_callback(callback: Callable[[], Any] | None) -> None:
        if callback is None:
            return
        result = callback()
        if inspect.isawaitable(result):
            await result

    def _receive_failed(
        self, config: ConsumerConfig, e: Exception, operation: str = "Receive message"
    ) -> float:
        error = classify_transport_error(
            e, operation, config.queue_url, extended=config.extended_transport_errors
        )
        self._log.error(
            str(error),
            extra={"queue_url": config.queue_url, "error_kind": error.kind.value},
        )
        self._reporter.emit(EventKind.ERROR, error=error)

        if error.kind is ErrorKind.TRANSPORT_CONNECTION:
            self._log.info(
                f"Connection error, pausing {config.authentication_error_timeout}s before retrying",
                extra={"queue_url": config.queue_url},
            )
            return config.authentication_error_timeout
        return config.polling_wait_time

    def _dispatch_each(self, messages: list[Message]) -> None:
        self._dispatcher.received(messages)
        loop = asyncio.get_running_loop()
        settled: list[asyncio.Future[None]] = []
        for message in messages:
            done = loop.create_future()
            self._pending.append((message, done))
            settled.append(done)
        self._track(self._settle_response(settled))
        self._dispatch_pending()

    def _dispatch_pending(self) -> None:
        """Start one handler per free slot for messages waiting on capacity."""
        if not self._pending:
            return
        granted = self._slots.reserve(len(self._pending))
        for _ in range(granted):
            message, done = self._pending.popleft()
            self._track(self._process_message(message, done))
        if self._pending:
            self._log.debug(
                f"{len(self._pending)} received messages waiting for a free slot",
                extra={"queue_url": self.queue_url},
            )

    def _track(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        task = asyncio.create_task(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _process_message(self, message: Message, done: asyncio.Future[None]) -> None:
        _dispatching.set(self)
        try:
            await self._dispatcher.dispatch_message(message)
        except Exception as e:
            done.set_exception(e)
        finally:
            self._slots.release(1)
            if not done.done():
                done.set_result(None)
            self._dispatch_pending()

    async def _process_batch(self, messages: list[Message]) -> None:
        _dispatching.set(self)
        await self._dispatcher.dispatch_batch(messages)
        self._reporter.emit(EventKind.RESPONSE_PROCESSED)

    async def _settle_response(self, settled: list[asyncio.Future[None]]) -> None:
        results = await asyncio.gather(*settled, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._log.error(
                    f"Dispatch task raised exception: {result}",
                    extra={"queue_url": self.queue_url},
                )
        self._reporter.emit(EventKind.RESPONSE_PROCESSED)

    # ------------------------------------------------------------------
    # Transport calls
    # ------------------------------------------------------------------

    async def _call_transport(self, call: Awaitable[T]) -> T:
        """Await a transport call, cancelling it if the abort signal fires.

        Raises:
            RequestAbortedError: If stop(abort=True) fired before or during the call.
        """
        abort = self._abort_signal
        if abort is None:
            return await call
        if abort.is_set():
            if inspect.iscoroutine(call):
                call.close()
            raise RequestAbortedError("Request aborted by stop(abort=True)")

        call_task = asyncio.ensure_future(call)
        abort_task = asyncio.create_task(abort.wait())
        done: set[asyncio.Future[Any]] = set()
        try:
            done, _ = await asyncio.wait(
                {call_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            abort_task.cancel()
            if call_task not in done:
                call_task.cancel()

        if call_task not in done:
            raise RequestAbortedError("Request aborted by stop(abort=True)")
        return call_task.result()
