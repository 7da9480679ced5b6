"""Typed lifecycle and outcome events for leasekeeper consumers.

Subscribers register plain callables per EventKind. Each kind carries a
fixed payload type:

    ConsumerEvent            started, stopped, empty, response_processed,
                             aborted, waiting_for_polling_to_complete,
                             waiting_for_polling_to_complete_timeout_exceeded
    MessageEvent             message_received, message_processed
    ErrorEvent               processing_error, timeout_error, error
    OptionUpdatedEvent       option_updated
    ConcurrencyLimitEvent    concurrency_limit_reached
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from leasekeeper.core.errors import ErrorKind, QueueError
from leasekeeper.core.message import Message


class EventKind(str, Enum):
    """Events emitted by a Consumer."""

    STARTED = "started"
    STOPPED = "stopped"
    EMPTY = "empty"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_PROCESSED = "message_processed"
    RESPONSE_PROCESSED = "response_processed"
    PROCESSING_ERROR = "processing_error"
    TIMEOUT_ERROR = "timeout_error"
    ERROR = "error"
    OPTION_UPDATED = "option_updated"
    CONCURRENCY_LIMIT_REACHED = "concurrency_limit_reached"
    ABORTED = "aborted"
    WAITING_FOR_POLLING_TO_COMPLETE = "waiting_for_polling_to_complete"
    WAITING_FOR_POLLING_TO_COMPLETE_TIMEOUT_EXCEEDED = (
        "waiting_for_polling_to_complete_timeout_exceeded"
    )


@dataclass(frozen=True)
class ConsumerEvent:
    """Event without payload beyond the queue it concerns."""

    kind: EventKind
    queue_url: str


@dataclass(frozen=True)
class MessageEvent(ConsumerEvent):
    message: Message


@dataclass(frozen=True)
class ErrorEvent(ConsumerEvent):
    """A classified failure and the message(s) it affected.

    Receive failures carry no messages; batch failures carry all of them.
    """

    error: QueueError
    messages: tuple[Message, ...] = ()

    @property
    def message(self) -> Message | None:
        """The single affected message, when exactly one is involved."""
        if len(self.messages) == 1:
            return self.messages[0]
        return None


@dataclass(frozen=True)
class OptionUpdatedEvent(ConsumerEvent):
    name: str
    value: Any


@dataclass(frozen=True)
class ConcurrencyLimitEvent(ConsumerEvent):
    """No capacity was free for a poll cycle.

    Attributes:
        limit: The configured concurrency limit.
        waiting: Messages the cycle would have fetched had capacity existed.
    """

    limit: int
    waiting: int


PAYLOAD_TYPES: dict[EventKind, type[ConsumerEvent]] = {
    EventKind.MESSAGE_RECEIVED: MessageEvent,
    EventKind.MESSAGE_PROCESSED: MessageEvent,
    EventKind.PROCESSING_ERROR: ErrorEvent,
    EventKind.TIMEOUT_ERROR: ErrorEvent,
    EventKind.ERROR: ErrorEvent,
    EventKind.OPTION_UPDATED: OptionUpdatedEvent,
    EventKind.CONCURRENCY_LIMIT_REACHED: ConcurrencyLimitEvent,
}

Listener = Callable[[ConsumerEvent], Any]


def error_event_kind(error: QueueError) -> EventKind:
    """Map a classified error to the event kind it is reported under."""
    if error.kind is ErrorKind.HANDLER_TIMEOUT:
        return EventKind.TIMEOUT_ERROR
    if error.kind is ErrorKind.HANDLER_FAILURE:
        return EventKind.PROCESSING_ERROR
    return EventKind.ERROR


@dataclass(frozen=True)
class ConsumerStatus:
    """Read-only snapshot of a consumer's state."""

    is_running: bool = False
    is_polling: bool = False


@dataclass
class EventReporter:
    """Dispatches typed events to registered listeners.

    Listeners are called synchronously in registration order. A listener
    that raises is logged and skipped; it never interrupts the consumer.
    """

    queue_url: str
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("leasekeeper"))
    _listeners: dict[EventKind, list[tuple[Listener, bool]]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def on(self, kind: EventKind | str, listener: Listener) -> None:
        self._listeners[EventKind(kind)].append((listener, False))

    def once(self, kind: EventKind | str, listener: Listener) -> None:
        self._listeners[EventKind(kind)].append((listener, True))

    def off(self, kind: EventKind | str, listener: Listener) -> None:
        """Remove every registration of listener for kind."""
        kind = EventKind(kind)
        self._listeners[kind] = [
            (registered, once) for registered, once in self._listeners[kind] if registered != listener
        ]

    def listener_count(self, kind: EventKind | str) -> int:
        return len(self._listeners.get(EventKind(kind), []))

    def emit(self, kind: EventKind, **payload: Any) -> ConsumerEvent:
        """Build the payload for kind, log it, and notify listeners."""
        event_cls = PAYLOAD_TYPES.get(kind, ConsumerEvent)
        event = event_cls(kind=kind, queue_url=self.queue_url, **payload)

        self.logger.debug(
            f"Event {kind.value}",
            extra={"event": kind.value, "queue_url": self.queue_url, **_log_fields(event)},
        )

        registered = self._listeners.get(kind)
        if not registered:
            return event

        # Snapshot so listeners may (un)register while being notified
        snapshot = list(registered)
        self._listeners[kind] = [entry for entry in registered if not entry[1]]

        for listener, _ in snapshot:
            try:
                listener(event)
            except Exception as e:
                self.logger.error(
                    f"Listener for {kind.value} raised exception: {e}",
                    extra={"event": kind.value, "queue_url": self.queue_url, "error": str(e)},
                )
        return event


def _log_fields(event: ConsumerEvent) -> dict[str, Any]:
    if isinstance(event, MessageEvent):
        return {"message_id": event.message.id}
    if isinstance(event, ErrorEvent):
        return {
            "message_ids": [m.id for m in event.messages],
            "error": str(event.error),
        }
    if isinstance(event, OptionUpdatedEvent):
        return {"option": event.name, "value": event.value}
    if isinstance(event, ConcurrencyLimitEvent):
        return {"limit": event.limit, "waiting": event.waiting}
    return {}
