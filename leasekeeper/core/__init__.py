"""Core components for the leasekeeper queue consumer.

This module exposes the primary types, constants, and utilities:

Types:
    Consumer: Poll loop that receives, dispatches and acknowledges messages.
    ConsumerConfig: Immutable, validated consumer options.
    Message: A received message with its receipt handle.
    Dispatcher: Runs handlers and turns their results into deletes.
    ConcurrencySlots: Counter bounding in-flight messages.
    LeaseHeartbeat: Periodic lease extension while a handler runs.

Events:
    EventKind: Enum of every event a consumer emits.
    ConsumerEvent, MessageEvent, ErrorEvent, OptionUpdatedEvent,
    ConcurrencyLimitEvent: Typed event payloads.
    ConsumerStatus: Snapshot returned by Consumer.status.

Errors:
    ConfigurationError: Raised synchronously for invalid options.
    TransportError: Raised by transports for failed queue calls.
    QueueError: Base of every error delivered through events.

Constants:
    MAX_BATCH_SIZE: Largest batch_size a receive may request (10).
    MAX_BODY_SIZE: Maximum message body size in bytes (256KB).
"""

from leasekeeper.core.config import (
    MAX_BATCH_SIZE,
    MAX_WAIT_TIME_SECONDS,
    UPDATABLE_OPTIONS,
    ConsumerConfig,
    HandlerMode,
    load_config,
)
from leasekeeper.core.consumer import Consumer
from leasekeeper.core.dispatcher import Dispatcher
from leasekeeper.core.errors import (
    ConfigurationError,
    ErrorKind,
    HandlerFailureError,
    HandlerTimeoutError,
    LeaseRenewalError,
    QueueError,
    RequestAbortedError,
    TransportConnectionError,
    TransportError,
    TransportOperationError,
    classify_handler_error,
    classify_transport_error,
    is_connection_error,
)
from leasekeeper.core.events import (
    ConcurrencyLimitEvent,
    ConsumerEvent,
    ConsumerStatus,
    ErrorEvent,
    EventKind,
    EventReporter,
    MessageEvent,
    OptionUpdatedEvent,
)
from leasekeeper.core.heartbeat import LeaseHeartbeat
from leasekeeper.core.message import MAX_BODY_SIZE, Message
from leasekeeper.core.slots import ConcurrencySlots

__all__ = [
    "Consumer",
    "ConsumerConfig",
    "HandlerMode",
    "load_config",
    "MAX_BATCH_SIZE",
    "MAX_WAIT_TIME_SECONDS",
    "UPDATABLE_OPTIONS",
    "Dispatcher",
    "ConcurrencySlots",
    "LeaseHeartbeat",
    "Message",
    "MAX_BODY_SIZE",
    "EventKind",
    "EventReporter",
    "ConsumerEvent",
    "MessageEvent",
    "ErrorEvent",
    "OptionUpdatedEvent",
    "ConcurrencyLimitEvent",
    "ConsumerStatus",
    "ErrorKind",
    "ConfigurationError",
    "TransportError",
    "RequestAbortedError",
    "QueueError",
    "TransportOperationError",
    "TransportConnectionError",
    "LeaseRenewalError",
    "HandlerTimeoutError",
    "HandlerFailureError",
    "classify_handler_error",
    "classify_transport_error",
    "is_connection_error",
]
