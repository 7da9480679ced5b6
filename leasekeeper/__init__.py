"""leasekeeper - Async consumer for lease-based message queues."""

from leasekeeper.core import (
    ConcurrencyLimitEvent,
    ConfigurationError,
    Consumer,
    ConsumerConfig,
    ConsumerEvent,
    ConsumerStatus,
    ErrorEvent,
    ErrorKind,
    EventKind,
    HandlerFailureError,
    HandlerTimeoutError,
    LeaseRenewalError,
    Message,
    MessageEvent,
    OptionUpdatedEvent,
    QueueError,
    TransportConnectionError,
    TransportError,
    TransportOperationError,
)
from leasekeeper.transports import InMemoryTransport, QueueTransport, RedisTransport, SQSTransport

__version__ = "0.1.0"

__all__ = [
    # Core
    "Consumer",
    "ConsumerConfig",
    "Message",
    "ConsumerStatus",
    # Events
    "EventKind",
    "ConsumerEvent",
    "MessageEvent",
    "ErrorEvent",
    "OptionUpdatedEvent",
    "ConcurrencyLimitEvent",
    # Errors
    "ErrorKind",
    "ConfigurationError",
    "TransportError",
    "QueueError",
    "TransportOperationError",
    "TransportConnectionError",
    "LeaseRenewalError",
    "HandlerTimeoutError",
    "HandlerFailureError",
    # Transports
    "QueueTransport",
    "InMemoryTransport",
    "RedisTransport",
    "SQSTransport",
    # Meta
    "__version__",
]
