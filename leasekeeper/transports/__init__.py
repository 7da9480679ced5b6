"""Transport implementations for lease-based queues."""

from leasekeeper.transports.base import QueueTransport
from leasekeeper.transports.memory import InMemoryTransport
from leasekeeper.transports.redis import RedisTransport
from leasekeeper.transports.sqs import SQSTransport

__all__ = ["QueueTransport", "InMemoryTransport", "RedisTransport", "SQSTransport"]
