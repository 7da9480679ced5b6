"""Message model for leasekeeper."""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Maximum body size accepted by SQS-compatible queues (256KiB)
MAX_BODY_SIZE = 262_144

# System attribute carrying the delivery count on SQS-compatible queues
RECEIVE_COUNT_ATTRIBUTE = "ApproximateReceiveCount"


class Message(BaseModel):
    """Immutable message received from a lease-based queue.

    A Message is created by a transport's receive call and is never modified
    afterwards. The receipt handle is the lease token: it is required to
    delete the message or change its visibility, and it changes on every
    delivery of the same message.

    Attributes:
        id: Stable message identifier assigned by the queue.
        receipt_handle: Opaque lease token for this delivery.
        body: Message payload.
        attributes: System attributes returned by the queue (str -> str).
        message_attributes: User attributes attached by the producer.
        receive_count: How many times the queue has delivered this message.
    """

    id: str
    receipt_handle: str
    body: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    message_attributes: dict[str, Any] = Field(default_factory=dict)
    receive_count: int = Field(default=1, ge=1)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("id", "receipt_handle")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Ensure identifiers are non-empty after whitespace stripping."""
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        byte_length = len(v.encode("utf-8"))
        if byte_length > MAX_BODY_SIZE:
            raise ValueError(
                f"body exceeds maximum size of {MAX_BODY_SIZE} bytes (got {byte_length} bytes)"
            )
        return v


def result_message_id(result: Any) -> str | None:
    """Return the message id carried by a handler result, if any.

    Handlers may hand back the Message they processed or a plain mapping
    shaped like one; anything else carries no id.
    """
    if isinstance(result, Message):
        return result.id
    if isinstance(result, Mapping):
        value = result.get("id")
        return value if isinstance(value, str) else None
    return None
