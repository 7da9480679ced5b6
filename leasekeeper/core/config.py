"""Consumer configuration and validation.

ConsumerConfig is immutable. Runtime changes go through apply_update(),
which validates the candidate as a whole and returns a new config, so an
invalid update can never leave a half-applied state behind.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from leasekeeper.core.errors import ConfigurationError
from leasekeeper.core.message import Message

MAX_BATCH_SIZE = 10
MAX_WAIT_TIME_SECONDS = 20

# Options that may be changed while the consumer is running
UPDATABLE_OPTIONS: frozenset[str] = frozenset(
    {
        "batch_size",
        "concurrency",
        "wait_time_seconds",
        "polling_wait_time",
        "visibility_timeout",
    }
)


class HandlerMode(Enum):
    """How received messages are handed to user code."""

    SINGLE = "single"
    BATCH = "batch"


class ConsumerConfig(BaseModel):
    """Validated options for a Consumer.

    Times are in seconds. Construction raises pydantic's ValidationError on
    invalid input; Consumer.create() and Consumer.update_option() re-raise it
    as ConfigurationError.

    Attributes:
        queue_url: Address of the queue to consume.
        handle_message: Called once per message (sync or async).
        handle_message_batch: Called once per received batch. Takes
            precedence over handle_message when both are given.
        batch_size: Messages requested per receive call (1-10).
        concurrency: Max messages handled at once in single mode. Defaults
            to batch_size and may not be smaller than it.
        visibility_timeout: Lease duration requested on receive and restored
            by each heartbeat.
        wait_time_seconds: Long-poll duration (0-20).
        heartbeat_interval: Seconds between lease extensions while a handler
            runs. Must be less than visibility_timeout.
        polling_wait_time: Delay between poll cycles.
        authentication_error_timeout: Delay before polling again after a
            connection error.
        handle_message_timeout: Seconds before an async handler is considered
            timed out. Sync handlers run inline on the event loop, so neither
            this timeout nor the heartbeat can interrupt them; wrap blocking
            work in asyncio.to_thread() inside the handler to keep both.
        always_acknowledge: Delete messages regardless of the handler's result.
        should_delete_messages: False leaves acknowledgment to someone else.
        terminate_visibility_timeout: On handler failure, shorten the lease:
            True for 0, an int for a fixed value, or a callable computing it
            from the message.
        attribute_names: System attributes to request on receive.
        message_attribute_names: User attributes to request on receive.
        drain_timeout: How long stop() waits for in-flight work.
        backpressure_delay: Pause when no concurrency slot is free.
        pre_receive_message_callback: Called (and awaited if async) before
            every receive call.
        post_receive_message_callback: Called (and awaited if async) after
            every successful receive call.
        extended_transport_errors: Attach the transport's raw response and
            metadata to transport errors reported through events.
    """

    queue_url: str
    handle_message: Callable[..., Any] | None = None
    handle_message_batch: Callable[..., Any] | None = None
    batch_size: int = Field(default=1, strict=True)
    concurrency: int | None = Field(default=None, strict=True)
    visibility_timeout: int | None = Field(default=None, strict=True, ge=0)
    wait_time_seconds: float = 20
    heartbeat_interval: float | None = Field(default=None, gt=0)
    polling_wait_time: float = 0
    authentication_error_timeout: float = Field(default=10, ge=0)
    handle_message_timeout: float | None = Field(default=None, gt=0)
    always_acknowledge: bool = False
    should_delete_messages: bool = True
    terminate_visibility_timeout: bool | int | Callable[[Message], int] = False
    attribute_names: list[str] = Field(default_factory=list)
    message_attribute_names: list[str] = Field(default_factory=list)
    drain_timeout: float = Field(default=0, ge=0)
    backpressure_delay: float = Field(default=0.1, gt=0)
    pre_receive_message_callback: Callable[[], Any] | None = None
    post_receive_message_callback: Callable[[], Any] | None = None
    extended_transport_errors: bool = False

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    updatable_options: ClassVar[frozenset[str]] = UPDATABLE_OPTIONS

    @field_validator("queue_url")
    @classmethod
    def validate_queue_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("queue_url must not be empty")
        return v

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {v}")
        return v

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError(f"concurrency must be a positive integer, got {v}")
        return v

    @field_validator("wait_time_seconds")
    @classmethod
    def validate_wait_time_seconds(cls, v: float) -> float:
        if not 0 <= v <= MAX_WAIT_TIME_SECONDS:
            raise ValueError(
                f"wait_time_seconds must be between 0 and {MAX_WAIT_TIME_SECONDS}, got {v}"
            )
        return v

    @field_validator("polling_wait_time")
    @classmethod
    def validate_polling_wait_time(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"polling_wait_time must not be negative, got {v}")
        return v

    @field_validator("terminate_visibility_timeout")
    @classmethod
    def validate_terminate_visibility_timeout(cls, v: Any) -> Any:
        if not isinstance(v, bool) and isinstance(v, int) and v < 0:
            raise ValueError(f"terminate_visibility_timeout must not be negative, got {v}")
        return v

    @model_validator(mode="after")
    def validate_combination(self) -> "ConsumerConfig":
        if self.handle_message is None and self.handle_message_batch is None:
            raise ValueError(
                "Missing consumer option [ handle_message or handle_message_batch ]"
            )

        if self.heartbeat_interval is not None:
            if self.visibility_timeout is None:
                raise ValueError("heartbeat_interval requires visibility_timeout to be set")
            if not self.heartbeat_interval < self.visibility_timeout:
                raise ValueError(
                    f"heartbeat_interval ({self.heartbeat_interval}) must be less than "
                    f"visibility_timeout ({self.visibility_timeout})"
                )

        if self.concurrency is not None and self.concurrency < self.batch_size:
            raise ValueError(
                f"concurrency ({self.concurrency}) must not be smaller than "
                f"batch_size ({self.batch_size})"
            )
        return self

    @property
    def handler_mode(self) -> HandlerMode:
        if self.handle_message_batch is not None:
            return HandlerMode.BATCH
        return HandlerMode.SINGLE

    @property
    def has_both_handlers(self) -> bool:
        return self.handle_message is not None and self.handle_message_batch is not None

    @property
    def concurrency_limit(self) -> int:
        """Effective concurrency: explicit value or batch_size."""
        return self.concurrency if self.concurrency is not None else self.batch_size

    def lease_after_failure(self, message: Message) -> int | None:
        """Visibility timeout to set after a handler failure, or None to leave the lease."""
        policy = self.terminate_visibility_timeout
        if policy is False:
            return None
        if policy is True:
            return 0
        if isinstance(policy, int):
            return policy
        return int(policy(message))

    def apply_update(self, name: str, value: Any) -> "ConsumerConfig":
        """Return a copy with one option changed, validated as a whole.

        Raises:
            ConfigurationError: If name is not updatable or the result is invalid.
        """
        if name not in self.updatable_options:
            raise ConfigurationError(
                f"{name!r} cannot be updated at runtime; updatable options are: "
                f"{', '.join(sorted(self.updatable_options))}"
            )
        # dict(self) keeps callables as-is, unlike model_dump()
        return load_config(**{**dict(self), name: value})


def load_config(**options: Any) -> ConsumerConfig:
    """Build a ConsumerConfig, raising ConfigurationError on invalid options."""
    try:
        return ConsumerConfig(**options)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
