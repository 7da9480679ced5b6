"""Error taxonomy and classification for leasekeeper.

Every failure that happens while the consumer runs in the background is
turned into a QueueError subclass before it reaches subscribers:

    TransportConnectionError   credential/endpoint/queue/throttling failures;
                               the poll loop backs off before retrying
    TransportOperationError    receive/delete/change-visibility failures
    LeaseRenewalError          heartbeat visibility extensions that failed
    HandlerTimeoutError        handler did not settle within its timeout
    HandlerFailureError        anything else raised by user code

Only ConfigurationError is ever raised synchronously to the caller.
"""

from collections.abc import Iterable
from enum import Enum
from typing import Any

# Transport error codes that indicate the queue cannot be reached at all.
# Receive failures with these codes trigger the authentication-error backoff.
CONNECTION_ERROR_CODES: frozenset[str] = frozenset(
    {
        "CredentialsError",
        "CredentialsProviderError",
        "NoCredentialsError",
        "InvalidClientTokenId",
        "InvalidSecurity",
        "AccessDenied",
        "AccessDeniedException",
        "UnknownEndpoint",
        "InvalidAddress",
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
        "RequestThrottled",
        "ThrottlingException",
        "OverLimit",
    }
)

CONNECTION_ERROR_STATUS_CODES: frozenset[int] = frozenset({403})


class ErrorKind(Enum):
    """Category of a classified failure."""

    TRANSPORT_CONNECTION = "transport_connection"
    TRANSPORT_OPERATION = "transport_operation"
    HANDLER_TIMEOUT = "handler_timeout"
    HANDLER_FAILURE = "handler_failure"
    LEASE_RENEWAL = "lease_renewal"


class ConfigurationError(ValueError):
    """Raised synchronously when consumer options are invalid."""


class TransportError(Exception):
    """Raised by transports when a queue operation fails.

    Attributes:
        code: Service error name, e.g. "QueueDoesNotExist".
        status_code: HTTP-like status of the failed call, when known.
        retryable: Whether the service marked the failure as retryable.
        fault: "client" or "server" when the service reports it.
        response: Raw service response, when the client exposes one.
        metadata: Request metadata (request id, HTTP status, retries).
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
        fault: str | None = None,
        response: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.fault = fault
        self.response = response
        self.metadata = metadata
        super().__init__(message)


class RequestAbortedError(Exception):
    """A transport call was refused or cancelled by stop(abort=True)."""


class QueueError(Exception):
    """Base class for classified failures reported through events."""

    kind: ErrorKind = ErrorKind.HANDLER_FAILURE

    def __init__(
        self,
        message: str,
        queue_url: str | None = None,
        message_ids: Iterable[str] = (),
    ) -> None:
        self.queue_url = queue_url
        self.message_ids: tuple[str, ...] = tuple(message_ids)
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class TransportOperationError(QueueError):
    """A receive/delete/change-visibility call failed."""

    kind = ErrorKind.TRANSPORT_OPERATION

    def __init__(
        self,
        message: str,
        queue_url: str | None = None,
        message_ids: Iterable[str] = (),
        code: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
        fault: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.fault = fault
        self.original = original
        # Filled in only when the consumer runs with extended_transport_errors
        self.response: Any = None
        self.metadata: dict[str, Any] | None = None
        super().__init__(message, queue_url=queue_url, message_ids=message_ids)

    def __str__(self) -> str:
        base = super().__str__()
        if self.code:
            return f"{base} (code: {self.code})"
        return base


class TransportConnectionError(TransportOperationError):
    """The queue could not be reached: credentials, endpoint, queue or throttling."""

    kind = ErrorKind.TRANSPORT_CONNECTION


class LeaseRenewalError(TransportOperationError):
    """A heartbeat visibility extension failed."""

    kind = ErrorKind.LEASE_RENEWAL


class HandlerTimeoutError(QueueError):
    """The message handler did not settle before its timeout."""

    kind = ErrorKind.HANDLER_TIMEOUT

    def __init__(
        self,
        timeout: float,
        queue_url: str | None = None,
        message_ids: Iterable[str] = (),
    ) -> None:
        self.timeout = timeout
        super().__init__(
            f"Message handler timed out after {timeout}s: Operation timed out.",
            queue_url=queue_url,
            message_ids=message_ids,
        )


class HandlerFailureError(QueueError):
    """The message handler raised an exception."""

    kind = ErrorKind.HANDLER_FAILURE

    def __init__(
        self,
        original: BaseException,
        queue_url: str | None = None,
        message_ids: Iterable[str] = (),
    ) -> None:
        self.original = original
        super().__init__(
            f"Unexpected message handler failure: {describe_exception(original)}",
            queue_url=queue_url,
            message_ids=message_ids,
        )


def describe_exception(error: BaseException) -> str:
    """Return a non-empty description of an exception.

    Exceptions raised without arguments, or with non-string arguments,
    still produce a readable message built from the exception type.
    """
    text = str(error)
    if text:
        return text
    if error.args:
        return f"{type(error).__name__}: {error.args!r}"
    return type(error).__name__


def _transport_fields(error: BaseException) -> dict[str, Any]:
    return {
        "code": getattr(error, "code", None),
        "status_code": getattr(error, "status_code", None),
        "retryable": bool(getattr(error, "retryable", False)),
        "fault": getattr(error, "fault", None),
    }


def is_connection_error(error: BaseException) -> bool:
    """Return True when a raw transport failure means the queue is unreachable."""
    if isinstance(error, TransportConnectionError):
        return True
    if isinstance(error, (TransportError, TransportOperationError)):
        return (
            error.code in CONNECTION_ERROR_CODES
            or error.status_code in CONNECTION_ERROR_STATUS_CODES
        )
    # Builtin connection failures from socket-level clients
    return isinstance(error, (ConnectionError, OSError))


def classify_transport_error(
    error: BaseException,
    operation: str,
    queue_url: str,
    message_ids: Iterable[str] = (),
    renewal: bool = False,
    extended: bool = False,
) -> TransportOperationError:
    """Wrap a raw transport failure with queue and message context.

    Args:
        error: The exception raised by the transport.
        operation: Short name of the failed call, used in the message.
        queue_url: Queue the call targeted.
        message_ids: Identifiers of the messages the call affected.
        renewal: True when the call was a heartbeat lease extension.
        extended: Copy the raw service response and metadata onto the result.
    """
    if isinstance(error, TransportOperationError):
        return error

    ids = tuple(message_ids)
    fields = _transport_fields(error)
    text = f"{operation} failed: {describe_exception(error)}"

    if renewal:
        cls: type[TransportOperationError] = LeaseRenewalError
    elif is_connection_error(error):
        cls = TransportConnectionError
    else:
        cls = TransportOperationError

    wrapped = cls(text, queue_url=queue_url, message_ids=ids, original=error, **fields)
    if extended:
        wrapped.response = getattr(error, "response", None)
        wrapped.metadata = getattr(error, "metadata", None)
    wrapped.__cause__ = error
    return wrapped


def classify_handler_error(
    error: BaseException,
    queue_url: str,
    message_ids: Iterable[str] = (),
) -> QueueError:
    """Wrap a handler failure, leaving already-classified errors intact."""
    if isinstance(error, QueueError):
        if not error.message_ids:
            error.message_ids = tuple(message_ids)
        if error.queue_url is None:
            error.queue_url = queue_url
        return error

    wrapped = HandlerFailureError(error, queue_url=queue_url, message_ids=message_ids)
    wrapped.__cause__ = error
    return wrapped
