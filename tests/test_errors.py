"""Tests for error classification."""

import pytest

from leasekeeper.core.errors import (
    CONNECTION_ERROR_CODES,
    ErrorKind,
    HandlerFailureError,
    HandlerTimeoutError,
    LeaseRenewalError,
    QueueError,
    TransportConnectionError,
    TransportError,
    TransportOperationError,
    classify_handler_error,
    classify_transport_error,
    describe_exception,
    is_connection_error,
)
from leasekeeper.core.events import EventKind, error_event_kind


class TestIsConnectionError:
    """Connection errors trigger the authentication backoff."""

    @pytest.mark.parametrize("code", sorted(CONNECTION_ERROR_CODES))
    def test_known_codes(self, code):
        assert is_connection_error(TransportError("failed", code=code)) is True

    def test_forbidden_status(self):
        assert is_connection_error(TransportError("failed", code="Whatever", status_code=403)) is True

    @pytest.mark.parametrize("error", [ConnectionResetError(), ConnectionRefusedError(), OSError()])
    def test_builtin_connection_errors(self, error):
        assert is_connection_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            TransportError("failed", code="InternalError", status_code=500),
            TransportError("failed"),
            ValueError("nope"),
        ],
    )
    def test_other_errors(self, error):
        assert is_connection_error(error) is False


class TestClassifyTransportError:
    """Transport failures are wrapped with queue context."""

    def test_operation_error_keeps_transport_fields(self):
        raw = TransportError(
            "too many entries", code="TooManyEntriesInBatchRequest", status_code=400, fault="client"
        )

        error = classify_transport_error(raw, "Delete message", "orders", ["m-1"])

        assert type(error) is TransportOperationError
        assert error.kind is ErrorKind.TRANSPORT_OPERATION
        assert error.code == "TooManyEntriesInBatchRequest"
        assert error.status_code == 400
        assert error.fault == "client"
        assert error.retryable is False
        assert error.queue_url == "orders"
        assert error.message_ids == ("m-1",)
        assert error.original is raw
        assert error.__cause__ is raw
        assert str(error) == (
            "Delete message failed: too many entries (code: TooManyEntriesInBatchRequest)"
        )

    def test_connection_error(self):
        raw = TransportError("no credentials", code="CredentialsError", retryable=True)

        error = classify_transport_error(raw, "Receive message", "orders")

        assert isinstance(error, TransportConnectionError)
        assert error.kind is ErrorKind.TRANSPORT_CONNECTION
        assert error.retryable is True
        assert error.message_ids == ()

    def test_renewal_takes_precedence(self):
        raw = TransportError("denied", code="AccessDenied")

        error = classify_transport_error(raw, "Change visibility", "orders", ["m-1"], renewal=True)

        assert isinstance(error, LeaseRenewalError)
        assert error.kind is ErrorKind.LEASE_RENEWAL

    def test_builtin_error_without_code(self):
        error = classify_transport_error(RuntimeError(), "Receive message", "orders")

        assert str(error) == "Receive message failed: RuntimeError"
        assert error.code is None

    def test_already_classified_is_returned(self):
        original = TransportOperationError("already", queue_url="orders")

        assert classify_transport_error(original, "Receive message", "orders") is original

    def test_extended_copies_response_and_metadata(self):
        raw = TransportError(
            "denied",
            code="AccessDenied",
            response={"Body": "raw"},
            metadata={"RequestId": "req-1"},
        )

        error = classify_transport_error(raw, "Receive message", "orders", extended=True)

        assert error.response == {"Body": "raw"}
        assert error.metadata == {"RequestId": "req-1"}

    def test_response_and_metadata_not_copied_by_default(self):
        raw = TransportError("denied", response={"Body": "raw"}, metadata={"RequestId": "req-1"})

        error = classify_transport_error(raw, "Receive message", "orders")

        assert error.response is None
        assert error.metadata is None


class TestClassifyHandlerError:
    """Handler failures are wrapped, timeouts pass through."""

    def test_wraps_plain_exception(self):
        cause = KeyError("customer_id")

        error = classify_handler_error(cause, "orders", ["m-1"])

        assert isinstance(error, HandlerFailureError)
        assert error.kind is ErrorKind.HANDLER_FAILURE
        assert error.original is cause
        assert error.__cause__ is cause
        assert str(error) == "Unexpected message handler failure: 'customer_id'"

    def test_timeout_passes_through_with_context(self):
        timeout = HandlerTimeoutError(1.5)

        error = classify_handler_error(timeout, "orders", ["m-1"])

        assert error is timeout
        assert error.queue_url == "orders"
        assert error.message_ids == ("m-1",)
        assert str(error) == "Message handler timed out after 1.5s: Operation timed out."

    def test_queue_error_keeps_own_ids(self):
        raised = QueueError("custom", queue_url="other", message_ids=["x"])

        error = classify_handler_error(raised, "orders", ["m-1"])

        assert error.queue_url == "other"
        assert error.message_ids == ("x",)
        assert error.message == "custom"


class TestDescribeException:
    """describe_exception never returns an empty string."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ValueError("bad value"), "bad value"),
            (ValueError(), "ValueError"),
            (ValueError(""), "ValueError: ('',)"),
        ],
    )
    def test_descriptions(self, error, expected):
        assert describe_exception(error) == expected


class TestErrorEventKind:
    """Classified errors map to event kinds."""

    @pytest.mark.parametrize(
        "error,kind",
        [
            (HandlerTimeoutError(1), EventKind.TIMEOUT_ERROR),
            (HandlerFailureError(ValueError("x")), EventKind.PROCESSING_ERROR),
            (TransportOperationError("x"), EventKind.ERROR),
            (TransportConnectionError("x"), EventKind.ERROR),
            (LeaseRenewalError("x"), EventKind.ERROR),
        ],
    )
    def test_mapping(self, error, kind):
        assert error_event_kind(error) is kind
