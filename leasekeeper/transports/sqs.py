"""Amazon SQS transport over boto3.

boto3 clients are synchronous, so every call runs in a worker thread via
asyncio.to_thread(). Cancelling the awaiting task (stop(abort=True)) stops
the consumer from waiting; the HTTP request itself finishes in its thread.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from leasekeeper.core.errors import TransportError
from leasekeeper.core.message import Message

logger = logging.getLogger("leasekeeper.sqs")

# Long polls block up to 20s, so reads must be allowed to outlast them
DEFAULT_READ_TIMEOUT = 30
DEFAULT_CONNECT_TIMEOUT = 5

_THROTTLING_CODES = frozenset({"RequestThrottled", "ThrottlingException", "OverLimit"})


def _translate(error: Exception, operation: str) -> Exception:
    """Return a TransportError describing a boto3/botocore failure."""
    try:
        from botocore import exceptions as boto_errors
    except ImportError as e:
        raise ImportError("Install boto3: pip install leasekeeper[sqs]") from e

    if isinstance(error, boto_errors.ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code") or "ClientError"
        metadata = error.response.get("ResponseMetadata") or {}
        status = metadata.get("HTTPStatusCode")
        fault = "server" if details.get("Type") == "Receiver" else "client"
        return TransportError(
            f"SQS {operation} failed: {details.get('Message') or error}",
            code=code,
            status_code=status,
            retryable=code in _THROTTLING_CODES or fault == "server",
            fault=fault,
            response=error.response,
            metadata=metadata or None,
        )
    if isinstance(error, (boto_errors.NoCredentialsError, boto_errors.PartialCredentialsError)):
        return TransportError(f"SQS {operation} failed: {error}", code="CredentialsError")
    if isinstance(error, boto_errors.EndpointConnectionError):
        return TransportError(
            f"SQS {operation} failed: {error}", code="UnknownEndpoint", retryable=True
        )
    if isinstance(error, boto_errors.BotoCoreError):
        return TransportError(f"SQS {operation} failed: {error}", code=type(error).__name__)
    return error


class SQSTransport:
    """QueueTransport backed by an injected boto3 SQS client.

    Args:
        client: A boto3 SQS client, e.g. boto3.client("sqs", region_name=...).
    """

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_region(cls, region_name: str, **client_kwargs: Any) -> "SQSTransport":
        """Build a transport with a client tuned for long polling."""
        try:
            import boto3
            from botocore.config import Config
        except ImportError as e:
            raise ImportError("Install boto3: pip install leasekeeper[sqs]") from e

        client_kwargs.setdefault(
            "config",
            Config(read_timeout=DEFAULT_READ_TIMEOUT, connect_timeout=DEFAULT_CONNECT_TIMEOUT),
        )
        return cls(boto3.client("sqs", region_name=region_name, **client_kwargs))

    async def _call(self, operation: str, method: Callable[..., Any], **params: Any) -> Any:
        try:
            return await asyncio.to_thread(method, **params)
        except Exception as e:
            translated = _translate(e, operation)
            if translated is e:
                raise
            raise translated from e

    async def send_message(
        self,
        queue_url: str,
        body: str,
        message_attributes: dict[str, Any] | None = None,
    ) -> str:
        params: dict[str, Any] = {"QueueUrl": queue_url, "MessageBody": body}
        if message_attributes:
            params["MessageAttributes"] = message_attributes
        response = await self._call("send message", self.client.send_message, **params)
        return response["MessageId"]

    async def receive_messages(
        self,
        queue_url: str,
        max_messages: int,
        wait_time_seconds: float,
        visibility_timeout: int | None = None,
        attribute_names: Sequence[str] = (),
        message_attribute_names: Sequence[str] = (),
    ) -> list[Message]:
        params: dict[str, Any] = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": max_messages,
            "WaitTimeSeconds": int(wait_time_seconds),
            # Always ask for the receive count so Message.receive_count is accurate
            "AttributeNames": sorted({*attribute_names, "ApproximateReceiveCount"}),
            "MessageAttributeNames": list(message_attribute_names),
        }
        if visibility_timeout is not None:
            params["VisibilityTimeout"] = visibility_timeout

        response = await self._call("receive message", self.client.receive_message, **params)
        raw_messages = response.get("Messages", [])
        if raw_messages:
            logger.debug(f"Received {len(raw_messages)} messages from {queue_url}")
        return [self._to_message(raw, attribute_names) for raw in raw_messages]

    @staticmethod
    def _to_message(raw: dict[str, Any], attribute_names: Sequence[str]) -> Message:
        attributes = dict(raw.get("Attributes", {}))
        receive_count = int(attributes.get("ApproximateReceiveCount", "1") or 1)
        if "All" not in attribute_names and "ApproximateReceiveCount" not in attribute_names:
            attributes.pop("ApproximateReceiveCount", None)
        return Message(
            id=raw["MessageId"],
            receipt_handle=raw["ReceiptHandle"],
            body=raw.get("Body", ""),
            attributes=attributes,
            message_attributes=raw.get("MessageAttributes", {}),
            receive_count=max(1, receive_count),
        )

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        await self._call(
            "delete message",
            self.client.delete_message,
            QueueUrl=queue_url,
            ReceiptHandle=receipt_handle,
        )

    async def delete_message_batch(self, queue_url: str, receipt_handles: Sequence[str]) -> None:
        entries = [
            {"Id": str(index), "ReceiptHandle": handle}
            for index, handle in enumerate(receipt_handles)
        ]
        response = await self._call(
            "delete message batch",
            self.client.delete_message_batch,
            QueueUrl=queue_url,
            Entries=entries,
        )
        self._raise_for_failed(response, "delete message batch", len(entries))

    async def change_visibility(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        await self._call(
            "change message visibility",
            self.client.change_message_visibility,
            QueueUrl=queue_url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=visibility_timeout,
        )

    async def change_visibility_batch(
        self, queue_url: str, entries: Sequence[tuple[str, int]]
    ) -> None:
        request = [
            {"Id": str(index), "ReceiptHandle": handle, "VisibilityTimeout": timeout}
            for index, (handle, timeout) in enumerate(entries)
        ]
        response = await self._call(
            "change message visibility batch",
            self.client.change_message_visibility_batch,
            QueueUrl=queue_url,
            Entries=request,
        )
        self._raise_for_failed(response, "change message visibility batch", len(request))

    @staticmethod
    def _raise_for_failed(response: dict[str, Any], operation: str, total: int) -> None:
        failed = response.get("Failed") or []
        if not failed:
            return
        first = failed[0]
        raise TransportError(
            f"SQS {operation} failed for {len(failed)} of {total} entries: "
            f"{first.get('Message') or first.get('Code')}",
            code=first.get("Code"),
            fault="client" if first.get("SenderFault") else "server",
        )
