"""Redis Streams lease queue.

Each queue is a stream read through a consumer group. Leases are kept in a
sorted set scored by expiry time (ms since epoch), so:

- receive reclaims entries whose lease expired (XCLAIM) before reading new
  ones (XREADGROUP), then records a fresh lease for everything it returns
- delete acknowledges and removes the entry (XACK + XDEL) and forgets its lease
- change_visibility rescores the lease; 0 makes the entry reclaimable at once

Every delivery gets a new receipt handle "<entry id>@<token>"; only the
latest token for an entry is accepted.
"""

import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from leasekeeper.core.errors import TransportError
from leasekeeper.core.message import Message

logger = logging.getLogger("leasekeeper.redis")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _split_handle(receipt_handle: str) -> tuple[str, str]:
    entry_id, sep, token = receipt_handle.partition("@")
    if not sep or not entry_id or not token:
        raise TransportError(
            f"The receipt handle is not valid: {receipt_handle}",
            code="ReceiptHandleIsInvalid",
            status_code=400,
            fault="client",
        )
    return entry_id, token


class RedisTransport:
    """Lease-based queue on Redis Streams consumer groups.

    Args:
        redis_url: Redis connection URL.
        key_prefix: Prefix for every key; the queue URL follows it.
        consumer_group: Consumer group name shared by all consumers of a queue.
        consumer_name: Unique consumer name (auto-generated if None).
        default_visibility_timeout: Lease used when receive does not set one.
        client: Pre-built redis.asyncio client; skips connection creation.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "leasekeeper:",
        consumer_group: str = "leasekeeper",
        consumer_name: str | None = None,
        default_visibility_timeout: int = 30,
        client: Any = None,
    ) -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self.default_visibility_timeout = default_visibility_timeout
        self._redis: Any = client
        self._groups: set[str] = set()

    def _keys(self, queue_url: str) -> tuple[str, str, str, str]:
        stream = f"{self.key_prefix}{queue_url}"
        return stream, f"{stream}:leases", f"{stream}:handles", f"{stream}:counts"

    async def _get_client(self) -> Any:
        if self._redis is not None:
            return self._redis
        try:
            from redis.asyncio import Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install leasekeeper[redis]") from e

        self._redis = Redis.from_url(self._url, decode_responses=True)
        logger.info(f"Connected to Redis at {self._url_safe}")
        return self._redis

    @contextlib.asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        """Re-raise redis client errors as transport errors."""
        try:
            from redis import exceptions as redis_errors
        except ImportError as e:
            raise ImportError("Install redis: pip install leasekeeper[redis]") from e

        try:
            yield
        except TransportError:
            raise
        except redis_errors.AuthenticationError as e:
            raise TransportError(
                f"Redis {operation} failed: {e}", code="CredentialsError", status_code=403
            ) from e
        except (redis_errors.ConnectionError, redis_errors.TimeoutError) as e:
            raise TransportError(
                f"Redis {operation} failed: {e}",
                code="UnknownEndpoint",
                retryable=True,
                fault="server",
            ) from e
        except redis_errors.RedisError as e:
            raise TransportError(
                f"Redis {operation} failed: {e}", code=type(e).__name__, fault="server"
            ) from e

    async def _ensure_consumer_group(self, stream: str) -> None:
        """Create consumer group if it doesn't exist."""
        if stream in self._groups:
            return

        redis = await self._get_client()
        try:
            await redis.xgroup_create(stream, self.consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{self.consumer_group}' on '{stream}'")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group '{self.consumer_group}' already exists")
        self._groups.add(stream)

    async def send_message(
        self,
        queue_url: str,
        body: str,
        message_attributes: dict[str, Any] | None = None,
    ) -> str:
        """Append a message with XADD and return its entry id."""
        stream, *_ = self._keys(queue_url)
        async with self._translate_errors("send message"):
            await self._ensure_consumer_group(stream)
            redis = await self._get_client()
            return await redis.xadd(
                stream,
                {
                    "body": body,
                    "message_attributes": json.dumps(message_attributes or {}),
                    "sent_timestamp": str(int(time.time() * 1000)),
                },
            )

    async def receive_messages(
        self,
        queue_url: str,
        max_messages: int,
        wait_time_seconds: float,
        visibility_timeout: int | None = None,
        attribute_names: Sequence[str] = (),
        message_attribute_names: Sequence[str] = (),
    ) -> list[Message]:
        stream, leases, _, _ = self._keys(queue_url)
        lease = visibility_timeout if visibility_timeout is not None else self.default_visibility_timeout

        async with self._translate_errors("receive message"):
            await self._ensure_consumer_group(stream)
            redis = await self._get_client()

            entries: list[tuple[str, dict[str, str]]] = []
            expired = await redis.zrangebyscore(
                leases, "-inf", int(time.time() * 1000), start=0, num=max_messages
            )
            if expired:
                claimed = await redis.xclaim(
                    stream,
                    self.consumer_group,
                    self.consumer_name,
                    min_idle_time=0,
                    message_ids=expired,
                )
                entries.extend((entry_id, data) for entry_id, data in claimed if data)
                # Entries deleted from the stream meanwhile leave dangling leases
                gone = set(expired) - {entry_id for entry_id, _ in entries}
                if gone:
                    await redis.zrem(leases, *gone)

            remaining = max_messages - len(entries)
            if remaining > 0:
                block = None if entries or wait_time_seconds <= 0 else int(wait_time_seconds * 1000)
                response = await redis.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=self.consumer_name,
                    streams={stream: ">"},
                    count=remaining,
                    block=block,
                )
                for _, stream_entries in response or []:
                    entries.extend(stream_entries)

            if not entries:
                return []
            return await self._lease(queue_url, entries, lease, attribute_names, message_attribute_names)

    async def _lease(
        self,
        queue_url: str,
        entries: list[tuple[str, dict[str, str]]],
        lease: int,
        attribute_names: Sequence[str],
        message_attribute_names: Sequence[str],
    ) -> list[Message]:
        _, leases, handles, counts = self._keys(queue_url)
        redis = await self._get_client()
        expires_at = int(time.time() * 1000) + lease * 1000
        tokens = {entry_id: uuid4().hex for entry_id, _ in entries}

        async with redis.pipeline(transaction=True) as pipe:
            for entry_id, _ in entries:
                pipe.hset(handles, entry_id, tokens[entry_id])
                pipe.hincrby(counts, entry_id, 1)
            pipe.zadd(leases, {entry_id: expires_at for entry_id, _ in entries})
            results = await pipe.execute()

        receive_counts = results[1::2]
        messages = []
        for (entry_id, data), receive_count in zip(entries, receive_counts):
            messages.append(
                self._to_message(
                    entry_id,
                    tokens[entry_id],
                    data,
                    int(receive_count),
                    attribute_names,
                    message_attribute_names,
                )
            )
        return messages

    @staticmethod
    def _to_message(
        entry_id: str,
        token: str,
        data: dict[str, str],
        receive_count: int,
        attribute_names: Sequence[str],
        message_attribute_names: Sequence[str],
    ) -> Message:
        system = {
            "SentTimestamp": data.get("sent_timestamp", ""),
            "ApproximateReceiveCount": str(receive_count),
        }
        if "All" not in attribute_names:
            system = {k: v for k, v in system.items() if k in attribute_names}

        try:
            user = json.loads(data.get("message_attributes", "{}"))
        except ValueError:
            logger.warning(f"Entry {entry_id} has unreadable message attributes")
            user = {}
        if "All" not in message_attribute_names:
            user = {k: v for k, v in user.items() if k in message_attribute_names}

        return Message(
            id=entry_id,
            receipt_handle=f"{entry_id}@{token}",
            body=data.get("body", ""),
            attributes=system,
            message_attributes=user,
            receive_count=receive_count,
        )

    async def _check_handle(self, queue_url: str, receipt_handle: str) -> str:
        _, _, handles, _ = self._keys(queue_url)
        entry_id, token = _split_handle(receipt_handle)
        redis = await self._get_client()
        current = await redis.hget(handles, entry_id)
        if current != token:
            raise TransportError(
                f"The receipt handle is not valid: {receipt_handle}",
                code="ReceiptHandleIsInvalid",
                status_code=400,
                fault="client",
            )
        return entry_id

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        await self.delete_message_batch(queue_url, [receipt_handle])

    async def delete_message_batch(self, queue_url: str, receipt_handles: Sequence[str]) -> None:
        stream, leases, handles, counts = self._keys(queue_url)
        async with self._translate_errors("delete message"):
            entry_ids = [await self._check_handle(queue_url, h) for h in receipt_handles]
            redis = await self._get_client()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.xack(stream, self.consumer_group, *entry_ids)
                pipe.xdel(stream, *entry_ids)
                pipe.zrem(leases, *entry_ids)
                pipe.hdel(handles, *entry_ids)
                pipe.hdel(counts, *entry_ids)
                await pipe.execute()
            logger.debug(f"Deleted {len(entry_ids)} entries from {stream}")

    async def change_visibility(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        await self.change_visibility_batch(queue_url, [(receipt_handle, visibility_timeout)])

    async def change_visibility_batch(
        self, queue_url: str, entries: Sequence[tuple[str, int]]
    ) -> None:
        _, leases, _, _ = self._keys(queue_url)
        async with self._translate_errors("change visibility"):
            now_ms = int(time.time() * 1000)
            scores = {}
            for receipt_handle, visibility_timeout in entries:
                entry_id = await self._check_handle(queue_url, receipt_handle)
                scores[entry_id] = now_ms + visibility_timeout * 1000
            redis = await self._get_client()
            await redis.zadd(leases, scores, xx=True)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")
