"""Redis Streams broker.

Each topic is split into N partitions, one stream per partition
(``{prefix}{topic}:{partition}``), so messages sharing a key are read in
send order.

Features:
- Consumer groups with XREADGROUP/XACK
- Automatic consumer group creation
- Pending message recovery (XPENDING/XCLAIM) after a consumer dies
- Connection pooling
- Automatic reconnection
- Health checks
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ResponseError

from orderrelay.backends.base import Delivery, DeliveryReceipt
from orderrelay.backends.inmemory import partition_for
from orderrelay.core.logging import get_logger

logger = get_logger("orderrelay.redis")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except ValueError:
        return "<url>"


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@dataclass
class BrokerHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


@dataclass
class RedisMetrics:
    """Redis broker metrics."""

    messages_sent: int = 0
    messages_pulled: int = 0
    messages_acked: int = 0
    reconnections: int = 0
    pending_recovered: int = 0


class RedisStreamsBroker:
    """Partitioned broker on Redis Streams with consumer groups.

    Args:
        redis_url: Redis connection URL.
        partitions: Streams per topic.
        subscriptions: Topics this instance pulls from.
        consumer_group: Consumer group name shared by all consumer instances.
        consumer_name: Unique consumer name (auto-generated if None).
        stream_prefix: Prefix for every stream key.
        pool_size: Connection pool size.
        claim_min_idle_ms: Min idle time before claiming another consumer's pending message.
        stream_maxlen: Approximate per-stream length cap (None means unbounded).
    """

    def __init__(
        self,
        redis_url: str,
        partitions: int = 3,
        subscriptions: list[str] | None = None,
        consumer_group: str = "orderrelay",
        consumer_name: str | None = None,
        stream_prefix: str = "orderrelay:",
        pool_size: int = 10,
        claim_min_idle_ms: int = 30000,
        stream_maxlen: int | None = None,
    ) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.partitions = partitions
        self.subscriptions = list(subscriptions or [])
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self.stream_prefix = stream_prefix
        self._pool_size = pool_size
        self._claim_min_idle_ms = claim_min_idle_ms
        self._stream_maxlen = stream_maxlen

        self._redis: Redis | None = None
        self._connected = False
        self._groups_created: set[str] = set()
        self._buffer: deque[Delivery] = deque()
        self._metrics = RedisMetrics()
        self._conn_lock = asyncio.Lock()

    @property
    def redis_url(self) -> str:
        return self._url

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    def stream_key(self, topic: str, partition: int) -> str:
        return f"{self.stream_prefix}{topic}:{partition}"

    def _subscribed_streams(self) -> dict[str, tuple[str, int]]:
        return {
            self.stream_key(topic, p): (topic, p)
            for topic in self.subscriptions
            for p in range(self.partitions)
        }

    async def _get_client(self) -> Redis:
        """Return a live client, reconnecting under the connection lock if needed."""
        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except Exception as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Another coroutine may have reconnected while we waited
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except Exception:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected

            pool = ConnectionPool.from_url(self._url, max_connections=self._pool_size)
            new_redis = Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except Exception:
                await new_redis.aclose()
                raise

            self._redis = new_redis
            self._connected = True
            if is_reconnection:
                self._metrics.reconnections += 1
                self._groups_created.clear()
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def _ensure_consumer_groups(self) -> None:
        """Create the consumer group on every subscribed stream."""
        missing = [s for s in self._subscribed_streams() if s not in self._groups_created]
        if not missing:
            return

        redis = await self._get_client()
        for stream in missing:
            try:
                await redis.xgroup_create(stream, self.consumer_group, id="0", mkstream=True)
                logger.info(f"Created consumer group '{self.consumer_group}' on '{stream}'")
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
                logger.debug(f"Consumer group '{self.consumer_group}' already exists on '{stream}'")
            self._groups_created.add(stream)

    async def send(self, topic: str, key: str, value: bytes) -> DeliveryReceipt:
        """XADD to the key's partition stream; the entry ID is the offset."""
        redis = await self._get_client()
        partition = partition_for(key, self.partitions)
        stream = self.stream_key(topic, partition)

        kwargs: dict[str, Any] = {}
        if self._stream_maxlen is not None:
            kwargs = {"maxlen": self._stream_maxlen, "approximate": True}
        message_id = await redis.xadd(stream, {"key": key, "value": value}, **kwargs)

        self._metrics.messages_sent += 1
        logger.debug(f"Sent {_text(message_id)} to {stream}")
        return DeliveryReceipt(topic=topic, partition=partition, offset=_text(message_id))

    def _to_delivery(self, stream: str, message: tuple, delivery_count: int = 1) -> Delivery:
        topic, partition = self._subscribed_streams()[stream]
        message_id, fields = message
        fields = {_text(k): v for k, v in fields.items()}
        key = fields.get("key")
        return Delivery(
            topic=topic,
            partition=partition,
            offset=_text(message_id),
            key=_text(key) if key is not None else None,
            value=fields.get("value", b""),
            delivery_count=delivery_count,
        )

    async def _recover_pending(self) -> Delivery | None:
        """Claim a message another consumer left pending past the idle threshold."""
        redis = await self._get_client()

        for stream in self._subscribed_streams():
            try:
                pending = await redis.xpending_range(
                    stream, self.consumer_group, min="-", max="+", count=10
                )
            except ResponseError:
                continue

            for entry in pending:
                if entry["time_since_delivered"] < self._claim_min_idle_ms:
                    continue
                msg_id = entry["message_id"]
                try:
                    claimed = await redis.xclaim(
                        stream,
                        self.consumer_group,
                        self.consumer_name,
                        min_idle_time=self._claim_min_idle_ms,
                        message_ids=[msg_id],
                    )
                except ResponseError as e:
                    logger.warning(f"Failed to claim {_text(msg_id)}: {e}")
                    continue
                # Entries trimmed from the stream come back empty
                if claimed and claimed[0][1]:
                    self._metrics.pending_recovered += 1
                    return self._to_delivery(
                        stream, claimed[0], delivery_count=entry["times_delivered"] + 1
                    )
        return None

    async def pull(self, timeout: float = 1.0) -> Delivery | None:
        """Read the next message from any subscribed stream using XREADGROUP."""
        if not self.subscriptions:
            await asyncio.sleep(timeout)
            return None

        if self._buffer:
            return self._buffer.popleft()

        await self._ensure_consumer_groups()
        redis = await self._get_client()

        recovered = await self._recover_pending()
        if recovered is not None:
            return recovered

        try:
            response = await redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={stream: ">" for stream in self._subscribed_streams()},
                count=1,
                block=max(int(timeout * 1000), 1),
            )
        except Exception as e:
            logger.error(f"XREADGROUP failed: {e}")
            self._groups_created.clear()
            raise

        # One entry per stream can come back; the extras are already in our PEL
        for stream, messages in response or []:
            for message in messages:
                self._metrics.messages_pulled += 1
                self._buffer.append(self._to_delivery(_text(stream), message))
        return self._buffer.popleft() if self._buffer else None

    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge a delivery with XACK."""
        redis = await self._get_client()
        stream = self.stream_key(delivery.topic, delivery.partition)
        try:
            await redis.xack(stream, self.consumer_group, delivery.offset)
        except Exception as e:
            logger.error(f"XACK failed for message {delivery.offset} on {stream}: {e}")
            raise
        self._metrics.messages_acked += 1
        logger.debug(f"Acked message {delivery.offset} on {stream}")

    async def health(self) -> BrokerHealth:
        """Check broker health."""
        start = time.monotonic()
        try:
            redis = await self._get_client()
            await redis.ping()
            lengths = {stream: await redis.xlen(stream) for stream in self._subscribed_streams()}
            return BrokerHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={
                    "stream_lengths": lengths,
                    "consumer_group": self.consumer_group,
                    "consumer_name": self.consumer_name,
                    "metrics": {
                        "sent": self._metrics.messages_sent,
                        "pulled": self._metrics.messages_pulled,
                        "acked": self._metrics.messages_acked,
                        "reconnections": self._metrics.reconnections,
                    },
                },
            )
        except Exception as e:
            return BrokerHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        """Close Redis connection."""
        self._buffer.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def delete_topic(self, topic: str) -> None:
        """Delete every partition stream of a topic (for testing)."""
        redis = await self._get_client()
        await redis.delete(*(self.stream_key(topic, p) for p in range(self.partitions)))
        self._groups_created.difference_update(
            self.stream_key(topic, p) for p in range(self.partitions)
        )
