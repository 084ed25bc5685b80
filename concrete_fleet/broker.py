"""Topic publish/subscribe with at-least-once delivery.

Queues are named and bound to an exchange with a topic pattern. Several
subscribers on the same queue compete for its messages. A message is
acknowledged only after its handler returns; a handler exception causes a
negative acknowledgement and the message is delivered again later.

Two implementations share this contract:

* ``InMemoryBroker`` keeps queues in process (single-process mode and tests).
* ``RedisStreamsBroker`` keeps one stream per exchange and one consumer group
  per queue; unacknowledged entries are reclaimed once they have been idle for
  the redelivery delay.
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, ResponseError

from .config import Settings
from .messages import Message, decode_envelope, encode_envelope
from .utils import routing_key_matches

logger = structlog.get_logger(__name__)

Handler = Callable[[Message], Awaitable[None]]


class MessageBroker:
    redelivery_delay: float = 1.0

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def publish(self, message: Message, exchange: str, routing_key: str) -> None:
        raise NotImplementedError

    async def subscribe(self, queue: str, exchange: str, binding_key: str, handler: Handler) -> None:
        raise NotImplementedError

    async def _handle_delivery(self, queue: str, raw: str, handler: Handler) -> bool:
        """Run *handler* for one delivery; return True to ack, False to nack."""
        try:
            routing_key, message = decode_envelope(raw)
        except Exception:
            # Redelivering a message that cannot be decoded would loop forever.
            logger.exception("Dropping undecodable message", queue=queue)
            return True

        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Error processing message, requeueing",
                queue=queue,
                routing_key=routing_key,
                message_type=type(message).__name__,
                message_id=str(message.message_id),
            )
            return False

        logger.debug(
            "Processed message",
            queue=queue,
            routing_key=routing_key,
            message_id=str(message.message_id),
        )
        return True


class InMemoryBroker(MessageBroker):
    def __init__(self, redelivery_delay: float = 0.0) -> None:
        self.redelivery_delay = redelivery_delay
        self._bindings: Dict[str, List[Tuple[str, str]]] = defaultdict(list)
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: List[asyncio.Task] = []
        self._in_flight = 0

    @property
    def idle(self) -> bool:
        """True when no published message is queued or being handled."""
        return self._in_flight == 0

    def _declare_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def publish(self, message: Message, exchange: str, routing_key: str) -> None:
        raw = encode_envelope(message, routing_key)
        delivered = set()
        for queue_name, pattern in self._bindings.get(exchange, []):
            if queue_name in delivered or not routing_key_matches(pattern, routing_key):
                continue
            self._queues[queue_name].put_nowait(raw)
            self._in_flight += 1
            delivered.add(queue_name)
        logger.debug(
            "Published message",
            exchange=exchange,
            routing_key=routing_key,
            message_type=type(message).__name__,
            queues=sorted(delivered),
        )

    async def subscribe(self, queue: str, exchange: str, binding_key: str, handler: Handler) -> None:
        message_queue = self._declare_queue(queue)
        if (queue, binding_key) not in self._bindings[exchange]:
            self._bindings[exchange].append((queue, binding_key))
        task = asyncio.create_task(self._consume(queue, message_queue, handler), name=f"consumer:{queue}")
        self._consumers.append(task)
        logger.info("Bound queue", queue=queue, exchange=exchange, routing_key=binding_key)

    async def _consume(self, queue_name: str, message_queue: asyncio.Queue, handler: Handler) -> None:
        while True:
            raw = await message_queue.get()
            try:
                acked = await self._handle_delivery(queue_name, raw, handler)
                if not acked:
                    await asyncio.sleep(self.redelivery_delay)
                    # Requeue before task_done so wait_idle() keeps waiting.
                    message_queue.put_nowait(raw)
                    self._in_flight += 1
            finally:
                message_queue.task_done()
                self._in_flight -= 1

    async def wait_idle(self) -> None:
        """Block until every queue has been drained and acknowledged."""
        await asyncio.gather(*(message_queue.join() for message_queue in list(self._queues.values())))

    async def close(self) -> None:
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()


class RedisStreamsBroker(MessageBroker):
    def __init__(
        self,
        url: str,
        prefix: str = "concrete-fleet",
        consumer_name: Optional[str] = None,
        redelivery_delay: float = 1.0,
        block_ms: int = 1000,
        max_stream_length: int = 10000,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.url = url
        self.prefix = prefix
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self.redelivery_delay = redelivery_delay
        self.retry_delay = (redelivery_delay or 1.0) if retry_delay is None else retry_delay
        self.block_ms = block_ms
        self.max_stream_length = max_stream_length
        self._redis: Optional[aioredis.Redis] = None
        self._consumers: List[asyncio.Task] = []

    def _stream(self, exchange: str) -> str:
        return f"{self.prefix}:{exchange}"

    @property
    def client(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Broker is not connected")
        return self._redis

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=True)
            await self._redis.ping()
            logger.info("Connected to Redis broker", url=self.url, consumer=self.consumer_name)

    async def publish(self, message: Message, exchange: str, routing_key: str) -> None:
        raw = encode_envelope(message, routing_key)
        await self.client.xadd(
            self._stream(exchange),
            {"routing_key": routing_key, "envelope": raw},
            maxlen=self.max_stream_length,
            approximate=True,
        )
        logger.debug(
            "Published message",
            exchange=exchange,
            routing_key=routing_key,
            message_type=type(message).__name__,
        )

    async def subscribe(self, queue: str, exchange: str, binding_key: str, handler: Handler) -> None:
        stream = self._stream(exchange)
        try:
            await self.client.xgroup_create(stream, queue, id="$", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        task = asyncio.create_task(
            self._consume(stream, queue, binding_key, handler), name=f"consumer:{queue}"
        )
        self._consumers.append(task)
        logger.info("Bound queue", queue=queue, exchange=exchange, routing_key=binding_key)

    async def _claim_stale(self, stream: str, group: str) -> list:
        result = await self.client.xautoclaim(
            stream,
            group,
            self.consumer_name,
            min_idle_time=int(self.redelivery_delay * 1000),
            start_id="0-0",
            count=10,
        )
        return list(result[1]) if result else []

    async def _read_new(self, stream: str, group: str) -> list:
        response = await self.client.xreadgroup(
            group, self.consumer_name, {stream: ">"}, count=10, block=self.block_ms
        )
        entries = []
        for _, stream_entries in response or []:
            entries.extend(stream_entries)
        return entries

    async def _consume(self, stream: str, group: str, binding_key: str, handler: Handler) -> None:
        while True:
            try:
                await self._consume_batch(stream, group, binding_key, handler)
            except RedisError:
                # Entries read but not acked stay pending and are reclaimed later.
                logger.exception("Redis error while consuming, retrying", stream=stream, queue=group)
                await asyncio.sleep(self.retry_delay)

    async def _consume_batch(self, stream: str, group: str, binding_key: str, handler: Handler) -> None:
        entries = await self._claim_stale(stream, group)
        if not entries:
            entries = await self._read_new(stream, group)
        for entry_id, fields in entries:
            if not fields:
                continue
            if not routing_key_matches(binding_key, fields.get("routing_key", "")):
                await self.client.xack(stream, group, entry_id)
                continue
            if await self._handle_delivery(group, fields.get("envelope", ""), handler):
                await self.client.xack(stream, group, entry_id)
            # Unacked entries stay pending and are reclaimed by _claim_stale.

    async def close(self) -> None:
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_broker(settings: Settings) -> MessageBroker:
    if settings.uses_memory_broker:
        return InMemoryBroker(redelivery_delay=settings.redelivery_delay_seconds)
    if settings.broker_url.startswith(("redis://", "rediss://", "unix://")):
        return RedisStreamsBroker(
            settings.broker_url,
            prefix=settings.redis_stream_prefix,
            redelivery_delay=settings.redelivery_delay_seconds,
        )
    raise ValueError(f"Unsupported broker url: {settings.broker_url}")


__all__ = ["MessageBroker", "InMemoryBroker", "RedisStreamsBroker", "build_broker", "Handler"]
