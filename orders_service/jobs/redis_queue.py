"""Redis-backed at-least-once message queue.

Features:
- Persistence across application restarts and sharing between processes.
- Visibility timeout, receive counting and dead-lettering with the same
  semantics as the in-memory queue.
- Thread-safe operations.
- Optional fallback to the in-memory queue while Redis is unavailable
  (``REDIS_FALLBACK_TO_MEMORY``). Without it sends raise QueueUnavailable.

Data structures in Redis (``<prefix>`` defaults to ``orders``):
 1. Hash   <prefix>:messages   - message_id -> JSON envelope
 2. List   <prefix>:ready      - ids of visible messages
 3. ZSet   <prefix>:in_flight  - score=visible_at, member=message_id
 4. Hash   <prefix>:receipts   - receipt_handle -> message_id
 5. List   <prefix>:dead       - JSON envelopes of dead-lettered messages

On receive:
  - Reclaim in-flight ids whose visible_at <= now. ZREM decides which
    consumer owns a reclaim, so concurrent consumers never both requeue.
  - Dead-letter reclaimed messages that reached max_receive_count.
  - LPOP ready ids, bump receive count, issue a receipt and mark in flight.
  - If nothing is ready, BLPOP until a message arrives or the wait expires.
"""
from __future__ import annotations

import json
import math
import threading
import time
import uuid
from typing import Any, Callable, Optional

import redis

from orders_service.config import QUEUE_SETTINGS
from orders_service.errors import QueueUnavailable
from orders_service.jobs.queue import Delivery, InMemoryMessageQueue, QueueMessage
from orders_service.utils import get_logger

logger = get_logger(__name__)

_RECEIPT_PREFIX = "r:"


def _decode(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisMessageQueue:
    def __init__(
        self,
        *,
        visibility_timeout: Optional[float] = None,
        max_receive_count: Optional[int] = None,
        dead_letter_retention: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        fallback_to_memory: Optional[bool] = None,
    ) -> None:
        self.fallback_to_memory = bool(
            fallback_to_memory if fallback_to_memory is not None else QUEUE_SETTINGS.get("redis_fallback_to_memory", False)
        )
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(QUEUE_SETTINGS.get("redis_key_prefix", "orders"))
        self._messages_key = f"{prefix}:messages"
        self._ready_key = f"{prefix}:ready"
        self._in_flight_key = f"{prefix}:in_flight"
        self._receipts_key = f"{prefix}:receipts"
        self._dead_key = f"{prefix}:dead"
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))

        self.visibility_timeout = float(
            visibility_timeout if visibility_timeout is not None else QUEUE_SETTINGS["visibility_timeout_seconds"]
        )
        self.max_receive_count = int(
            max_receive_count if max_receive_count is not None else QUEUE_SETTINGS["max_receive_count"]
        )
        self.dead_letter_retention = float(
            dead_letter_retention if dead_letter_retention is not None else QUEUE_SETTINGS["dead_letter_retention_seconds"]
        )
        self._clock = clock

        # In-memory fallback queue
        self._fallback_queue = InMemoryMessageQueue(
            visibility_timeout=self.visibility_timeout,
            max_receive_count=self.max_receive_count,
            dead_letter_retention=self.dead_letter_retention,
            clock=clock,
        )

        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(self._redis_url, socket_connect_timeout=self._health_check_timeout)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis", error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active

        try:
            self._redis_client.ping()
            if not self._is_redis_active:
                logger.info("Redis connection restored")
            self._is_redis_active = True
            return True
        except (redis.RedisError, ConnectionError, AttributeError) as e:
            if self._is_redis_active:
                logger.warning("Redis connection lost", error=str(e))
            self._is_redis_active = False
            return False

    @property
    def redis_active(self) -> bool:
        return self._is_redis_active

    # ----------------------------- envelopes ----------------------------- #
    def _load(self, message_id: str) -> Optional[dict]:
        raw = _decode(self._redis_client.hget(self._messages_key, message_id))
        return json.loads(raw) if raw else None

    def _store(self, envelope: dict) -> None:
        self._redis_client.hset(self._messages_key, envelope["message_id"], json.dumps(envelope))

    def _reclaim_expired(self, now: float) -> None:
        expired = self._redis_client.zrangebyscore(self._in_flight_key, 0, now) or []
        for member in expired:
            message_id = _decode(member)
            # Only the consumer whose ZREM succeeds owns this reclaim
            if not self._redis_client.zrem(self._in_flight_key, message_id):
                continue
            envelope = self._load(message_id)
            if envelope is None:
                continue
            if envelope.get("receipt_handle"):
                self._redis_client.hdel(self._receipts_key, envelope["receipt_handle"])
            envelope["receipt_handle"] = None
            if int(envelope.get("receive_count", 0)) >= self.max_receive_count:
                envelope["dead_lettered_at"] = now
                self._redis_client.rpush(self._dead_key, json.dumps(envelope))
                self._redis_client.hdel(self._messages_key, message_id)
                attributes = envelope.get("attributes") or {}
                logger.warning(
                    "Message moved to dead-letter list",
                    messageId=message_id,
                    receiveCount=envelope.get("receive_count"),
                    orderId=attributes.get("OrderId"),
                    correlationId=attributes.get("CorrelationId"),
                )
            else:
                self._store(envelope)
                self._redis_client.rpush(self._ready_key, message_id)

    def _claim(self, message_id: str, now: float) -> Optional[Delivery]:
        envelope = self._load(message_id)
        if envelope is None:
            return None
        envelope["receive_count"] = int(envelope.get("receive_count", 0)) + 1
        handle = f"{_RECEIPT_PREFIX}{uuid.uuid4().hex}"
        envelope["receipt_handle"] = handle
        visible_at = now + self.visibility_timeout
        envelope["visible_at"] = visible_at
        self._store(envelope)
        self._redis_client.hset(self._receipts_key, handle, message_id)
        self._redis_client.zadd(self._in_flight_key, {message_id: visible_at})
        return Delivery(
            message_id=message_id,
            receipt_handle=handle,
            body=envelope["body"],
            attributes=dict(envelope.get("attributes") or {}),
            receive_count=envelope["receive_count"],
            sent_at=float(envelope.get("sent_at", now)),
        )

    # ----------------------------- public API ----------------------------- #
    def send(self, body: str, attributes: Optional[dict[str, str]] = None) -> str:
        with self._lock:
            if self._shutdown:
                raise QueueUnavailable("Queue shutdown")

            if not self.health_check() or self._redis_client is None:
                if not self.fallback_to_memory:
                    raise QueueUnavailable("Redis unavailable for send")
                logger.warning("Redis unavailable, falling back to in-memory queue")
                return self._fallback_queue.send(body, attributes)

            message_id = str(uuid.uuid4())
            envelope = {
                "message_id": message_id,
                "body": body,
                "attributes": dict(attributes or {}),
                "sent_at": self._clock(),
                "receive_count": 0,
                "receipt_handle": None,
            }
            try:
                self._store(envelope)
                self._redis_client.rpush(self._ready_key, message_id)
            except redis.RedisError as e:
                logger.error("Redis error during send", error=str(e))
                self._is_redis_active = False
                if not self.fallback_to_memory:
                    raise QueueUnavailable(f"Redis error during send: {e}") from e
                return self._fallback_queue.send(body, attributes)

            queue_depth = self.depth()
            if queue_depth >= self._warn_depth:
                logger.warning("Queue depth warning", depth=queue_depth)
            return message_id

    def receive(self, max_messages: int = 10, *, wait_seconds: float = 0.0) -> list[Delivery]:
        if self._shutdown:
            return []
        max_messages = max(1, max_messages)
        deadline = time.monotonic() + max(0.0, wait_seconds)

        # Drain anything parked in the fallback while Redis was down
        deliveries = self._fallback_queue.receive(max_messages)
        if deliveries:
            return deliveries

        while True:
            with self._lock:
                client = self._redis_client if self.health_check() else None
                if client is not None:
                    try:
                        now = self._clock()
                        self._reclaim_expired(now)
                        while len(deliveries) < max_messages:
                            message_id = _decode(client.lpop(self._ready_key))
                            if message_id is None:
                                break
                            delivery = self._claim(message_id, now)
                            if delivery is not None:
                                deliveries.append(delivery)
                    except redis.RedisError as e:
                        logger.error("Redis error during receive", error=str(e))
                        self._is_redis_active = False
                        client = None
            if deliveries:
                return deliveries
            if client is None:
                return self._receive_without_redis(max_messages, deadline)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            # Blocks without holding the lock so sends and acks keep flowing
            try:
                result = client.blpop([self._ready_key], timeout=max(1, int(math.ceil(min(remaining, 1.0)))))
            except redis.RedisError as e:
                logger.error("Redis error during receive", error=str(e))
                self._is_redis_active = False
                return self._receive_without_redis(max_messages, deadline)
            if result is None:
                continue
            if not isinstance(result, (list, tuple)) or len(result) != 2:
                logger.warning("Unexpected result type from blpop", result_type=type(result).__name__)
                continue
            message_id = _decode(result[1])
            with self._lock:
                try:
                    delivery = self._claim(message_id, self._clock())
                except redis.RedisError as e:
                    logger.error("Redis error claiming message", messageId=message_id, error=str(e))
                    self._is_redis_active = False
                    return self._receive_without_redis(max_messages, deadline)
            if delivery is not None:
                deliveries.append(delivery)

    def _receive_without_redis(self, max_messages: int, deadline: float) -> list[Delivery]:
        remaining = max(0.0, deadline - time.monotonic())
        if self.fallback_to_memory:
            logger.debug("Redis unavailable for receive, using in-memory fallback")
            return self._fallback_queue.receive(max_messages, wait_seconds=remaining)
        # Wait out the poll instead of returning straight away
        if remaining > 0:
            time.sleep(remaining)
        return []

    def ack(self, receipt_handle: str) -> bool:
        if not receipt_handle.startswith(_RECEIPT_PREFIX):
            return self._fallback_queue.ack(receipt_handle)
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                raise QueueUnavailable("Redis unavailable for ack")
            try:
                message_id = _decode(self._redis_client.hget(self._receipts_key, receipt_handle))
                if message_id is None:
                    return False
                self._redis_client.hdel(self._receipts_key, receipt_handle)
                envelope = self._load(message_id)
                if envelope is None or envelope.get("receipt_handle") != receipt_handle:
                    return False
                if float(envelope.get("visible_at", 0.0)) <= self._clock():
                    # Visibility lapsed; the message is due for redelivery
                    return False
                self._redis_client.zrem(self._in_flight_key, message_id)
                self._redis_client.hdel(self._messages_key, message_id)
                return True
            except redis.RedisError as e:
                logger.error("Redis error during ack", error=str(e))
                self._is_redis_active = False
                raise QueueUnavailable(f"Redis error during ack: {e}") from e

    def dead_letters(self) -> list[QueueMessage]:
        dead = self._fallback_queue.dead_letters()
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return dead
            try:
                now = self._clock()
                self._reclaim_expired(now)
                cutoff = now - self.dead_letter_retention
                for raw in self._redis_client.lrange(self._dead_key, 0, -1) or []:
                    text = _decode(raw)
                    envelope = json.loads(text)
                    if float(envelope.get("dead_lettered_at") or now) <= cutoff:
                        self._redis_client.lrem(self._dead_key, 1, text)
                        continue
                    dead.append(QueueMessage(
                        message_id=envelope["message_id"],
                        body=envelope["body"],
                        attributes=dict(envelope.get("attributes") or {}),
                        sent_at=float(envelope.get("sent_at", 0.0)),
                        receive_count=int(envelope.get("receive_count", 0)),
                        dead_lettered_at=envelope.get("dead_lettered_at"),
                    ))
            except redis.RedisError as e:
                logger.error("Error reading dead letters", error=str(e))
                self._is_redis_active = False
            return dead

    def redrive_dead_letters(self) -> int:
        moved = self._fallback_queue.redrive_dead_letters()
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return moved
            try:
                for raw in self._redis_client.lrange(self._dead_key, 0, -1) or []:
                    text = _decode(raw)
                    envelope = json.loads(text)
                    envelope.update({"receive_count": 0, "receipt_handle": None, "dead_lettered_at": None})
                    self._store(envelope)
                    self._redis_client.rpush(self._ready_key, envelope["message_id"])
                    self._redis_client.lrem(self._dead_key, 1, text)
                    moved += 1
            except redis.RedisError as e:
                logger.error("Error redriving dead letters", error=str(e))
                self._is_redis_active = False
        if moved:
            logger.info("Dead letters redriven", count=moved)
        return moved

    def shutdown(self) -> None:
        """Mark the queue as shutdown."""
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued and dead-lettered messages (for testing)."""
        with self._lock:
            self._fallback_queue.purge()

            if not self.health_check() or self._redis_client is None:
                return

            try:
                for key in (self._messages_key, self._ready_key, self._in_flight_key, self._receipts_key, self._dead_key):
                    self._redis_client.delete(key)
                logger.info("Redis queue purged")
            except redis.RedisError as e:
                logger.error("Error purging Redis queue", error=str(e))
                self._is_redis_active = False

    def _safe_int_conversion(self, value: Any) -> int:
        """Safely convert a value to int, handling various Redis response types."""
        if value is None:
            return 0
        try:
            if isinstance(value, bytes):
                value = value.decode('utf-8')
            return int(value)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to convert Redis value to int", value_type=type(value).__name__, error=str(e))
            return 0

    def depth(self) -> int:
        """Get the total number of live (ready + in flight) messages."""
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                return self._fallback_queue.depth()
            try:
                return self._safe_int_conversion(self._redis_client.hlen(self._messages_key)) + self._fallback_queue.depth()
            except redis.RedisError as e:
                logger.error("Error getting queue depth", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.depth()

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        """Get a snapshot of the queue state."""
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot

            try:
                now = self._clock()
                total = self._safe_int_conversion(self._redis_client.hlen(self._messages_key))
                ready = self._safe_int_conversion(self._redis_client.llen(self._ready_key))
                in_flight = self._safe_int_conversion(self._redis_client.zcard(self._in_flight_key))
                dead = self._safe_int_conversion(self._redis_client.llen(self._dead_key))
                sent_times = [
                    float(json.loads(_decode(raw)).get("sent_at", now))
                    for raw in (self._redis_client.hvals(self._messages_key) or [])
                ]
                oldest = min(sent_times, default=None)
                return {
                    "depth": total,
                    "ready": ready,
                    "in_flight": in_flight,
                    "dead_letters": dead,
                    "oldest_message_age_seconds": round(now - oldest, 3) if oldest is not None else 0.0,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                    "redis_url": self._redis_url,
                }
            except redis.RedisError as e:
                logger.error("Error getting queue snapshot", error=str(e))
                self._is_redis_active = False
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot


__all__ = ["RedisMessageQueue"]
