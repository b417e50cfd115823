"""In-memory at-least-once message queue (single-process).

Features:
- Unordered, at-least-once delivery of string bodies with string attributes.
- Visibility timeout: a received message is hidden until it is acked or
  its timeout lapses, after which it becomes deliverable again.
- Receive counting with a dead-letter list after ``max_receive_count``
  deliveries that were never acked.
- Capacity limits / backpressure via QUEUE_SETTINGS.
- Thread-safe with a condition variable.

Two structures hold live messages:
 1. ready: FIFO of message ids currently visible to consumers
 2. in_flight_heap: (visible_at, seq, message_id, receipt_handle)

On receive:
  - Reclaim in-flight entries whose visible_at <= now. Entries carrying a
    stale receipt handle (acked or already redelivered) are dropped.
  - A reclaimed message that has been received max_receive_count times is
    moved to the dead-letter list, unmodified, instead of the ready FIFO.
  - Pop up to max_messages ids from ready, bump their receive count, issue
    a fresh receipt handle and push them onto the in-flight heap.
On ack:
  - Delete the message if the receipt handle is still current.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Protocol
import heapq
import threading
import time
import uuid

from orders_service.config import QUEUE_SETTINGS
from orders_service.errors import QueueUnavailable
from orders_service.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueMessage:
    message_id: str
    body: str
    attributes: dict[str, str] = field(default_factory=dict)
    sent_at: float = 0.0
    receive_count: int = 0
    receipt_handle: Optional[str] = None
    visible_at: float = 0.0
    dead_lettered_at: Optional[float] = None


@dataclass(frozen=True, slots=True)
class Delivery:
    """One delivery attempt of a message, as handed to a consumer."""
    message_id: str
    receipt_handle: str
    body: str
    attributes: dict[str, str]
    receive_count: int
    sent_at: float


class MessageQueue(Protocol):
    def send(self, body: str, attributes: Optional[dict[str, str]] = None) -> str: ...
    def receive(self, max_messages: int = 10, *, wait_seconds: float = 0.0) -> list[Delivery]: ...
    def ack(self, receipt_handle: str) -> bool: ...
    def dead_letters(self) -> list[QueueMessage]: ...
    def redrive_dead_letters(self) -> int: ...
    def depth(self) -> int: ...
    def snapshot(self) -> dict: ...
    def purge(self) -> None: ...
    def shutdown(self) -> None: ...


class InMemoryMessageQueue:
    def __init__(
        self,
        *,
        visibility_timeout: Optional[float] = None,
        max_receive_count: Optional[int] = None,
        dead_letter_retention: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.visibility_timeout = float(
            visibility_timeout if visibility_timeout is not None else QUEUE_SETTINGS["visibility_timeout_seconds"]
        )
        self.max_receive_count = int(
            max_receive_count if max_receive_count is not None else QUEUE_SETTINGS["max_receive_count"]
        )
        self.dead_letter_retention = float(
            dead_letter_retention if dead_letter_retention is not None else QUEUE_SETTINGS["dead_letter_retention_seconds"]
        )
        if self.max_receive_count < 1:
            raise ValueError("max_receive_count must be >= 1")
        self._clock = clock
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 5000))
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._messages: dict[str, QueueMessage] = {}
        self._ready: deque[str] = deque()
        self._in_flight_heap: list[tuple[float, int, str, str]] = []
        self._handles: dict[str, str] = {}  # receipt_handle -> message_id
        self._dead: list[QueueMessage] = []
        self._seq_counter = 0
        self._shutdown = False

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _reclaim_expired(self, now: float) -> None:
        while self._in_flight_heap and self._in_flight_heap[0][0] <= now:
            _, _, message_id, handle = heapq.heappop(self._in_flight_heap)
            message = self._messages.get(message_id)
            if message is None or message.receipt_handle != handle:
                continue
            self._handles.pop(handle, None)
            message.receipt_handle = None
            if message.receive_count >= self.max_receive_count:
                del self._messages[message_id]
                message.dead_lettered_at = now
                self._dead.append(message)
                logger.warning(
                    "Message moved to dead-letter list",
                    messageId=message_id,
                    receiveCount=message.receive_count,
                    orderId=message.attributes.get("OrderId"),
                    correlationId=message.attributes.get("CorrelationId"),
                )
            else:
                self._ready.append(message_id)

    def _prune_dead_letters(self, now: float) -> None:
        cutoff = now - self.dead_letter_retention
        self._dead = [m for m in self._dead if (m.dead_lettered_at or now) > cutoff]

    def _next_expiry_in(self, now: float) -> Optional[float]:
        if not self._in_flight_heap:
            return None
        return max(0.0, self._in_flight_heap[0][0] - now)

    # ----------------------------- public API ----------------------------- #
    def send(self, body: str, attributes: Optional[dict[str, str]] = None) -> str:
        with self._lock:
            if self._shutdown:
                raise QueueUnavailable("Queue shutdown")
            if len(self._messages) >= self._max_in_memory:
                raise QueueUnavailable("Queue capacity exceeded")
            message_id = str(uuid.uuid4())
            self._messages[message_id] = QueueMessage(
                message_id=message_id,
                body=body,
                attributes=dict(attributes or {}),
                sent_at=self._clock(),
            )
            self._ready.append(message_id)
            if len(self._messages) >= self._warn_depth:
                logger.warning("Queue depth warning", depth=len(self._messages))
            self._cv.notify()
            return message_id

    def receive(self, max_messages: int = 10, *, wait_seconds: float = 0.0) -> list[Delivery]:
        """Receive up to ``max_messages`` deliveries, waiting up to ``wait_seconds`` for the first."""
        deadline = time.monotonic() + max(0.0, wait_seconds)
        with self._lock:
            while True:
                if self._shutdown:
                    return []
                now = self._clock()
                self._reclaim_expired(now)
                if self._ready:
                    return self._deliver(max(1, max_messages), now)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                expiry = self._next_expiry_in(now)
                wait_for = remaining if expiry is None else min(remaining, max(expiry, 0.01))
                self._cv.wait(timeout=wait_for)

    def _deliver(self, max_messages: int, now: float) -> list[Delivery]:
        deliveries: list[Delivery] = []
        while self._ready and len(deliveries) < max_messages:
            message_id = self._ready.popleft()
            message = self._messages.get(message_id)
            if message is None:
                continue
            message.receive_count += 1
            message.receipt_handle = uuid.uuid4().hex
            message.visible_at = now + self.visibility_timeout
            self._handles[message.receipt_handle] = message_id
            heapq.heappush(
                self._in_flight_heap,
                (message.visible_at, self._next_seq(), message_id, message.receipt_handle),
            )
            deliveries.append(Delivery(
                message_id=message_id,
                receipt_handle=message.receipt_handle,
                body=message.body,
                attributes=dict(message.attributes),
                receive_count=message.receive_count,
                sent_at=message.sent_at,
            ))
        return deliveries

    def ack(self, receipt_handle: str) -> bool:
        """Delete the delivered message. Returns False when the handle is stale."""
        with self._lock:
            self._reclaim_expired(self._clock())
            message_id = self._handles.pop(receipt_handle, None)
            if message_id is None:
                return False
            message = self._messages.get(message_id)
            if message is None or message.receipt_handle != receipt_handle:
                return False
            del self._messages[message_id]
            return True

    def dead_letters(self) -> list[QueueMessage]:
        with self._lock:
            now = self._clock()
            self._reclaim_expired(now)
            self._prune_dead_letters(now)
            return [replace(m, attributes=dict(m.attributes)) for m in self._dead]

    def redrive_dead_letters(self) -> int:
        """Move every dead letter back onto the live queue with a fresh receive count."""
        with self._lock:
            now = self._clock()
            self._prune_dead_letters(now)
            moved = 0
            for message in self._dead:
                message.receive_count = 0
                message.receipt_handle = None
                message.dead_lettered_at = None
                self._messages[message.message_id] = message
                self._ready.append(message.message_id)
                moved += 1
            self._dead = []
            if moved:
                logger.info("Dead letters redriven", count=moved)
                self._cv.notify_all()
            return moved

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Remove every live and dead message.

        Intended for test isolation only; not used in production runtime.
        """
        with self._lock:
            self._messages.clear()
            self._ready.clear()
            self._in_flight_heap.clear()
            self._handles.clear()
            self._dead.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        with self._lock:
            return len(self._messages)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            now = self._clock()
            self._reclaim_expired(now)
            self._prune_dead_letters(now)
            oldest = min((m.sent_at for m in self._messages.values()), default=None)
            return {
                "depth": len(self._messages),
                "ready": len(self._ready),
                "in_flight": len(self._messages) - len(self._ready),
                "dead_letters": len(self._dead),
                "oldest_message_age_seconds": round(now - oldest, 3) if oldest is not None else 0.0,
                "shutdown": self._shutdown,
            }


__all__ = ["InMemoryMessageQueue", "MessageQueue", "QueueMessage", "Delivery"]
