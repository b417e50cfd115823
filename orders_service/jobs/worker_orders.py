"""Background worker pool consuming order message batches."""
from __future__ import annotations

import threading
import time
import uuid
from typing import TYPE_CHECKING, Optional, Union

from orders_service.config import QUEUE_SETTINGS, WORKER_SETTINGS
from orders_service.errors import OrderPipelineError, QueueUnavailable
from orders_service.jobs.queue import Delivery, InMemoryMessageQueue, MessageQueue
from orders_service.services.batch_processor import BatchProcessor, BatchResult
from orders_service.services.order_store import OrderStore
from orders_service.utils import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from orders_service.jobs.redis_queue import RedisMessageQueue

logger = get_logger(__name__)

# Debug instrumentation store (test visibility)
LAST_EXCEPTIONS: list[dict] = []


class OrderWorkerPool:
    """Runs up to ``concurrency`` consumer threads against one queue.

    Each thread receives a batch, hands it to the batch processor and acks.
    A batch whose processing raised is left unacked so every message in it
    reappears once its visibility timeout lapses. The thread count is the
    concurrency ceiling: batches beyond it wait in the queue.
    """

    def __init__(
        self,
        queue: MessageQueue,
        store: OrderStore,
        *,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        poll_timeout: Optional[float] = None,
        processor: Optional[BatchProcessor] = None,
    ):
        self.queue = queue
        self.processor = processor or BatchProcessor(store)
        self.concurrency = max(1, int(concurrency if concurrency is not None else WORKER_SETTINGS["max_concurrency"]))
        self.batch_size = max(1, int(batch_size if batch_size is not None else WORKER_SETTINGS["batch_size"]))
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else WORKER_SETTINGS["poll_timeout_seconds"])
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"order-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Order worker pool started", concurrency=self.concurrency, batch_size=self.batch_size)

    def stop(self) -> None:
        self._stop_event.set()
        logger.info("Order worker pool stop requested")

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once(wait_seconds=self.poll_timeout)
            except Exception as e:  # pragma: no cover
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def run_once(self, *, wait_seconds: float = 0.0) -> Optional[BatchResult]:
        """Receive and process one batch. Returns None when nothing was received
        or when processing failed and the batch was left for redelivery."""
        deliveries = self.queue.receive(self.batch_size, wait_seconds=wait_seconds)
        if not deliveries:
            return None
        return self._process(deliveries)

    def _process(self, deliveries: list[Delivery]) -> Optional[BatchResult]:
        invocation_id = str(uuid.uuid4())
        try:
            result = self.processor.process_batch(deliveries, invocation_id=invocation_id)
        except OrderPipelineError as e:
            logger.error(
                "Batch failed; leaving messages for redelivery",
                functionName=self.processor.function_name,
                requestId=invocation_id,
                recordCount=len(deliveries),
                orderId=e.order_id,
                correlationId=e.correlation_id,
                errorType=type(e).__name__,
                errorMessage=e.message,
            )
            self._record_failure(invocation_id, e.message, e)
            return None
        except Exception as e:
            logger.error(
                "Unexpected error processing batch; leaving messages for redelivery",
                functionName=self.processor.function_name,
                requestId=invocation_id,
                recordCount=len(deliveries),
                errorType=type(e).__name__,
                errorMessage=str(e),
                exc_info=True,
            )
            self._record_failure(invocation_id, str(e), e)
            return None
        self._ack(deliveries, result)
        return result

    @staticmethod
    def _record_failure(invocation_id: str, message: str, error: Exception) -> None:
        LAST_EXCEPTIONS.append({"request_id": invocation_id, "error": message, "type": type(error).__name__})
        del LAST_EXCEPTIONS[:-50]

    def _ack(self, deliveries: list[Delivery], result: BatchResult) -> None:
        failed = set(result.item_failures)
        for delivery in deliveries:
            if delivery.message_id in failed:
                continue
            try:
                acked = self.queue.ack(delivery.receipt_handle)
            except QueueUnavailable as e:
                logger.error(
                    "Ack failed; message will be redelivered",
                    requestId=result.invocation_id,
                    messageId=delivery.message_id,
                    error=e.message,
                )
                continue
            if not acked:
                # Processing outlived the visibility timeout
                logger.warning(
                    "Stale receipt handle; message will be redelivered",
                    requestId=result.invocation_id,
                    messageId=delivery.message_id,
                )

    def drain(self, *, max_batches: int = 1000) -> list[BatchResult]:
        """Process batches synchronously until the queue has nothing visible."""
        results: list[BatchResult] = []
        for _ in range(max_batches):
            deliveries = self.queue.receive(self.batch_size)
            if not deliveries:
                break
            result = self._process(deliveries)
            if result is not None:
                results.append(result)
        return results


def create_queue() -> Union[InMemoryMessageQueue, "RedisMessageQueue"]:
    """Create and return the appropriate queue based on configuration."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))
    fallback = bool(QUEUE_SETTINGS.get("redis_fallback_to_memory", False))

    if use_redis:
        try:
            from orders_service.jobs.redis_queue import RedisMessageQueue
            redis_queue = RedisMessageQueue(fallback_to_memory=fallback)
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue")
                return redis_queue
            if not fallback:
                # Sends fail with QueueUnavailable until Redis comes back
                logger.error("REDIS CONNECTION FAILED: Redis server is not reachable. Orders will be rejected.")
                return redis_queue
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory queue.")
        except Exception as e:
            if not fallback:
                logger.error("Error initializing Redis queue", error=str(e))
                raise
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", error=str(e))

    logger.info("Using in-memory queue")
    return InMemoryMessageQueue()


__all__ = ["OrderWorkerPool", "LAST_EXCEPTIONS", "create_queue"]
