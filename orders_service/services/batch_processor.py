"""Batch processor: materialize queued order messages exactly once.

Per delivery, in arrival order:

1. Parse the body. A body that is not a JSON object is poison. Under the
   ``discard`` policy it is logged with its raw body and consumed; under
   ``dead_letter`` it is reported as an item failure so the queue
   eventually dead-letters it.
2. Resolve ``orderId`` (body, then the ``OrderId`` attribute, then the
   literal fallback) and ``correlationId`` (body, then the ``CorrelationId``
   attribute, then the invocation id).
3. Normalize amount and currency. A parsed body whose fields can never be
   stored (negative or out of range amount, malformed currency) is never
   discarded: it is reported as an item failure and ends up dead-lettered.
4. ``create_if_absent`` against the store. An existing record is a
   redelivered duplicate and counts as success.
5. Any other store error is a transient failure. In ``whole_batch`` mode it
   propagates and nothing in the batch is acked; the already stored orders
   are safe to reprocess because step 4 is idempotent. In
   ``report_item_failures`` mode only the failed message ids are reported
   back for redelivery.

Item failures from steps 1 and 3 are reported in both modes: they fail the
same way on every attempt and must not hold back the rest of the batch.
Receive counting and dead-lettering are the queue's job, not this module's.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from orders_service.config import (
    BATCH_FAILURE_MODES,
    ORDER_SETTINGS,
    POISON_POLICIES,
    WORKER_SETTINGS,
)
from orders_service.errors import (
    InvalidPayload,
    OrderStoreError,
    PoisonMessage,
    TransientPersistFailure,
)
from orders_service.jobs.queue import Delivery
from orders_service.models.schemas.orders import (
    CORRELATION_ID_ATTRIBUTE,
    ORDER_ID_ATTRIBUTE,
    normalize_amount,
    normalize_currency,
)
from orders_service.services.order_store import CreateOutcome, OrderStore
from orders_service.utils import get_logger, log_performance

logger = get_logger(__name__)

STATUS_CREATED = "created"
STATUS_DUPLICATE = "duplicate"
STATUS_POISON = "poison"
STATUS_FAILED = "failed"


@dataclass(slots=True)
class MessageOutcome:
    message_id: str
    status: str
    order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class BatchResult:
    invocation_id: str
    outcomes: list[MessageOutcome] = field(default_factory=list)
    item_failures: list[str] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


def parse_message_body(delivery: Delivery) -> dict[str, Any]:
    """Decode a delivery body; an empty body decodes to an empty dict."""
    if not delivery.body:
        return {}
    try:
        body = json.loads(delivery.body)
    except (json.JSONDecodeError, TypeError, RecursionError) as e:
        raise PoisonMessage("Invalid queue message body", raw_body=delivery.body, message_id=delivery.message_id) from e
    if not isinstance(body, dict):
        raise PoisonMessage("Queue message body is not a JSON object", raw_body=delivery.body, message_id=delivery.message_id)
    return body


def resolve_order_id(body: dict[str, Any], attributes: dict[str, str]) -> str:
    """Body field, then message attribute, then the fallback literal.

    The fallback defeats idempotency: every message reaching it shares one key,
    so only the first of them is ever stored.
    """
    value = body.get("orderId")
    if value not in (None, ""):
        return str(value)
    value = attributes.get(ORDER_ID_ATTRIBUTE)
    if value:
        return value
    return ORDER_SETTINGS["unknown_order_id"]


def resolve_correlation_id(body: dict[str, Any], attributes: dict[str, str], invocation_id: str) -> str:
    value = body.get("correlationId")
    if value not in (None, ""):
        return str(value)
    return attributes.get(CORRELATION_ID_ATTRIBUTE) or invocation_id


def build_record_fields(body: dict[str, Any], order_id: str, correlation_id: str) -> dict[str, Any]:
    """Raises InvalidPayload when amount or currency can never be stored."""
    try:
        amount = normalize_amount(body.get("amount"))
        currency = normalize_currency(body.get("currency"))
    except InvalidPayload as e:
        e.order_id, e.correlation_id = order_id, correlation_id
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise InvalidPayload(
            f"Order fields cannot be normalized: {e}", order_id=order_id, correlation_id=correlation_id
        ) from e
    return {**body, "orderId": order_id, "amount": amount, "currency": currency, "correlationId": correlation_id}


class BatchProcessor:
    def __init__(
        self,
        store: OrderStore,
        *,
        poison_policy: Optional[str] = None,
        failure_mode: Optional[str] = None,
        function_name: Optional[str] = None,
    ):
        self.store = store
        self.poison_policy = str(poison_policy or WORKER_SETTINGS["poison_message_policy"])
        self.failure_mode = str(failure_mode or WORKER_SETTINGS["batch_failure_mode"])
        self.function_name = str(function_name or WORKER_SETTINGS["function_name"])
        if self.poison_policy not in POISON_POLICIES:
            raise ValueError(f"Unknown poison message policy '{self.poison_policy}'")
        if self.failure_mode not in BATCH_FAILURE_MODES:
            raise ValueError(f"Unknown batch failure mode '{self.failure_mode}'")

    def process_batch(self, deliveries: Iterable[Delivery], *, invocation_id: Optional[str] = None) -> BatchResult:
        """Process one batch.

        Raises:
            TransientPersistFailure: ``whole_batch`` mode, a store write failed.
        """
        deliveries = list(deliveries)
        invocation_id = invocation_id or str(uuid.uuid4())
        log = logger.bind(functionName=self.function_name, requestId=invocation_id)
        result = BatchResult(invocation_id=invocation_id)
        start = time.perf_counter()

        log.info("ProcessOrder batch received", recordCount=len(deliveries))
        for delivery in deliveries:
            result.outcomes.append(self._process_one(delivery, invocation_id, log, result))

        log_performance(
            "process_batch",
            round((time.perf_counter() - start) * 1000, 2),
            {
                "requestId": invocation_id,
                "recordCount": len(deliveries),
                "created": result.count(STATUS_CREATED),
                "duplicates": result.count(STATUS_DUPLICATE),
                "poison": result.count(STATUS_POISON),
                "failed": result.count(STATUS_FAILED),
            },
        )
        return result

    def _process_one(self, delivery: Delivery, invocation_id: str, log, result: BatchResult) -> MessageOutcome:
        attributes = delivery.attributes or {}
        # Until the body parses, identify the message from its attributes
        order_id = attributes.get(ORDER_ID_ATTRIBUTE)
        correlation_id = attributes.get(CORRELATION_ID_ATTRIBUTE) or invocation_id
        try:
            body = parse_message_body(delivery)
            order_id = resolve_order_id(body, attributes)
            correlation_id = resolve_correlation_id(body, attributes, invocation_id)
        except PoisonMessage as e:
            return self._handle_poison(delivery, e, log.bind(
                orderId=order_id, correlationId=correlation_id, messageId=delivery.message_id,
            ), result, order_id)

        msg_log = log.bind(correlationId=correlation_id, orderId=order_id, messageId=delivery.message_id)
        msg_log.info("Processing single order message", receiveCount=delivery.receive_count)
        try:
            fields = build_record_fields(body, order_id, correlation_id)
        except InvalidPayload as e:
            msg_log.error(
                "Order message failed validation; leaving it for the dead-letter queue",
                rawBody=delivery.body,
                errorType=type(e).__name__,
                errorMessage=e.message,
                receiveCount=delivery.receive_count,
            )
            result.item_failures.append(delivery.message_id)
            return MessageOutcome(delivery.message_id, STATUS_FAILED, order_id, correlation_id, e.message)

        try:
            outcome = self.store.create_if_absent(order_id, fields)
        except OrderStoreError as e:
            msg_log.error(
                "Failed to process order",
                errorType=type(e).__name__,
                errorMessage=e.message,
                receiveCount=delivery.receive_count,
            )
            if self.failure_mode == "whole_batch":
                raise TransientPersistFailure(
                    f"Persisting order {order_id} failed", order_id=order_id, correlation_id=correlation_id
                ) from e
            result.item_failures.append(delivery.message_id)
            return MessageOutcome(delivery.message_id, STATUS_FAILED, order_id, correlation_id, e.message)

        if outcome is CreateOutcome.ALREADY_EXISTS:
            msg_log.info("Order already stored, skipping duplicate delivery")
            return MessageOutcome(delivery.message_id, STATUS_DUPLICATE, order_id, correlation_id)
        msg_log.info("Order processed and stored")
        return MessageOutcome(delivery.message_id, STATUS_CREATED, order_id, correlation_id)

    def _handle_poison(
        self, delivery: Delivery, error: PoisonMessage, poison_log, result: BatchResult, order_id: Optional[str]
    ) -> MessageOutcome:
        poison_log.error(
            error.message,
            rawBody=delivery.body,
            errorType=type(error).__name__,
            errorMessage=error.message,
            receiveCount=delivery.receive_count,
            poisonPolicy=self.poison_policy,
        )
        if self.poison_policy == "dead_letter":
            result.item_failures.append(delivery.message_id)
            return MessageOutcome(delivery.message_id, STATUS_FAILED, order_id, error=error.message)
        return MessageOutcome(delivery.message_id, STATUS_POISON, order_id, error=error.message)


__all__ = [
    "BatchProcessor",
    "BatchResult",
    "MessageOutcome",
    "parse_message_body",
    "resolve_order_id",
    "resolve_correlation_id",
    "build_record_fields",
    "STATUS_CREATED",
    "STATUS_DUPLICATE",
    "STATUS_POISON",
    "STATUS_FAILED",
]
