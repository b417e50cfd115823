"""Ingestion gateway: validate an order request and queue it.

Nothing here touches the order store. A successful call means the order was
accepted for asynchronous processing, not that it was persisted.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import ValidationError

from orders_service.errors import EnqueueFailed, InvalidPayload
from orders_service.jobs.queue import MessageQueue
from orders_service.models.schemas.orders import (
    OrderMessage,
    normalize_amount,
    normalize_currency,
    normalize_order_id,
    passthrough_fields,
)
from orders_service.utils import get_logger
from orders_service.utils.observability import resolve_correlation_id
from orders_service.utils.time import epoch_millis

logger = get_logger(__name__)

FUNCTION_NAME = "CreateOrderFn"


@dataclass(frozen=True, slots=True)
class SubmitResult:
    status: int
    order_id: str
    correlation_id: str
    message_id: str


def parse_request_body(raw_body: bytes | str | None) -> dict[str, Any]:
    """Decode a JSON object body. An empty body is an empty order."""
    if raw_body is None:
        return {}
    if isinstance(raw_body, bytes):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidPayload("Request body is not valid UTF-8") from e
    if not raw_body.strip():
        return {}
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as e:
        raise InvalidPayload(f"Request body is not valid JSON: {e.msg}") from e
    except RecursionError as e:
        raise InvalidPayload("Request body is nested too deeply") from e
    if not isinstance(body, dict):
        raise InvalidPayload("Request body must be a JSON object")
    return body


def build_order_message(body: dict[str, Any], correlation_id: str) -> OrderMessage:
    """Normalize a parsed request into the queue payload.

    The order id is resolved exactly once here and never changes afterwards.
    """
    resolved_id = normalize_order_id(body.get("orderId")) or str(uuid.uuid4())
    payload = {
        **passthrough_fields(body),
        "orderId": resolved_id,
        "amount": normalize_amount(body.get("amount")),
        "currency": normalize_currency(body.get("currency")),
        "createdAt": epoch_millis(),
        "correlationId": correlation_id,
    }
    try:
        return OrderMessage.model_validate(payload)
    except ValidationError as e:
        raise InvalidPayload(f"Order payload rejected: {e.errors()[0].get('msg')}", order_id=resolved_id) from e


def submit_order(
    raw_body: bytes | str | None,
    headers: Mapping[str, str],
    request_id: str,
    queue: MessageQueue,
) -> SubmitResult:
    """Accept one create-order request.

    Raises:
        InvalidPayload: body is unusable; nothing was queued.
        EnqueueFailed: the queue rejected the message; nothing was queued and
            the client may retry the whole request.
    """
    correlation_id = resolve_correlation_id(headers, request_id)
    log = logger.bind(functionName=FUNCTION_NAME, requestId=request_id, correlationId=correlation_id)
    log.info("CreateOrder request received")

    try:
        message = build_order_message(parse_request_body(raw_body), correlation_id)
    except InvalidPayload as e:
        e.correlation_id = correlation_id
        log.warning("Invalid order payload", orderId=e.order_id, errorType=type(e).__name__, errorMessage=e.message)
        raise

    try:
        message_id = queue.send(message.to_body(), message.message_attributes())
    except Exception as e:
        log.error(
            "Failed to enqueue order",
            orderId=message.order_id,
            errorType=type(e).__name__,
            errorMessage=str(e),
        )
        raise EnqueueFailed(
            "Failed to enqueue order", order_id=message.order_id, correlation_id=correlation_id
        ) from e

    log.info("Order accepted for processing", orderId=message.order_id, messageId=message_id)
    return SubmitResult(status=202, order_id=message.order_id, correlation_id=correlation_id, message_id=message_id)


__all__ = ["SubmitResult", "parse_request_body", "build_order_message", "submit_order", "FUNCTION_NAME"]
