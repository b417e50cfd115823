"""Error taxonomy for the order pipeline.

Request-path errors are turned into HTTP responses by the API layer.
Processing-path errors either get absorbed by the batch processor
(poison messages under the discard policy) or propagate out of it so the
queue redelivers the batch.
"""
from __future__ import annotations

from typing import Optional


class OrderPipelineError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, *, order_id: Optional[str] = None, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.correlation_id = correlation_id


class InvalidPayload(OrderPipelineError):
    """Client sent a body that cannot become an order (400, never retried)."""


class EnqueueFailed(OrderPipelineError):
    """The order message could not be queued (500, safe for the client to retry)."""


class PoisonMessage(OrderPipelineError):
    """A queued body is not valid structured data."""

    def __init__(self, message: str, *, raw_body: Optional[str] = None, message_id: Optional[str] = None):
        super().__init__(message)
        self.raw_body = raw_body
        self.message_id = message_id


class OrderStoreError(OrderPipelineError):
    """The order store failed for a reason other than an existing record."""


class TransientPersistFailure(OrderPipelineError):
    """Persisting an order failed; the batch must be redelivered."""


class QueueUnavailable(OrderPipelineError):
    """The queue backend rejected or could not accept an operation."""


__all__ = [
    "OrderPipelineError",
    "InvalidPayload",
    "EnqueueFailed",
    "PoisonMessage",
    "OrderStoreError",
    "TransientPersistFailure",
    "QueueUnavailable",
]
