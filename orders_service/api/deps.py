"""
Dependencies exposing the process-wide queue and store handles.

Both are built once in the application lifespan and stored on ``app.state``;
tests replace them there with their own instances.
"""
from fastapi import HTTPException, Request, status

from orders_service.jobs.queue import MessageQueue
from orders_service.services.order_store import OrderStore
from orders_service.utils import get_logger

logger = get_logger(__name__)


def get_order_queue(request: Request) -> MessageQueue:
    queue = getattr(request.app.state, "order_queue", None)
    if queue is None:
        logger.error("Order queue requested before startup", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Order queue not available")
    return queue


def get_order_store(request: Request) -> OrderStore:
    store = getattr(request.app.state, "order_store", None)
    if store is None:
        logger.error("Order store requested before startup", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Order store not available")
    return store


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")
