"""
Order endpoints: asynchronous creation and point lookup.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from orders_service.api.deps import get_order_queue, get_order_store, get_request_id
from orders_service.errors import EnqueueFailed, InvalidPayload, OrderStoreError
from orders_service.jobs.queue import MessageQueue
from orders_service.models.schemas.base import ErrorResponse
from orders_service.models.schemas.orders import OrderAccepted
from orders_service.services.ingestion import submit_order
from orders_service.services.order_store import OrderStore
from orders_service.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "",
    response_model=OrderAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Accept an order for asynchronous processing",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def create_order(
    request: Request,
    queue: MessageQueue = Depends(get_order_queue),
    request_id: str = Depends(get_request_id),
) -> JSONResponse:
    """Queue the order and return its id. 202 means accepted, not yet stored.

    The body is read raw so malformed JSON is reported as a 400 with the
    same error shape as every other failure.
    """
    raw_body = await request.body()
    try:
        result = await run_in_threadpool(submit_order, raw_body, request.headers, request_id, queue)
    except InvalidPayload as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except EnqueueFailed as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)

    return JSONResponse(
        status_code=result.status,
        content=OrderAccepted(orderId=result.order_id).model_dump(),
        headers={"X-Correlation-ID": result.correlation_id},
    )


@router.get(
    "/{order_id}",
    summary="Fetch a stored order",
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def get_order(
    order_id: str,
    store: OrderStore = Depends(get_order_store),
    request_id: str = Depends(get_request_id),
) -> dict:
    """Point lookup by order id. Orders still queued are reported as 404."""
    log = logger.bind(functionName="GetOrderFn", requestId=request_id, orderId=order_id)
    log.info("GetOrder request received")

    if not order_id.strip():
        log.warning("Missing orderId in path")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing order id")

    try:
        item = store.get_by_key(order_id)
    except OrderStoreError as e:
        log.error("Failed to fetch order", errorType=type(e).__name__, errorMessage=e.message)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch order")

    if item is None:
        log.info("Order not found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    log.info("Order fetched successfully")
    return item
