"""
FastAPI application main module.
Wires the ingestion endpoints, the order queue, the order store and the
background worker pool, with request-id middleware and uniform error bodies.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
from orders_service.api import api_router
from orders_service.utils import setup_logging, get_logger
from orders_service.utils.observability import ensure_request_id, REQUEST_ID_HEADER
from orders_service.jobs.worker_orders import OrderWorkerPool, create_queue
from orders_service.services.order_store import OrderStore
from orders_service.database import Base, SessionLocal, engine
from orders_service.config import QUEUE_SETTINGS, WORKER_SETTINGS

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE") or None,
    enable_console=True
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Builds the process-wide queue, store and worker pool once and tears
    them down on shutdown.
    """
    logger.info("Application startup initiated")

    worker: OrderWorkerPool | None = None
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")

        queue = create_queue()
        store = OrderStore(SessionLocal)
        # expose handles in app state for endpoints (injected via Depends)
        app.state.order_queue = queue  # type: ignore[attr-defined]
        app.state.order_store = store  # type: ignore[attr-defined]

        if WORKER_SETTINGS.get("enabled", True):
            worker = OrderWorkerPool(queue, store)
            worker.start()
            app.state.order_worker = worker  # type: ignore[attr-defined]
        else:
            logger.info("Order worker disabled; queue will only be filled")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if worker is not None:
            worker.stop()
            worker.join(timeout=5.0)
            logger.info("Order worker pool stopped")
        queue = getattr(app.state, "order_queue", None)
        if queue is not None:
            queue.shutdown()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Orders API",
    description="""
    Asynchronous order ingestion.

    * `POST /orders` validates the order, queues it and answers **202** with its `orderId`.
    * A worker pool consumes the queue in batches and stores each order exactly once,
      keyed by `orderId`; redeliveries are detected by the store and skipped.
    * `GET /orders/{id}` returns the stored record.

    Send `X-Correlation-ID` to correlate the request with every downstream log line.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.debug(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.debug(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": exc.errors(),
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    queue = getattr(app.state, "order_queue", None)
    backend = "redis" if getattr(queue, "redis_active", False) else "memory"
    return {
        "status": "healthy",
        "service": "orders-api",
        "version": "1.0.0",
        "timestamp": time.time(),
        "queue_backend": backend,
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
def detailed_health_check():
    """Detailed health check with store, queue and worker status."""
    health_status = {
        "status": "healthy",
        "service": "orders-api",
        "version": "1.0.0",
        "timestamp": time.time(),
        "checks": {}
    }

    store = getattr(app.state, "order_store", None)
    try:
        if store is None:
            raise RuntimeError("store not initialized")
        health_status["checks"]["store"] = {"status": "healthy", "orders": store.count()}
    except Exception as e:
        health_status["checks"]["store"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    queue = getattr(app.state, "order_queue", None)
    if queue is None:
        health_status["checks"]["queue"] = "unavailable"
        health_status["status"] = "degraded"
    else:
        snap = queue.snapshot()
        health_status["checks"]["queue"] = {
            k: v for k, v in snap.items()
            if k in {"depth", "ready", "in_flight", "dead_letters", "oldest_message_age_seconds", "redis_active"}
        }
        if snap.get("dead_letters"):
            health_status["status"] = "degraded"
        if QUEUE_SETTINGS.get("use_redis") and not snap.get("redis_active", False):
            health_status["status"] = "degraded"

    worker = getattr(app.state, "order_worker", None)
    health_status["checks"]["worker"] = "running" if worker is not None and worker.running else "stopped"

    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Orders API",
        "version": "1.0.0",
        "documentation": "/docs",
        "health_check": "/health",
    }

app.include_router(api_router)

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "orders_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["orders_service"],
        log_level="info",
        access_log=True
    )
