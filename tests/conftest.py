import json
import logging
import os
import sys
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'orders_service' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from orders_service.main import app  # type: ignore
from orders_service.database import Base  # type: ignore
"""Pytest fixtures and factories.

The app lifespan is bypassed: tests build their own queue (driven by a fake
clock so visibility timeouts can be crossed instantly) and their own store
(bound to a throwaway SQLite file) and put them on ``app.state``.
"""
from orders_service.models.db import OrderRecord
from orders_service.jobs.queue import Delivery, InMemoryMessageQueue
from orders_service.jobs.worker_orders import LAST_EXCEPTIONS, OrderWorkerPool
from orders_service.services.order_store import OrderStore

# File-based SQLite so worker threads and the test thread share one database
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_orders.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeClock:
    """Manually advanced wall clock for queue visibility and retention."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_orders.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _isolate_test_state(create_test_db):  # type: ignore[unused-argument]
    """Start every test with an empty orders table and no recorded worker errors."""
    with engine.begin() as conn:
        conn.execute(OrderRecord.__table__.delete())
    LAST_EXCEPTIONS.clear()
    yield
    LAST_EXCEPTIONS.clear()


@pytest.fixture()
def test_engine():
    return engine


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def order_queue(clock):
    queue = InMemoryMessageQueue(
        visibility_timeout=30,
        max_receive_count=5,
        dead_letter_retention=14 * 24 * 3600,
        clock=clock,
    )
    yield queue
    queue.shutdown()


@pytest.fixture()
def order_store():
    return OrderStore(TestingSessionLocal)


@pytest.fixture()
def worker(order_queue, order_store):
    return OrderWorkerPool(order_queue, order_store, concurrency=1, batch_size=10, poll_timeout=0.05)


@pytest.fixture()
def client(order_queue, order_store):
    app.state.order_queue = order_queue  # type: ignore[attr-defined]
    app.state.order_store = order_store  # type: ignore[attr-defined]
    yield TestClient(app)
    app.state.order_queue = None  # type: ignore[attr-defined]
    app.state.order_store = None  # type: ignore[attr-defined]


@pytest.fixture()
def log_entries(caplog):
    """Return a function listing structured log entries, optionally by message."""
    caplog.set_level(logging.DEBUG, logger="orders_service")

    def _entries(message: str | None = None, **match):
        found = []
        for record in caplog.records:
            data = getattr(record, "extra_data", None)
            if data is None:
                continue
            if message is not None and record.getMessage() != message:
                continue
            if any(data.get(k) != v for k, v in match.items()):
                continue
            found.append({"message": record.getMessage(), "level": record.levelname, **data})
        return found

    return _entries


# ---------- Data factory helpers ----------

@pytest.fixture()
def delivery_factory():
    counter = {"n": 0}

    def _create(body=None, *, attributes=None, message_id=None, receive_count=1):
        counter["n"] += 1
        if isinstance(body, dict):
            body = json.dumps(body)
        return Delivery(
            message_id=message_id or f"msg-{counter['n']}",
            receipt_handle=f"rh-{counter['n']}",
            body=body if body is not None else "",
            attributes=dict(attributes or {}),
            receive_count=receive_count,
            sent_at=0.0,
        )

    return _create


@pytest.fixture()
def order_body():
    def _create(order_id: str, **fields):
        body = {
            "orderId": order_id,
            "amount": 10.0,
            "currency": "EUR",
            "createdAt": 1_700_000_000_000,
            "correlationId": f"corr-{order_id}",
        }
        body.update(fields)
        return body

    return _create
