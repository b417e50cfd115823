"""HTTP surface: create-order acceptance, validation errors and order lookup."""
import json
import uuid

from fastapi.testclient import TestClient

from orders_service.errors import OrderStoreError


def _only_message(queue):
    deliveries = queue.receive(10)
    assert len(deliveries) == 1
    return deliveries[0], json.loads(deliveries[0].body)


def test_create_order_returns_202_with_generated_id(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": 12.5, "currency": "usd", "customerId": "c-7"})
    assert r.status_code == 202, r.text
    order_id = r.json()["orderId"]
    uuid.UUID(order_id)

    delivery, body = _only_message(order_queue)
    assert body["orderId"] == order_id
    assert body["amount"] == 12.5
    assert body["currency"] == "USD"
    assert body["customerId"] == "c-7"
    assert isinstance(body["createdAt"], int)
    # no correlation header: the request id is the correlation id
    assert body["correlationId"] == r.headers["X-Request-ID"]
    assert delivery.attributes == {"OrderId": order_id, "CorrelationId": body["correlationId"]}


def test_client_supplied_order_id_is_kept(client: TestClient, order_queue):
    r = client.post("/orders", json={"orderId": "client-42", "amount": 3})
    assert r.status_code == 202
    assert r.json() == {"orderId": "client-42"}
    _, body = _only_message(order_queue)
    assert body["orderId"] == "client-42"


def test_correlation_header_propagates(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": 1}, headers={"x-correlation-id": "corr-abc"})
    assert r.status_code == 202
    assert r.headers["X-Correlation-ID"] == "corr-abc"
    delivery, body = _only_message(order_queue)
    assert body["correlationId"] == "corr-abc"
    assert delivery.attributes["CorrelationId"] == "corr-abc"


def test_empty_body_is_a_default_order(client: TestClient, order_queue):
    r = client.post("/orders", content=b"")
    assert r.status_code == 202
    _, body = _only_message(order_queue)
    assert body["amount"] == 0
    assert body["currency"] == "EUR"


def test_malformed_json_is_rejected(client: TestClient, order_queue):
    r = client.post("/orders", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    data = r.json()
    assert data["success"] is False
    assert "not valid JSON" in data["message"]
    assert data["request_id"] == r.headers["X-Request-ID"]
    assert order_queue.depth() == 0


def test_non_object_body_is_rejected(client: TestClient, order_queue):
    r = client.post("/orders", content=b"[1, 2]", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert order_queue.depth() == 0


def test_negative_amount_is_rejected(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": -5})
    assert r.status_code == 400
    assert "non-negative" in r.json()["message"]
    assert order_queue.depth() == 0


def test_bad_currency_is_rejected(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": 5, "currency": "euros"})
    assert r.status_code == 400
    assert order_queue.depth() == 0


def test_non_numeric_amount_defaults_to_zero(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": "lots"})
    assert r.status_code == 202
    _, body = _only_message(order_queue)
    assert body["amount"] == 0


def test_nan_amount_defaults_to_zero(client: TestClient, order_queue):
    r = client.post("/orders", json={"amount": "sNaN"})
    assert r.status_code == 202, r.text
    _, body = _only_message(order_queue)
    assert body["amount"] == 0


def test_out_of_range_amount_is_rejected(client: TestClient, order_queue):
    for raw in (json.dumps({"amount": int("9" * 400)}), '{"amount": Infinity}', '{"amount": "1e400"}'):
        r = client.post("/orders", content=raw, headers={"Content-Type": "application/json"})
        assert r.status_code == 400, raw
        assert "out of range" in r.json()["message"]
    assert order_queue.depth() == 0


def test_deeply_nested_body_is_rejected(client: TestClient, order_queue):
    raw = '{"a": ' * 100_000 + "1" + "}" * 100_000
    r = client.post("/orders", content=raw, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert order_queue.depth() == 0


def test_enqueue_failure_returns_500(client: TestClient, order_queue, monkeypatch, log_entries):
    def _boom(body, attributes=None):
        raise RuntimeError("queue is down")

    monkeypatch.setattr(order_queue, "send", _boom)
    r = client.post("/orders", json={"orderId": "will-fail"}, headers={"X-Correlation-ID": "c-fail"})

    assert r.status_code == 500
    assert r.json()["message"] == "Failed to enqueue order"
    errors = log_entries("Failed to enqueue order")
    assert len(errors) == 1
    assert errors[0]["orderId"] == "will-fail"
    assert errors[0]["correlationId"] == "c-fail"
    assert errors[0]["errorType"] == "RuntimeError"


def test_create_logs_receipt_and_outcome(client: TestClient, log_entries):
    r = client.post("/orders", json={"orderId": "logged-1"}, headers={"X-Correlation-ID": "c-log"})
    assert r.status_code == 202

    lines = log_entries(functionName="CreateOrderFn")
    assert [e["message"] for e in lines] == ["CreateOrder request received", "Order accepted for processing"]
    assert all(e["correlationId"] == "c-log" for e in lines)
    assert lines[1]["orderId"] == "logged-1"
    assert lines[0]["requestId"] == r.headers["X-Request-ID"]


def test_request_id_header_is_echoed(client: TestClient):
    r = client.post("/orders", json={}, headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert "X-Process-Time" in r.headers


def test_get_missing_order_is_404(client: TestClient):
    r = client.get("/orders/does-not-exist")
    assert r.status_code == 404
    data = r.json()
    assert data == {"success": False, "message": "Order not found", "request_id": r.headers["X-Request-ID"]}


def test_get_blank_order_id_is_400(client: TestClient):
    r = client.get("/orders/%20")
    assert r.status_code == 400
    assert r.json()["message"] == "Missing order id"


def test_get_store_failure_is_500(client: TestClient, order_store, monkeypatch):
    def _boom(order_id):
        raise OrderStoreError("connection reset", order_id=order_id)

    monkeypatch.setattr(order_store, "get_by_key", _boom)
    r = client.get("/orders/o-1")
    assert r.status_code == 500
    assert r.json()["message"] == "Failed to fetch order"


def test_get_existing_order(client: TestClient, order_store):
    order_store.create_if_absent("o-get", {
        "orderId": "o-get", "amount": 7.25, "currency": "GBP", "createdAt": 1_700_000_000_123,
        "correlationId": "c-get", "channel": "web",
    })
    r = client.get("/orders/o-get")
    assert r.status_code == 200
    assert r.json() == {
        "PK": "ORDER#o-get",
        "SK": "ORDER#o-get",
        "orderId": "o-get",
        "amount": 7.25,
        "currency": "GBP",
        "createdAt": 1_700_000_000_123,
        "correlationId": "c-get",
        "channel": "web",
    }
