"""Tests for the gateway: forwarding, failure mapping and local health."""
import asyncio
import logging

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import app as backend_app
from gateway.config import GatewaySettings
from gateway.main import create_app

BACKEND_URL = "http://backend.test"


def make_gateway(handler=None, transport=None, **overrides):
    settings = GatewaySettings(BACKEND_URL=BACKEND_URL, **overrides)
    transport = transport or httpx.MockTransport(handler)
    return TestClient(create_app(settings, transport=transport))


class Recorder:
    """MockTransport handler recording upstream requests."""

    def __init__(self, response=None):
        self.requests = []
        self.response = response or httpx.Response(200, json={"ok": True})

    def __call__(self, request):
        request.read()
        self.requests.append(request)
        return self.response


def test_health_is_answered_locally():
    recorder = Recorder()
    with make_gateway(recorder) as gateway:
        response = gateway.get("/health")
    
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert recorder.requests == []


def test_forwards_method_path_query_and_body():
    recorder = Recorder(httpx.Response(201, json={"id": "abc", "name": "A"}))
    with make_gateway(recorder) as gateway:
        response = gateway.post(
            "/api/products?b=2&a=1&a=3",
            json={"name": "A", "price": 1},
            headers={"X-Forwarded-For": "6.6.6.6"},
        )
    
    assert response.status_code == 201
    assert response.json() == {"id": "abc", "name": "A"}
    
    upstream = recorder.requests[0]
    assert upstream.method == "POST"
    assert str(upstream.url).startswith(f"{BACKEND_URL}/api/products?")
    assert upstream.url.params.get_list("a") == ["1", "3"]
    assert upstream.url.params["b"] == "2"
    assert upstream.headers["x-forwarded-for"] == "testclient"
    assert upstream.headers["x-forwarded-proto"] == "http"
    assert upstream.headers["content-type"] == "application/json"
    assert upstream.content == b'{"name": "A", "price": 1}'


def test_query_string_is_reencoded_not_double_encoded():
    recorder = Recorder()
    with make_gateway(recorder) as gateway:
        gateway.get("/api/products/search?q=red%20shoes%26more")
    
    upstream = recorder.requests[0]
    assert upstream.url.path == "/api/products/search"
    assert upstream.url.params["q"] == "red shoes&more"


def test_no_content_type_without_body():
    recorder = Recorder()
    with make_gateway(recorder) as gateway:
        gateway.get("/api/products")
    
    upstream = recorder.requests[0]
    assert "content-type" not in upstream.headers
    assert upstream.content == b""


def test_relays_upstream_errors_verbatim():
    body = {"error": "Not found", "message": "Product not found"}
    recorder = Recorder(httpx.Response(404, json=body))
    with make_gateway(recorder) as gateway:
        response = gateway.get("/api/products/123")
    
    assert response.status_code == 404
    assert response.json() == body


def test_non_json_upstream_body_is_reencoded():
    recorder = Recorder(httpx.Response(500, text="Internal Server Error"))
    with make_gateway(recorder) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 500
    assert response.json() == "Internal Server Error"


def test_connection_refused_maps_to_503():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)
    
    with make_gateway(handler) as gateway:
        response = gateway.get("/api/health")
    
    assert response.status_code == 503
    body = response.json()
    assert body["error"] == "Backend service unavailable"
    assert body["message"]


def test_timeout_maps_to_504():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)
    
    with make_gateway(handler) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 504
    assert response.json()["error"] == "Backend service timeout"


def test_slow_upstream_hits_total_timeout():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={})
    
    with make_gateway(handler, UPSTREAM_TIMEOUT=0.05) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 504


def test_error_with_response_is_relayed():
    def handler(request):
        raise httpx.HTTPStatusError(
            "teapot",
            request=request,
            response=httpx.Response(418, json={"error": "teapot"}, request=request),
        )
    
    with make_gateway(handler) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 418
    assert response.json() == {"error": "teapot"}


def test_unexpected_failure_maps_to_502():
    def handler(request):
        raise RuntimeError("boom")
    
    with make_gateway(handler) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 502
    assert response.json() == {"error": "bad gateway"}


def test_request_body_size_is_bounded():
    recorder = Recorder()
    with make_gateway(recorder, MAX_CONTENT_LENGTH=64) as gateway:
        response = gateway.post("/api/products", json={"name": "x" * 100, "price": 1})
    
    assert response.status_code == 413
    assert response.json()["error"] == "Payload too large"
    assert recorder.requests == []


def test_response_body_size_is_bounded():
    recorder = Recorder(httpx.Response(200, json={"blob": "x" * 100}))
    with make_gateway(recorder, MAX_CONTENT_LENGTH=64) as gateway:
        response = gateway.get("/api/products")
    
    assert response.status_code == 502
    assert response.json() == {"error": "bad gateway"}


def test_every_forwarded_call_is_logged(caplog):
    recorder = Recorder()
    with caplog.at_level(logging.INFO, logger="gateway.proxy"):
        with make_gateway(recorder) as gateway:
            gateway.get("/api/products?page=2")
    
    messages = [record.getMessage() for record in caplog.records if record.name == "gateway.proxy"]
    assert f"[GET] /api/products?page=2 -> {BACKEND_URL}/api/products" in messages
    assert any(m.startswith("[GET] /api/products?page=2 <- 200 (") and m.endswith("ms)") for m in messages)


@pytest.fixture
def gateway_to_backend(client):
    """Gateway forwarding in-process to the backend app (tables set up by ``client``)."""
    transport = httpx.ASGITransport(app=backend_app)
    with make_gateway(transport=transport) as gateway:
        yield gateway


def test_end_to_end_stock_scenario(gateway_to_backend):
    gateway = gateway_to_backend
    
    assert gateway.get("/api/health").json() == {"ok": True}
    
    created = gateway.post("/api/products", json={"name": "Laptop", "price": 999.99, "stock": 50})
    assert created.status_code == 201
    product_id = created.json()["id"]
    
    response = gateway.patch(
        f"/api/products/{product_id}/stock", json={"quantity": 51, "operation": "decrement"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Insufficient stock"
    
    response = gateway.patch(
        f"/api/products/{product_id}/stock", json={"quantity": 50, "operation": "decrement"}
    )
    assert response.status_code == 200
    assert response.json()["stock"] == 0


def test_end_to_end_listing_with_filters(gateway_to_backend):
    gateway = gateway_to_backend
    
    response = gateway.get("/api/products?minPrice=100&maxPrice=500&category=Electronics")
    
    assert response.status_code == 200
    data = response.json()
    assert data["products"] == []
    assert data["pagination"]["total"] == 0
    assert data["pagination"]["pages"] == 0
    assert data["pagination"]["hasNext"] is False
    assert data["pagination"]["hasPrev"] is False


def test_no_content_status_is_relayed_without_body():
    recorder = Recorder(httpx.Response(204))
    with make_gateway(recorder) as gateway:
        response = gateway.delete("/api/products/123")
    
    assert response.status_code == 204
    assert response.content == b""
