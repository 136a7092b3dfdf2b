"""Tests for the request ID middleware."""

import uuid

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from filehub.app.middleware.request_id import (
    MAX_REQUEST_ID_LENGTH,
    RequestIdMiddleware,
    get_request_id,
)


def build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    return app


class TestRequestIdMiddleware:

    def test_generates_id(self):
        client = TestClient(build_app())
        response = client.get("/echo")

        request_id = response.headers["X-Request-ID"]
        assert uuid.UUID(request_id)
        assert response.json()["request_id"] == request_id

    def test_uses_incoming_header(self):
        client = TestClient(build_app())
        response = client.get("/echo", headers={"X-Request-ID": "client-abc"})

        assert response.headers["X-Request-ID"] == "client-abc"
        assert response.json()["request_id"] == "client-abc"

    def test_rejects_oversized_header(self):
        client = TestClient(build_app())
        response = client.get("/echo", headers={"X-Request-ID": "x" * (MAX_REQUEST_ID_LENGTH + 1)})

        assert uuid.UUID(response.headers["X-Request-ID"])

    def test_custom_header_name(self):
        app = FastAPI()
        app.add_middleware(RequestIdMiddleware, header_name="X-Correlation-ID")

        @app.get("/")
        async def root():
            return {}

        response = TestClient(app).get("/", headers={"X-Correlation-ID": "corr-1"})
        assert response.headers["X-Correlation-ID"] == "corr-1"

    def test_unknown_without_middleware(self):
        app = FastAPI()

        @app.get("/echo")
        async def echo(request: Request):
            return {"request_id": get_request_id(request)}

        assert TestClient(app).get("/echo").json() == {"request_id": "unknown"}
