"""Tests for global exception handlers.

Validates that every error type is rendered in the same JSON envelope
with the right HTTP status and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from keyrelay.core.errors import (
    AppError,
    AuthenticationAppError,
    ErrorDetails,
    NoKeyAvailableAppError,
    RateLimitAppError,
    UpstreamAppError,
    invalid_credentials_error,
)
from keyrelay.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_authentication_error_returns_401(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-auth")
        async def test_endpoint():
            raise invalid_credentials_error()

        response = client.get("/test-auth")

        assert response.status_code == 401
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {
            "error": {
                "message": "Invalid authentication credentials",
                "type": "invalid_request_error",
                "code": "invalid_api_key",
                "param": None,
            }
        }

    def test_rate_limit_error_sets_retry_after(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-rate-limit")
        async def test_endpoint():
            raise RateLimitAppError(
                code="rate_limit_exceeded",
                message="Rate limit reached for requests. All API keys have been used too recently.",
                details={"retry_after": 4},
            )

        response = client.get("/test-rate-limit")

        assert response.status_code == 429
        assert response.headers["retry-after"] == "4"
        data = response.json()
        assert data["error"]["type"] == "requests"
        assert data["error"]["code"] == "rate_limit_exceeded"
        assert data["error"]["param"] is None

    def test_no_key_error_returns_429_without_retry_after(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-no-key")
        async def test_endpoint():
            raise NoKeyAvailableAppError(
                code="rate_limit_exceeded",
                message="No API keys available in database",
            )

        response = client.get("/test-no-key")

        assert response.status_code == 429
        assert "retry-after" not in response.headers

    def test_upstream_error_returns_502_without_details(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-upstream")
        async def test_endpoint():
            raise UpstreamAppError(
                code="upstream_unavailable",
                message="Upstream request failed",
                details={"upstream_host": "internal.example", "error_type": "ConnectError"},
            )

        response = client.get("/test-upstream")

        assert response.status_code == 502
        assert response.json()["error"]["type"] == "upstream_error"
        assert "internal.example" not in response.text

    def test_base_app_error_defaults_to_400(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-base")
        async def test_endpoint():
            raise AppError(code="bad_request", message="Bad request")

        response = client.get("/test-base")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-crash")
        async def test_endpoint():
            raise RuntimeError("database is locked")

        response = client.get("/test-crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"
        assert "database is locked" not in response.text

    def test_general_exception_handler_never_leaks_stack_trace(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))

        response_text = bytes(response.body).decode()
        assert response.status_code == 500
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text
        assert json.loads(response_text)["error"]["type"] == "server_error"


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers

    def test_error_str_is_message(self):
        error = AuthenticationAppError(code="invalid_api_key", message="nope")

        assert str(error) == "nope"

    def test_error_details_keys(self):
        assert ErrorDetails.__optional_keys__ == frozenset(
            {"retry_after", "upstream_host", "error_type"}
        )
