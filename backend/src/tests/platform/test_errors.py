"""
Error handling tests for the provider gateway API.

CRITICAL: These tests verify that:
1. All errors return consistent shapes
2. Stack traces and provider bodies are never returned to clients
3. Correlation IDs are included in responses
"""

import pytest
from unittest.mock import Mock
from fastapi import FastAPI, Request, HTTPException, status
from fastapi.testclient import TestClient

from src.gateway.errors import (
    AuthExpired,
    AuthRejected,
    AuthTransientFailure,
    ErrorKind,
    GatewayTimeout,
    InvalidGrant,
    MalformedResponse,
    NetworkExhausted,
    NotConfigured,
    ProviderError,
    RateLimitExceeded,
    SignatureMismatch,
)
from src.platform.errors import (
    AppError,
    ValidationError,
    ErrorHandlerMiddleware,
    GATEWAY_ERROR_STATUS,
    gateway_error_to_app_error,
    generate_correlation_id,
    get_correlation_id,
)


# ============================================================================
# TEST SUITE: ERROR CLASSES
# ============================================================================

class TestErrorClasses:
    """Test error class definitions."""

    def test_app_error_has_required_fields(self):
        error = AppError(
            code="TEST_ERROR",
            message="Test error message",
            status_code=500,
            details={"key": "value"}
        )

        assert error.code == "TEST_ERROR"
        assert error.message == "Test error message"
        assert error.status_code == 500
        assert error.details == {"key": "value"}

    def test_app_error_to_dict(self):
        error = AppError(code="TEST_ERROR", message="Test message", details={"extra": "info"})

        assert error.to_dict() == {
            "error": {"code": "TEST_ERROR", "message": "Test message", "details": {"extra": "info"}}
        }

    def test_default_app_error_is_500(self):
        assert AppError(code="TEST", message="test").status_code == 500

    def test_validation_error_is_400(self):
        error = ValidationError("Invalid input", {"field": "name"})

        assert error.status_code == status.HTTP_400_BAD_REQUEST
        assert error.code == "VALIDATION_ERROR"


# ============================================================================
# TEST SUITE: GATEWAY ERROR MAPPING
# ============================================================================

class TestGatewayErrorMapping:
    """Gateway errors keep their kind as the API error code."""

    @pytest.mark.parametrize("error,expected_status", [
        (NotConfigured("x", provider="cj"), 400),
        (AuthExpired("x", provider="etsy"), 401),
        (InvalidGrant("x", provider="etsy"), 401),
        (AuthRejected("x", provider="shopify"), 401),
        (SignatureMismatch("x", provider="shopify"), 401),
        (RateLimitExceeded("x", provider="shopify"), 429),
        (ProviderError(404, "Not Found", provider="shopify"), 502),
        (MalformedResponse("x", provider="ebay"), 502),
        (AuthTransientFailure("x", provider="cj"), 503),
        (NetworkExhausted("x", provider="ebay"), 503),
        (GatewayTimeout("x", provider="google_shopping"), 504),
    ])
    def test_status_codes(self, error, expected_status):
        app_error = gateway_error_to_app_error(error)

        assert app_error.status_code == expected_status
        assert app_error.code == error.kind.value
        assert app_error.details["provider"] == error.provider
        assert app_error.details["retryable"] == error.retryable

    def test_every_kind_has_a_status(self):
        assert set(GATEWAY_ERROR_STATUS) == set(ErrorKind)

    def test_provider_error_hides_body(self):
        error = ProviderError(422, '{"errors": {"email": "customer@example.com is invalid"}}', provider="shopify")

        result = gateway_error_to_app_error(error).to_dict()

        assert result["error"]["details"] == {"provider": "shopify", "retryable": False, "provider_status": 422}
        assert "customer@example.com" not in str(result)

    def test_rate_limit_exposes_retry_after(self):
        error = RateLimitExceeded("slow down", provider="etsy", retry_after=12.0)

        details = gateway_error_to_app_error(error).details

        assert details["retry_after_seconds"] == 12.0
        assert details["retryable"] is True


# ============================================================================
# TEST SUITE: CORRELATION ID
# ============================================================================

class TestCorrelationId:
    """Test correlation ID handling."""

    def test_generate_correlation_id(self):
        id1 = generate_correlation_id()
        id2 = generate_correlation_id()

        assert id1 != id2
        assert len(id1) == 36  # UUID format

    def test_get_correlation_id_from_header(self):
        request = Mock(spec=Request)
        request.headers = {"X-Correlation-ID": "header-corr-id"}
        request.state = Mock(spec=[])

        assert get_correlation_id(request) == "header-corr-id"

    def test_get_correlation_id_from_state(self):
        request = Mock(spec=Request)
        request.headers = {}
        request.state.correlation_id = "state-corr-id"

        assert get_correlation_id(request) == "state-corr-id"

    def test_get_correlation_id_generates_new(self):
        request = Mock(spec=Request)
        request.headers = {}
        request.state = Mock(spec=[])

        assert len(get_correlation_id(request)) == 36


# ============================================================================
# TEST SUITE: ERROR HANDLER MIDDLEWARE
# ============================================================================

class TestErrorHandlerMiddleware:
    """Test error handler middleware."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(ErrorHandlerMiddleware)

        @app.get("/ok")
        async def ok():
            return {"status": "ok"}

        @app.get("/app-error")
        async def raise_app_error():
            raise ValidationError("Test validation error", {"field": "test"})

        @app.get("/gateway-error")
        async def raise_gateway_error():
            raise RateLimitExceeded("Shopify rate limit retries exhausted", provider="shopify", retry_after=4.0)

        @app.get("/http-error")
        async def raise_http_error():
            raise HTTPException(status_code=400, detail="HTTP error detail")

        @app.get("/unexpected-error")
        async def raise_unexpected():
            raise RuntimeError("Unexpected internal error")

        return TestClient(app)

    def test_successful_request_has_correlation_id(self, client):
        response = client.get("/ok", headers={"X-Correlation-ID": "upstream-id"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "upstream-id"

    def test_app_error_returns_consistent_format(self, client):
        response = client.get("/app-error")

        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "VALIDATION_ERROR",
            "message": "Test validation error",
            "details": {"field": "test"},
        }
        assert "X-Correlation-ID" in response.headers

    def test_gateway_error_returns_kind_as_code(self, client):
        response = client.get("/gateway-error")

        assert response.status_code == 429
        assert response.json()["error"] == {
            "code": "rate_limit_exceeded",
            "message": "Shopify rate limit retries exhausted",
            "details": {"provider": "shopify", "retryable": True, "retry_after_seconds": 4.0},
        }
        assert "X-Correlation-ID" in response.headers

    def test_http_exception_returns_error_response(self, client):
        response = client.get("/http-error")

        assert response.status_code == 400
        data = response.json()

        # FastAPI's built-in handler may process HTTPException before the
        # middleware sees it
        if "detail" in data:
            assert data["detail"] == "HTTP error detail"
        else:
            assert data["error"]["message"] == "HTTP error detail"

    def test_unexpected_error_returns_generic_message(self, client):
        """CRITICAL: Unexpected errors don't expose stack traces."""
        response = client.get("/unexpected-error")

        assert response.status_code == 500
        data = response.json()

        assert data["error"]["code"] == "INTERNAL_ERROR"
        assert data["error"]["message"] == "An unexpected error occurred"
        assert "RuntimeError" not in str(data)
        assert "Unexpected internal error" not in str(data)
        assert "traceback" not in str(data).lower()
        assert "correlation_id" in data["error"]["details"]
        assert "X-Correlation-ID" in response.headers
