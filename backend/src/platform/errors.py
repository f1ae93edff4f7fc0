"""
Consistent error handling for the provider gateway API.

All API errors MUST use these standard error classes and shapes.
Stack traces are NEVER returned to clients.

Gateway errors raised by provider calls are rendered with the status code
from GATEWAY_ERROR_STATUS:
- 400: NOT_CONFIGURED (operator has not set the provider up)
- 401: AUTH_EXPIRED, INVALID_GRANT, AUTH_REJECTED, SIGNATURE_MISMATCH
- 429: RATE_LIMIT_EXCEEDED
- 502: PROVIDER_ERROR, MALFORMED_RESPONSE
- 503: AUTH_TRANSIENT_FAILURE, NETWORK_EXHAUSTED
- 504: TIMEOUT
"""

import logging
import uuid
from typing import Any, Dict, Optional
from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.gateway.errors import ErrorKind, GatewayError, RateLimitExceeded

logger = logging.getLogger(__name__)


GATEWAY_ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.NOT_CONFIGURED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTH_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_GRANT: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.AUTH_REJECTED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.AUTH_TRANSIENT_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.NETWORK_EXHAUSTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.MALFORMED_RESPONSE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.SIGNATURE_MISMATCH: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


def gateway_error_to_app_error(error: GatewayError) -> AppError:
    """
    Translate a GatewayError into the API error shape.

    Only the provider, the error kind and safe numeric hints are exposed;
    provider response bodies stay in server logs.
    """
    details: dict[str, Any] = {"provider": error.provider, "retryable": error.retryable}
    if isinstance(error, RateLimitExceeded) and error.retry_after is not None:
        details["retry_after_seconds"] = error.retry_after
    status_code = error.details.get("status_code")
    if error.kind == ErrorKind.PROVIDER_ERROR and status_code is not None:
        details["provider_status"] = status_code

    return AppError(
        code=error.kind.value,
        message=error.message,
        status_code=GATEWAY_ERROR_STATUS.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        details=details,
    )


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Get correlation ID from request or generate new one.

    Checks X-Correlation-ID header first, then request state.
    """
    # Check header first (from upstream services/load balancer)
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Middleware that catches all exceptions and returns consistent error responses.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except GatewayError as e:
            app_error = gateway_error_to_app_error(e)
            logger.warning(
                "Provider gateway error",
                extra={
                    "correlation_id": correlation_id,
                    "error_kind": e.kind.value,
                    "provider": e.provider,
                    "status_code": app_error.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=app_error.status_code,
                content=app_error.to_dict(),
                headers={"X-Correlation-ID": correlation_id},
            )

        except AppError as e:
            logger.warning(
                "Application error",
                extra={
                    "correlation_id": correlation_id,
                    "error_code": e.code,
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content=e.to_dict(),
                headers={"X-Correlation-ID": correlation_id},
            )

        except HTTPException as e:
            # Convert FastAPI HTTPException to standard format
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "detail": e.detail,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": {
                        "code": "HTTP_ERROR",
                        "message": str(e.detail),
                        "details": {},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )

        except Exception as e:
            # Log full exception for debugging (server-side only)
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )
