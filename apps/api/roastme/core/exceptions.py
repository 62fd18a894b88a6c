"""
Standardized exception handling for consistent API error responses.
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional, Any
import structlog

from roastme.core.error_messages import format_error_for_toast

logger = structlog.get_logger()


class APIError(HTTPException):
    """Base API error with consistent structure."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Any] = None,
        toast_key: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details
        self.toast_key = toast_key
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            error_code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
            details={"resource": resource, "id": resource_id},
        )


class ValidationError(APIError):
    """Input validation error."""

    def __init__(
        self, message: str, details: Optional[Any] = None, toast_key: Optional[str] = None
    ):
        super().__init__(
            status_code=400,
            error_code="VALIDATION_ERROR",
            message=message,
            details=details,
            toast_key=toast_key,
        )


class AuthenticationError(APIError):
    """Caller must sign in first."""

    def __init__(self, message: str = "Sign in required"):
        super().__init__(
            status_code=401,
            error_code="AUTH_REQUIRED",
            message=message,
            toast_key="auth_required",
        )


class InvalidSignatureError(APIError):
    """Webhook signature did not verify."""

    def __init__(self, provider: str):
        super().__init__(
            status_code=401,
            error_code="INVALID_SIGNATURE",
            message=f"Invalid {provider} webhook signature",
            details={"provider": provider},
            toast_key="invalid_credentials",
        )


class AuthorizationError(APIError):
    """Authorization/permission error."""

    def __init__(self, message: str = "You do not have access to this resource"):
        super().__init__(
            status_code=403,
            error_code="FORBIDDEN",
            message=message,
        )


class PaymentRequiredError(APIError):
    """Payment/credit required error."""

    def __init__(self, message: str = "Not enough credits", details: Optional[Any] = None):
        super().__init__(
            status_code=402,
            error_code="INSUFFICIENT_CREDITS",
            message=message,
            details=details,
            toast_key="insufficient_credits",
        )


class ConflictError(APIError):
    """Request conflicts with the current state of a resource."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=409,
            error_code="CONFLICT",
            message=message,
            details=details,
        )


class UnprocessableError(APIError):
    """Resource exists but lacks what the operation needs."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=422,
            error_code="UNPROCESSABLE",
            message=message,
            details=details,
        )


class RateLimitError(APIError):
    """Rate limit exceeded error."""

    def __init__(self, retry_after: int):
        super().__init__(
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            message=f"Too many requests. Try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


def api_error_response(error: APIError) -> JSONResponse:
    """Create standardized error response."""
    toast = format_error_for_toast(error.toast_key or error.message, error.status_code)
    content = {
        "error": {
            "code": error.error_code,
            "message": error.message,
            "toast": toast.model_dump(),
        }
    }
    if error.details:
        content["error"]["details"] = error.details

    headers = None
    if isinstance(error, RateLimitError):
        headers = {"Retry-After": str(error.details["retry_after"])}

    return JSONResponse(
        status_code=error.status_code,
        content=content,
        headers=headers,
    )


async def api_exception_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    logger.warning(
        "API error",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
    )
    return api_error_response(exc)
