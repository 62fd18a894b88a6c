"""
User-facing error messages.

Maps raw error strings and HTTP status codes to short toast notifications,
with a guess at whether retrying is worthwhile and how long to wait.
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorInfo(BaseModel):
    message: str
    action: str
    recoverable: bool
    retry_delay_ms: Optional[int] = None


class ToastPayload(BaseModel):
    title: str
    description: str
    duration_ms: int
    recoverable: bool
    retry_delay_ms: int


# Status-code keys come first so that "429 rate_limit" resolves to 429
ERROR_MESSAGES: dict[str, ErrorInfo] = {
    "429": ErrorInfo(
        message="Too many requests",
        action="You're making requests too quickly. Please wait a moment.",
        recoverable=True,
        retry_delay_ms=30000,
    ),
    "500": ErrorInfo(
        message="Server error",
        action="Our servers encountered an issue. Please try again.",
        recoverable=True,
        retry_delay_ms=5000,
    ),
    "502": ErrorInfo(
        message="Service temporarily unavailable",
        action="The service is temporarily down. Please try again in a moment.",
        recoverable=True,
        retry_delay_ms=10000,
    ),
    "503": ErrorInfo(
        message="Service overloaded",
        action="Our service is experiencing high demand. Please try again shortly.",
        recoverable=True,
        retry_delay_ms=15000,
    ),
    # Authentication
    "auth_required": ErrorInfo(
        message="Sign in required",
        action="Please sign in to continue creating characters",
        recoverable=False,
    ),
    "invalid_credentials": ErrorInfo(
        message="Authentication failed",
        action="Please try signing in again",
        recoverable=False,
    ),
    # Credits
    "insufficient_credits": ErrorInfo(
        message="Not enough credits",
        action="Purchase more credits to continue",
        recoverable=False,
    ),
    "quota_exceeded": ErrorInfo(
        message="AI service quota exceeded",
        action="Please try again in a few minutes",
        recoverable=True,
        retry_delay_ms=60000,
    ),
    # Images
    "invalid_image": ErrorInfo(
        message="Image format not supported",
        action="Please upload a JPG, PNG, or WebP image under 10MB",
        recoverable=False,
    ),
    "image_too_large": ErrorInfo(
        message="Image file is too large",
        action="Please upload an image under 10MB",
        recoverable=False,
    ),
    "no_face_detected": ErrorInfo(
        message="No face detected in image",
        action="Please upload a clear photo with a visible face",
        recoverable=False,
    ),
    # Network
    "timeout": ErrorInfo(
        message="Request timed out",
        action="The server is taking longer than expected. Please wait or try again.",
        recoverable=True,
        retry_delay_ms=5000,
    ),
    "network_error": ErrorInfo(
        message="Network connection issue",
        action="Please check your internet connection and try again",
        recoverable=True,
        retry_delay_ms=3000,
    ),
    # AI generation
    "generation_failed": ErrorInfo(
        message="Character generation failed",
        action="The AI couldn't generate your character. Please try with a different image.",
        recoverable=True,
        retry_delay_ms=5000,
    ),
    "content_policy": ErrorInfo(
        message="Content policy violation",
        action="The image may violate content policies. Please try a different image.",
        recoverable=False,
    ),
    "rate_limit": ErrorInfo(
        message="AI rate limit reached",
        action="We've hit our AI usage limit. Please try again in a few minutes.",
        recoverable=True,
        retry_delay_ms=60000,
    ),
}

DEFAULT_ERROR = ErrorInfo(
    message="Something went wrong",
    action="An unexpected error occurred. Please try again.",
    recoverable=True,
    retry_delay_ms=3000,
)

DEFAULT_RETRY_DELAY_MS = 3000


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error.lower()
    for attr in ("message", "error_code", "code"):
        value = getattr(error, attr, None)
        if value:
            return str(getattr(value, "value", value)).lower()
    return str(error).lower()


def get_error_info(error: Any, status_code: Optional[int] = None) -> ErrorInfo:
    """Look up the toast entry for an error string, exception or status code."""
    if error is None and status_code is None:
        return DEFAULT_ERROR

    if status_code is None:
        status_code = getattr(error, "status_code", None)
    if status_code is not None and str(status_code) in ERROR_MESSAGES:
        return ERROR_MESSAGES[str(status_code)]

    text = _error_text(error)
    if not text:
        return DEFAULT_ERROR

    for pattern, info in ERROR_MESSAGES.items():
        if pattern in text or pattern.replace("_", " ") in text:
            return info

    if "network" in text or "fetch" in text:
        return ERROR_MESSAGES["network_error"]
    if "timeout" in text:
        return ERROR_MESSAGES["timeout"]
    if "rate" in text or "limit" in text:
        return ERROR_MESSAGES["rate_limit"]

    return DEFAULT_ERROR


def is_recoverable(error: Any, status_code: Optional[int] = None) -> bool:
    return get_error_info(error, status_code).recoverable


def suggested_retry_delay(error: Any, status_code: Optional[int] = None) -> int:
    """Milliseconds the client should wait before retrying."""
    return get_error_info(error, status_code).retry_delay_ms or DEFAULT_RETRY_DELAY_MS


def format_error_for_toast(error: Any, status_code: Optional[int] = None) -> ToastPayload:
    info = get_error_info(error, status_code)
    return ToastPayload(
        title=info.message,
        description=info.action,
        duration_ms=10000 if info.recoverable else 5000,
        recoverable=info.recoverable,
        retry_delay_ms=info.retry_delay_ms or DEFAULT_RETRY_DELAY_MS,
    )
