from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Internal error codes for the generation pipeline and integrations"""

    ANALYSIS_FAILED = "ANALYSIS_FAILED"  # vision analysis failed
    ROAST_FAILED = "ROAST_FAILED"  # roast text generation failed
    GENERATION_TIMEOUT = "GENERATION_TIMEOUT"  # AI call timed out
    RATE_LIMITED = "RATE_LIMITED"  # AI provider rate limit
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"  # 502/503 from provider
    GENERATION_FAILED = "GENERATION_FAILED"  # any other generation failure
    NON_RECOVERABLE = "NON_RECOVERABLE"  # bad key, bad image, forbidden
    NO_IMAGE_RETURNED = "NO_IMAGE_RETURNED"  # response carried no image part
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    STORAGE_FETCH_FAILED = "STORAGE_FETCH_FAILED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    IDENTITY_INVALID = "IDENTITY_INVALID"  # missing, forged or expired identity token
    ACCOUNT_CONFLICT = "ACCOUNT_CONFLICT"  # e-mail belongs to another identity
    UNKNOWN = "UNKNOWN"


# Substrings that make an upstream error pointless to retry
NON_RECOVERABLE_MARKERS = (
    "invalid_image",
    "invalid_api_key",
    "invalid_request",
    "forbidden",
    "api key not valid",
)

# Bare "rate" would also match words like "generate"
RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "rate-limit",
    "resource_exhausted",
    "too many requests",
)

# Backoff policy per classified error: (base seconds, growth, cap seconds)
BACKOFF_POLICY = {
    ErrorCode.GENERATION_TIMEOUT: (3, "linear", 10),
    ErrorCode.RATE_LIMITED: (5, "exponential", 30),
    ErrorCode.UPSTREAM_UNAVAILABLE: (2, "linear", 8),
    ErrorCode.GENERATION_FAILED: (1, "exponential", 5),
}


class RoastError(Exception):
    """Base exception"""

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        return f"[{self.code.value}] {self.message}"


class AnalysisError(RoastError):
    """Vision / roast text errors"""

    def __init__(self, code: ErrorCode, message: str, raw_output: str = None):
        super().__init__(code=code, message=message, details={"raw_output": raw_output})


class ImageGenerationError(RoastError):
    """Image generation errors"""

    def __init__(self, code: ErrorCode, message: str, attempt: int = None):
        super().__init__(code=code, message=message, details={"attempt": attempt})


class StorageError(RoastError):
    """Object storage errors"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.STORAGE_UPLOAD_FAILED):
        super().__init__(code=code, message=message)


class PaymentError(RoastError):
    """Checkout / webhook errors"""

    def __init__(self, message: str, provider: str = None):
        super().__init__(
            code=ErrorCode.PAYMENT_FAILED, message=message, details={"provider": provider}
        )


class WebhookSignatureError(PaymentError):
    """Webhook payload did not carry a valid signature"""


class IdentityError(RoastError):
    """Account linking without a valid proof of identity"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.IDENTITY_INVALID):
        super().__init__(code=code, message=message)


class InvalidTransitionError(RoastError):
    """Generation status moved along an edge that does not exist"""

    def __init__(self, current: str, target: str, reason: str = None):
        message = f"Cannot move generation status from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=message,
            details={"current": current, "target": target},
        )


def _error_text(error) -> str:
    if isinstance(error, RoastError):
        return f"{error.code.value} {error.message}".lower()
    return str(error).lower()


def is_recoverable_error(error) -> bool:
    """False when retrying cannot help (bad key, rejected image, forbidden)"""
    if isinstance(error, RoastError) and error.code == ErrorCode.NON_RECOVERABLE:
        return False
    text = _error_text(error)
    return not any(marker in text for marker in NON_RECOVERABLE_MARKERS)


def classify_error(error) -> ErrorCode:
    """Classify an upstream failure by matching substrings of its message"""
    if isinstance(error, RoastError) and error.code in BACKOFF_POLICY:
        return error.code
    if not is_recoverable_error(error):
        return ErrorCode.NON_RECOVERABLE

    text = _error_text(error)
    if "timeout" in text or "timed out" in text:
        return ErrorCode.GENERATION_TIMEOUT
    if "429" in text or any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ErrorCode.RATE_LIMITED
    if "503" in text or "502" in text:
        return ErrorCode.UPSTREAM_UNAVAILABLE
    return ErrorCode.GENERATION_FAILED


def get_retry_delay(error, attempt: int) -> float:
    """Seconds to wait after a failed attempt (attempt starts at 1)"""
    code = classify_error(error)
    base, growth, cap = BACKOFF_POLICY.get(code, BACKOFF_POLICY[ErrorCode.GENERATION_FAILED])
    if growth == "linear":
        delay = base * attempt
    else:
        delay = base * (2 ** (attempt - 1))
    return min(delay, cap)
