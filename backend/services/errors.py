"""
Domain error taxonomy.

Every failure the API reports is a TryOnError carrying a closed ErrorKind. The
HTTP status and the public category come from ERROR_TABLE, never from the
exception itself, so transport codes stay decoupled from domain meaning.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class ErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION_ERROR"
    LIMIT_EXCEEDED = "GENERATION_LIMIT_EXCEEDED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM = "AI_API_ERROR"
    EXTRACTION_FAILURE = "EXTRACTION_FAILURE"
    INTERNAL = "INTERNAL_SERVER_ERROR"


class ErrorMapping(NamedTuple):
    status_code: int
    category: str


ERROR_TABLE: Dict[ErrorKind, ErrorMapping] = {
    ErrorKind.UNAUTHORIZED: ErrorMapping(401, "unauthorized"),
    ErrorKind.NOT_FOUND: ErrorMapping(404, "not-found"),
    ErrorKind.VALIDATION: ErrorMapping(400, "validation"),
    ErrorKind.LIMIT_EXCEEDED: ErrorMapping(403, "limit-exceeded"),
    ErrorKind.INSUFFICIENT_CREDITS: ErrorMapping(402, "insufficient-credits"),
    ErrorKind.CONFLICT: ErrorMapping(409, "conflict"),
    ErrorKind.RATE_LIMITED: ErrorMapping(429, "rate-limited"),
    ErrorKind.UPSTREAM: ErrorMapping(503, "upstream-unavailable"),
    ErrorKind.EXTRACTION_FAILURE: ErrorMapping(502, "upstream-unavailable"),
    ErrorKind.INTERNAL: ErrorMapping(500, "internal"),
}

REFUND_NOTICE = "Your credits have been returned to your balance."


class TryOnError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[List[Dict[str, Any]]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if retryable is not None:
            self.retryable = retryable
        self.credits_refunded = False
        self.timestamp = datetime.now(timezone.utc)

    @property
    def status_code(self) -> int:
        return ERROR_TABLE[self.kind].status_code

    @property
    def category(self) -> str:
        return ERROR_TABLE[self.kind].category

    def mark_refunded(self) -> "TryOnError":
        """Flag the error as surfaced after a successful refund and say so in the message."""
        if not self.credits_refunded:
            self.credits_refunded = True
            self.message = f"{self.message} {REFUND_NOTICE}"
            self.args = (self.message,)
        return self


class UnauthorizedError(TryOnError):
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Please sign in first."):
        super().__init__(message)


class NotFoundError(TryOnError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(TryOnError):
    kind = ErrorKind.VALIDATION


class ConflictError(TryOnError):
    kind = ErrorKind.CONFLICT


class RateLimitedError(TryOnError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "Rate limit exceeded. Please try again shortly."):
        super().__init__(message)


class LimitExceededError(TryOnError):
    kind = ErrorKind.LIMIT_EXCEEDED

    def __init__(self, tier_name: str, limit: int, attempted: int):
        super().__init__(
            f"{tier_name} accounts can upload at most {limit} garment image(s); received {attempted}.",
            details=[{
                "code": ErrorKind.LIMIT_EXCEEDED.value,
                "field": "clothingImages",
                "value": {"userLevel": tier_name, "limit": limit, "attempted": attempted},
            }],
        )
        self.tier_name = tier_name
        self.limit = limit
        self.attempted = attempted


class InsufficientCreditsError(TryOnError):
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: int, current: int):
        super().__init__(
            f"Not enough credits: {required} required, {current} available.",
            details=[{
                "code": ErrorKind.INSUFFICIENT_CREDITS.value,
                "field": "credits",
                "value": {"required": required, "current": current},
            }],
        )
        self.required = required
        self.current = current


class UpstreamError(TryOnError):
    kind = ErrorKind.UPSTREAM
    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None, body: Optional[str] = None, retryable: bool = True):
        details = None
        if status is not None or body:
            details = [{"code": ErrorKind.UPSTREAM.value, "value": {"status": status, "body": (body or "")[:300]}}]
        super().__init__(f"AI service error: {message}", details=details, retryable=retryable)
        self.upstream_status = status


class ExtractionFailure(TryOnError):
    kind = ErrorKind.EXTRACTION_FAILURE
    retryable = True

    def __init__(self, message: str = "The AI reply did not produce a compliant image.", reply: str = ""):
        super().__init__(message)
        self.reply = reply


class InternalError(TryOnError):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str = "The request could not be processed. Please try again later."):
        super().__init__(message)


def error_response(error: TryOnError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error.kind.value,
        "category": error.category,
        "message": error.message,
        "details": error.details,
        "creditsRefunded": error.credits_refunded,
        "timestamp": error.timestamp.isoformat(),
    }
