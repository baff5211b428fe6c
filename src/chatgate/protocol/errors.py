"""
Error taxonomy shared by the gateway layers.

Low-level primitives (parsers, the circuit breaker, the session store)
raise these. The admission pipeline, the router and the gateway facade
catch them and turn them into structured rejections or safe responses.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    PARSING_ERROR = "parsing_error"
    VALIDATION_ERROR = "validation_error"
    PLATFORM_NOT_SUPPORTED = "platform_not_supported"
    MESSAGE_TOO_LARGE = "message_too_large"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SESSION_EXPIRED = "session_expired"
    AUTHENTICATION_FAILED = "authentication_failed"
    CONVERSION_FAILED = "conversion_failed"
    NOT_FOUND = "not_found"
    TEMPORARY_FAILURE = "temporary_failure"


class GatewayError(Exception):
    """
    Base class for every error raised inside the gateway.

    Attributes:
        kind: Taxonomy bucket
        code: Machine-readable code exposed to clients
        status_code: Suggested HTTP status for transports that need one
        platform: Platform tag the error relates to, if any
        details: Extra structured data (never shown to end users verbatim)
    """

    kind: ErrorKind = ErrorKind.TEMPORARY_FAILURE
    default_code = "GATEWAY_ERROR"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.platform = platform
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "platform": self.platform,
            "details": self.details,
        }


class ParsingError(GatewayError):
    kind = ErrorKind.PARSING_ERROR
    default_code = "PARSING_ERROR"
    default_status = 400


class ValidationError(GatewayError):
    kind = ErrorKind.VALIDATION_ERROR
    default_code = "VALIDATION_ERROR"
    default_status = 400


class MessageTooLargeError(GatewayError):
    kind = ErrorKind.MESSAGE_TOO_LARGE
    default_code = "MESSAGE_TOO_LARGE"
    default_status = 413


class PlatformNotSupportedError(GatewayError):
    kind = ErrorKind.PLATFORM_NOT_SUPPORTED
    default_code = "PLATFORM_NOT_SUPPORTED"
    default_status = 400


class RateLimitExceededError(GatewayError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    default_code = "RATE_LIMIT_EXCEEDED"
    default_status = 429

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.details.setdefault("retry_after", retry_after)


class AuthenticationFailedError(GatewayError):
    kind = ErrorKind.AUTHENTICATION_FAILED
    default_code = "AUTHENTICATION_FAILED"
    default_status = 401


class ConversionFailedError(GatewayError):
    kind = ErrorKind.CONVERSION_FAILED
    default_code = "CONVERSION_FAILED"
    default_status = 500


class SessionNotFoundError(GatewayError):
    kind = ErrorKind.NOT_FOUND
    default_code = "SESSION_NOT_FOUND"
    default_status = 404


class TemporaryFailureError(GatewayError):
    kind = ErrorKind.TEMPORARY_FAILURE
    default_code = "TEMPORARY_FAILURE"
    default_status = 503


class CircuitOpenError(TemporaryFailureError):
    """Raised by a circuit breaker that refuses to invoke its operation."""

    default_code = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_in_s: float):
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_in_s:.1f}s",
            details={"breaker": name, "retry_in_s": round(retry_in_s, 3)},
        )
        self.breaker = name
        self.retry_in_s = retry_in_s
