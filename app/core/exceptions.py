"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
intake path, the worker pool and the domain services.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses and stored failures"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"

    # Webhook intake errors (2xxx)
    WEBHOOK_SIGNATURE_INVALID = "ERR_2001"
    WEBHOOK_PAYLOAD_MALFORMED = "ERR_2002"
    WEBHOOK_PROVIDER_UNKNOWN = "ERR_2003"
    WEBHOOK_INTAKE_UNAVAILABLE = "ERR_2004"

    # Processing errors (3xxx)
    HANDLER_FAILED = "ERR_3001"
    PREREQUISITE_MISSING = "ERR_3002"
    JOB_TIMEOUT = "ERR_3003"

    # External service errors (5xxx)
    CHAT_PROVIDER_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class WebhookException(AppException):
    """Base exception for webhook intake errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        provider: str | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if provider:
            self.details["provider"] = provider


class WebhookAuthenticationError(WebhookException):
    """Signature or credentials did not match. Terminal, never retried."""

    def __init__(self, provider: str, reason: str = "invalid signature"):
        super().__init__(
            message=f"Webhook authentication failed: {reason}",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            provider=provider,
            status_code=401,
        )
        self.reason = reason


class MalformedPayloadError(WebhookException):
    """Body is not JSON or does not have the shape the provider documents"""

    def __init__(self, provider: str, reason: str):
        super().__init__(
            message=f"Malformed {provider} payload: {reason}",
            error_code=ErrorCode.WEBHOOK_PAYLOAD_MALFORMED,
            provider=provider,
        )
        self.reason = reason


class UnknownProviderError(WebhookException):
    """Raised for POST /webhooks/{provider} with an unsupported provider"""

    def __init__(self, provider: str):
        super().__init__(
            message=f"Unknown webhook provider: {provider}",
            error_code=ErrorCode.WEBHOOK_PROVIDER_UNKNOWN,
            provider=provider,
            status_code=404,
        )


class TransientDependencyError(WebhookException):
    """Ledger or queue could not be reached while accepting a delivery"""

    def __init__(self, provider: str, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_INTAKE_UNAVAILABLE,
            provider=provider,
            status_code=503,
        )


class HandlerError(AppException):
    """A handler failed to apply an event; the job is retried with backoff"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.HANDLER_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=500,
            details=details
        )


class PrerequisiteMissingError(HandlerError):
    """The entity the event refers to does not exist yet (out-of-order delivery)"""

    def __init__(self, entity: str, identifier: Any):
        super().__init__(
            message=f"{entity} not found for {identifier}, will retry",
            error_code=ErrorCode.PREREQUISITE_MISSING,
            details={"entity": entity, "identifier": str(identifier)}
        )


class JobTimeoutError(HandlerError):
    """Handler exceeded the job timeout and was cancelled"""

    def __init__(self, job_id: int, timeout_seconds: float):
        super().__init__(
            message=f"Job {job_id} timed out after {timeout_seconds}s",
            error_code=ErrorCode.JOB_TIMEOUT,
            details={"job_id": job_id, "timeout_seconds": timeout_seconds}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class ChatProviderError(ExternalServiceException):
    """Raised when the GetStream REST API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="getstream",
            message=f"GetStream API error: {message}",
            error_code=ErrorCode.CHAT_PROVIDER_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ChatProviderError":
        """Build from an httpx response, truncating the body for logs"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
