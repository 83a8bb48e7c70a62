"""Custom exceptions for the analysis pipeline."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed. Please log in again.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "PersistenceError": "A database error occurred. Please try again.",
    "ExternalServiceError": "An external service is temporarily unavailable.",
    "AnalyzerTimeout": "Email analysis timed out. Please try again.",
    "AnalyzerMalformedOutput": "Email analysis returned an unreadable result.",
    "AnalyzerError": "Email analysis failed. Please try again.",
    "AnalysisFailedError": "Email analysis failed. Please try again.",
    "QuotaExceeded": "Your analysis budget has been reached. Try again later.",
    "CircuitBreakerOpen": "A service dependency is temporarily unavailable. Please try again in a moment.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Walks the exception's MRO so subclasses inherit their parent's message.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class MailsiftException(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(MailsiftException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": resource_id},
        )


class AuthenticationError(MailsiftException):
    """Authentication failed error (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            status_code=401,
        )


class ValidationError(MailsiftException):
    """Caller input was malformed (400). Raised before any work is dispatched."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the invalid field.
            details: Additional validation details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=error_details,
        )


class PersistenceError(MailsiftException):
    """Store read or write failed (500)."""

    def __init__(
        self,
        message: str = "A database error occurred",
        table: str | None = None,
    ) -> None:
        """Initialize persistence error.

        Args:
            message: Error message.
            table: Table the failed operation targeted.
        """
        super().__init__(
            message=message,
            code="PERSISTENCE_ERROR",
            status_code=500,
            details={"table": table} if table else None,
        )


class ExternalServiceError(MailsiftException):
    """External service error (502)."""

    def __init__(self, service: str, message: str | None = None) -> None:
        """Initialize external service error.

        Args:
            service: Name of the external service.
            message: Optional error message.
        """
        error_message = message or f"Error communicating with {service}"
        super().__init__(
            message=error_message,
            code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details={"service": service},
        )


class AnalyzerError(MailsiftException):
    """An analyzer could not produce a result (502)."""

    def __init__(
        self,
        analyzer: str,
        message: str,
        code: str = "ANALYZER_ERROR",
        status_code: int = 502,
    ) -> None:
        """Initialize analyzer error.

        Args:
            analyzer: Name of the failing analyzer.
            message: Error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
        """
        super().__init__(
            message=message,
            code=code,
            status_code=status_code,
            details={"analyzer": analyzer},
        )
        self.analyzer = analyzer
        # Usage the provider billed for the failed call, when a reply came back.
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost_usd = 0.0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class AnalyzerTimeout(AnalyzerError):
    """Analyzer call exceeded its timeout (504)."""

    def __init__(self, analyzer: str, timeout_seconds: float) -> None:
        super().__init__(
            analyzer=analyzer,
            message=f"Analyzer {analyzer} timed out after {timeout_seconds:g}s",
            code="ANALYZER_TIMEOUT",
            status_code=504,
        )
        self.timeout_seconds = timeout_seconds


class AnalyzerMalformedOutput(AnalyzerError):
    """Model returned output that is not a JSON object (502)."""

    def __init__(self, analyzer: str, message: str | None = None) -> None:
        super().__init__(
            analyzer=analyzer,
            message=message or f"Analyzer {analyzer} returned malformed JSON",
            code="ANALYZER_MALFORMED_OUTPUT",
        )


class AnalyzerTruncatedOutput(AnalyzerMalformedOutput):
    """Model output was cut off at the token limit. Safe to retry."""

    def __init__(self, analyzer: str) -> None:
        super().__init__(
            analyzer=analyzer,
            message=f"Analyzer {analyzer} output was truncated at the token limit",
        )


class AnalysisFailedError(MailsiftException):
    """An email could not be analyzed end to end (500)."""

    def __init__(self, email_id: str, message: str) -> None:
        super().__init__(
            message=f"Analysis failed: {message}",
            code="ANALYSIS_FAILED",
            status_code=500,
            details={"email_id": email_id},
        )


class QuotaExceeded(MailsiftException):
    """User's cost cap would be exceeded by the requested work (429)."""

    def __init__(
        self,
        user_id: str,
        period: str,
        limit_usd: float,
        spent_usd: float,
    ) -> None:
        """Initialize quota error.

        Args:
            user_id: Owner of the ledger.
            period: "daily" or "monthly".
            limit_usd: The cap that was hit.
            spent_usd: Committed plus reserved spend at the time of the check.
        """
        super().__init__(
            message=f"{period.capitalize()} cost limit of ${limit_usd:.2f} reached",
            code="QUOTA_EXCEEDED",
            status_code=429,
            details={
                "user_id": user_id,
                "period": period,
                "limit_usd": limit_usd,
                "spent_usd": round(spent_usd, 6),
            },
        )
        self.period = period
        self.limit_usd = limit_usd
