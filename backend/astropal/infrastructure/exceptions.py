"""
Custom Exceptions for Astropal

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any, List


class AstropalError(Exception):
    """Base exception for all Astropal errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class AuthorizationError(AstropalError):
    """Raised when a caller is not allowed to perform an operation."""
    pass


class NotFoundError(AstropalError):
    """Raised when a requested resource (a row, a job) does not exist."""
    pass


class ConfigurationError(AstropalError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)


# =============================================================================
# Billing
# =============================================================================

class WebhookSignatureError(AstropalError):
    """Raised when a webhook signature is missing, stale, or does not match."""
    pass


class WebhookPayloadError(AstropalError):
    """Raised when a signed webhook body is not a usable event."""
    pass


class DataIntegrityError(AstropalError):
    """
    Raised when a webhook references data we cannot reconcile.

    Fatal for the event: the ledger is not written, so the sender retries.
    """

    def __init__(
        self,
        message: str,
        event_id: Optional[str] = None,
        reference: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if event_id:
            details["event_id"] = event_id
        if reference:
            details["reference"] = reference
        super().__init__(message, details, original_error)


class StripeServiceError(AstropalError):
    """Raised when a Stripe API call fails."""
    pass


# =============================================================================
# Content Generation
# =============================================================================

class ContentGenerationError(AstropalError):
    """Base for errors recovered inside the content pipeline."""
    pass


class ProviderError(ContentGenerationError):
    """Raised when a content provider call fails."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        details = dict(details or {})
        if provider:
            details["provider"] = provider
        if model:
            details["model"] = model
        super().__init__(message, details, original_error)
        self.provider = provider


class ProviderTimeout(ProviderError):
    """Raised when a provider does not answer within its timeout."""
    pass


class ProviderHTTPError(ProviderError):
    """Raised when a provider answers with a non-2xx status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            provider=provider,
            model=model,
            details={"status_code": status_code},
            original_error=original_error,
        )
        self.status_code = status_code


class MalformedProviderResponse(ProviderError):
    """Raised when a provider response lacks the expected fields."""
    pass


class CircuitOpenError(ProviderError):
    """Raised when a call is refused because the provider's breaker is open."""
    pass


class SchemaValidationFailed(ContentGenerationError):
    """Raised when generated content does not match the newsletter schema."""

    def __init__(self, problems: List[str]):
        super().__init__(
            f"Content failed schema validation: {'; '.join(problems)}",
            details={"problems": problems},
        )
        self.problems = problems


class QualityCheckFailed(ContentGenerationError):
    """Raised when generated content fails the quality checks."""

    def __init__(self, problems: List[str]):
        super().__init__(
            f"Content failed quality checks: {'; '.join(problems)}",
            details={"problems": problems},
        )
        self.problems = problems
