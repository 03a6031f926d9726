"""
BeanGate Backend: Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for every failure the gateway reports.
How:   Each exception carries a user-facing message and an optional context
       dict. `error_code` and `status_code` class attributes drive the global
       exception handlers registered in main.py, which render
       {"error", "message", "details", "request_id"}.
Who:   Raised by the vault, provider clients, ledger and orchestrator; caught
       by the global handlers.

Exception Hierarchy:
    BeanGateError (base)
    ├── ConfigurationError            → 500 (operator-facing, fatal)
    ├── UnknownProviderError          → 400
    ├── MissingCredentialError        → 400
    ├── InvalidCredentialError        → 400
    ├── QuotaExceededError            → 429 (platform ceiling)
    ├── RateLimitedError              → 429 (backend throttling)
    ├── MalformedResponseError        → 502
    ├── UpstreamFailureError          → 503
    ├── IntegrityError                → 409 (stored credential failed to verify)
    ├── ValidationError               → 400
    ├── AuthenticationRequiredError   → 401
    ├── NotFoundError                 → 404
    ├── DatabaseError                 → 500
    └── StorageError                  → 500 (image store I/O)

    NotIdentifiedError is deliberately outside this tree: it is an analysis
    outcome ("no coffee packaging recognized"), not a defect.

Messages and context never include key material. Context may hold a masked
credential, a provider name, or a request id.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from beangate.schemas.analysis import AnalysisResult


class BeanGateError(Exception):
    """
    Base exception for all BeanGate application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (returned as `details` only by handlers
                  that opt in; always logged)
    """

    error_code = "server_error"
    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(BeanGateError):
    """
    The server is misconfigured: bad master secret, or the House Blend backend
    has no platform key. Not recoverable by the caller.
    """

    error_code = "configuration_error"
    status_code = 500

    def __init__(
        self,
        message: str = "The analysis service is not configured correctly",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UnknownProviderError(BeanGateError):
    """The requested provider identity is not one of the known providers."""

    error_code = "unknown_provider"
    status_code = 400

    def __init__(self, provider: Any = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["provider"] = str(provider)
        super().__init__(message=f"Unknown provider: {provider}", context=ctx)
        self.provider = provider


class MissingCredentialError(BeanGateError):
    """The provider needs a user credential and the caller has none stored."""

    error_code = "missing_credential"
    status_code = 400

    def __init__(
        self,
        provider: Any = None,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["provider"] = str(provider)
        super().__init__(
            message=message or f"You need to configure a {provider} API key in your profile settings",
            context=ctx,
        )
        self.provider = provider


class InvalidCredentialError(BeanGateError):
    """The backend rejected the credential (authentication or permission failure)."""

    error_code = "invalid_credential"
    status_code = 400

    def __init__(
        self,
        message: str = "The provider rejected the API key",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class QuotaExceededError(BeanGateError):
    """
    The caller used up today's free House Blend analyses.

    Carries the usage snapshot so the handler can send Retry-After and the
    reset time.
    """

    error_code = "quota_exceeded"
    status_code = 429

    def __init__(
        self,
        limit: int,
        resets_at: datetime,
        used: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"You've reached your daily limit of {limit} free analyses. "
            f"Your limit resets at {resets_at.isoformat()}. "
            f"Add your own API key to unlock unlimited analyses."
        )
        ctx = context or {}
        ctx.update({
            "limit": limit,
            "used": limit if used is None else used,
            "remaining": 0,
            "resets_at": resets_at.isoformat(),
        })
        super().__init__(message=message, context=ctx)
        self.limit = limit
        self.resets_at = resets_at

    @property
    def retry_after(self) -> int:
        """Whole seconds until the ceiling resets (at least 1)."""
        delta = (self.resets_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(delta) + 1)


class RateLimitedError(BeanGateError):
    """The backend throttled the request. Distinct from QuotaExceededError."""

    error_code = "provider_rate_limited"
    status_code = 429

    def __init__(
        self,
        message: str = "The provider rate limit was exceeded. Please try again later.",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class MalformedResponseError(BeanGateError):
    """The backend answered, but not with the structured data we asked for."""

    error_code = "malformed_response"
    status_code = 502

    def __init__(
        self,
        message: str = "The provider returned an analysis we could not read",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UpstreamFailureError(BeanGateError):
    """Any other backend failure, including transport errors and timeouts."""

    error_code = "upstream_failure"
    status_code = 503

    def __init__(
        self,
        message: str = "The analysis provider is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class IntegrityError(BeanGateError):
    """
    A stored credential failed authentication on decrypt (tampered, corrupted,
    or encrypted under another master secret). The caller must re-supply it.
    """

    error_code = "credential_integrity"
    status_code = 409

    def __init__(
        self,
        message: str = "The stored API key could not be verified. Please save it again.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ValidationError(BeanGateError):
    """Client input failed a business rule (bad key format, bad image data URL, ...)."""

    error_code = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationRequiredError(BeanGateError):
    """The endpoint needs an authenticated caller."""

    error_code = "authentication_required"
    status_code = 401

    def __init__(
        self,
        message: str = "You need to sign in to use this feature",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(BeanGateError):
    """A requested resource (image, analysis record) does not exist."""

    error_code = "not_found"
    status_code = 404

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class DatabaseError(BeanGateError):
    """
    A database operation failed unexpectedly. The client only ever sees a
    generic message; the context is logged server-side.
    """

    error_code = "server_error"
    status_code = 500

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StorageError(BeanGateError):
    """The image store could not write or read an image (disk full, permissions, ...)."""

    error_code = "storage_error"
    status_code = 500

    def __init__(
        self,
        message: str = "An error occurred while accessing stored images.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotIdentifiedError(Exception):
    """
    The backend answered and the answer is "this is not a coffee bag".

    Not a BeanGateError: callers treat it as "try a clearer photo". The
    normalized result (identified=False) travels with it.
    """

    message = (
        "Could not identify a coffee bag in the image. "
        "Please upload a clear photo of a coffee bag or package."
    )

    def __init__(
        self,
        result: "AnalysisResult",
        provider: Any = None,
        metering_degraded: bool = False,
    ):
        self.result = result
        self.provider = provider
        self.metering_degraded = metering_degraded
        super().__init__(self.message)
