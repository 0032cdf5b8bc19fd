# =============================================================================
# app/exceptions.py - Custom Exception Handlers
# =============================================================================
# Centralized exception handling for the API.
# Every error tells the client HOW to fix the problem, not just WHAT failed.
#
# Error codes are lower_snake_case because the mobile and web clients switch
# on them (e.g. "quota_exceeded" shows the upgrade sheet).
# =============================================================================

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class EduDashException(Exception):
    """
    Base exception for the EduDash API.

    All custom exceptions inherit from this class.
    Provides structured error responses with actionable suggestions.
    """

    def __init__(
        self,
        message: str,
        code: str = "edudash_error",
        status_code: int = 500,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.suggestion = suggestion
        self.details = details or {}
        self.headers = headers or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response dict."""
        result = {
            "detail": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Request / Auth Exceptions
# =============================================================================

class InvalidRequestError(EduDashException):
    """Raised when a request body is missing required fields or is malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="invalid_request",
            status_code=400,
            suggestion="Check the request body against the API documentation at /docs",
            details=details,
        )


class AuthenticationError(EduDashException):
    """Raised when the caller cannot be identified."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            code="unauthorized",
            status_code=401,
            suggestion="Sign in again to refresh your access token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class PermissionDeniedError(EduDashException):
    """Raised when the caller's role does not allow the operation."""

    def __init__(self, message: str, required_roles: list[str] | None = None):
        super().__init__(
            message=message,
            code="permission_denied",
            status_code=403,
            suggestion="Ask a principal or administrator to perform this action",
            details={"required_roles": required_roles} if required_roles else None,
        )


class NotFoundError(EduDashException):
    """Raised when a referenced row does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            code="not_found",
            status_code=404,
            suggestion=f"Check that the {resource.lower()} id is correct",
            details={"resource": resource, "id": resource_id},
        )


# =============================================================================
# AI Proxy Exceptions
# =============================================================================

class TierRestrictionError(EduDashException):
    """Raised when a feature is not available on the caller's subscription tier."""

    def __init__(self, message: str, tier: str):
        super().__init__(
            message=message,
            code="tier_restriction",
            status_code=403,
            suggestion="Upgrade the school's subscription to unlock this feature",
            details={"tier": tier},
        )


class QuotaExceededError(EduDashException):
    """Raised when the monthly AI quota for a service is used up."""

    def __init__(self, message: str, quota_info: dict[str, Any]):
        super().__init__(
            message=message,
            code="quota_exceeded",
            status_code=429,
            suggestion="Wait for the next billing month or upgrade your plan",
            details={"quota_info": quota_info},
            headers={"Retry-After": "3600"},
        )
        self.quota_info = quota_info

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["quota_info"] = self.quota_info
        return result


class VoiceQuotaExceededError(EduDashException):
    """Raised when the voice transcription allowance is used up."""

    def __init__(self, reason: str | None, tier: str | None, quota_remaining: Any = None):
        super().__init__(
            message="Usage limit exceeded",
            code="voice_quota_exceeded",
            status_code=429,
            suggestion="Fall back to on-device speech recognition",
            details={
                "reason": reason,
                "tier": tier,
                "quota_remaining": quota_remaining,
                "fallback_available": True,
            },
            headers={"X-RateLimit-Remaining": "0", "X-Quota-Tier": tier or "free"},
        )


class AIServiceError(EduDashException):
    """Raised when the upstream LLM call fails."""

    def __init__(self, error: str):
        super().__init__(
            message="AI service temporarily unavailable",
            code="ai_service_error",
            status_code=503,
            suggestion="Try again in a few moments",
            details={"error": error},
        )


# =============================================================================
# Notification / Transcription Exceptions
# =============================================================================

class NotificationError(EduDashException):
    """Raised when a push or email provider rejects a request."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="notification_error",
            status_code=502,
            suggestion="Check EXPO_ACCESS_TOKEN / RESEND_API_KEY and provider status",
            details=details,
        )


class TranscriptionError(EduDashException):
    """Raised when speech-to-text fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="transcription_error",
            status_code=502,
            suggestion="Retry the recording or use on-device speech recognition",
            details=details,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def edudash_exception_handler(
    request: Request,
    exc: EduDashException
) -> JSONResponse:
    """
    Convert EduDashException to JSON response.

    Returns structured error with:
    - detail: Human-readable message
    - code: Machine-readable error code
    - suggestion: How to fix (if available)
    - details: Additional context
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers or None,
    )
