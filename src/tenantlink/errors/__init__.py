"""Centralized error definitions for tenantlink.

This module provides a single error hierarchy for the integration layer so
that callers can distinguish fatal configuration problems from retryable
provider failures and from per-event processing failures.

Usage:
    from tenantlink.errors import (
        TenantLinkError,
        RateLimitExceeded,
        handle_error,
    )

    try:
        await service.get_organization_overview(installation_id)
    except TenantLinkError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from tenantlink.errors.user_messages import (
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class TenantLinkError(Exception):
    """Base exception for all tenantlink errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "TENANTLINK_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TenantLinkError):
    """Credential material or settings are missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


class MissingCredentialError(ConfigurationError):
    """A required piece of app credential material was not provided."""

    code = "MISSING_CREDENTIAL"
    default_message = "Required GitHub App credential is missing"


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(TenantLinkError):
    """The provider rejected the app assertion or installation token exchange."""

    code = "AUTHENTICATION_ERROR"
    default_message = "GitHub App authentication failed"
    recoverable = False


class SignatureVerificationFailure(TenantLinkError):
    """Webhook delivery carried a malformed or mismatched signature."""

    code = "SIGNATURE_VERIFICATION_FAILED"
    default_message = "Invalid webhook signature"
    recoverable = False


# =============================================================================
# Provider API Errors
# =============================================================================


class GitHubAPIError(TenantLinkError):
    """Non-retryable error response from the GitHub REST API."""

    code = "GITHUB_API_ERROR"
    default_message = "GitHub API request failed"
    recoverable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: Optional[int] = None,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__(message, user_message=user_message, details=details)


class RateLimitExceeded(GitHubAPIError):
    """Retry budget exhausted while the API kept reporting rate limiting."""

    code = "RATE_LIMIT_EXCEEDED"
    default_message = "GitHub API rate limit exceeded"
    recoverable = True

    def __init__(
        self,
        reset_at: Optional[datetime] = None,
        *,
        status_code: Optional[int] = None,
        details: dict | None = None,
    ) -> None:
        self.reset_at = reset_at
        details = dict(details or {})
        if reset_at is not None:
            details.setdefault("reset_at", reset_at.isoformat())
            message = f"GitHub API rate limit exceeded. Reset at {self.reset_time}"
        else:
            message = None
        super().__init__(message, status_code=status_code, details=details)

    @property
    def reset_time(self) -> str:
        """Human-readable reset time in UTC."""
        if self.reset_at is None:
            return "unknown"
        return self.reset_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class TransientNetworkError(TenantLinkError):
    """Network failure or 5xx response that persisted through all retries."""

    code = "TRANSIENT_NETWORK_ERROR"
    default_message = "GitHub API is temporarily unreachable"
    recoverable = True


# =============================================================================
# Tenant Errors
# =============================================================================


class NotFoundError(TenantLinkError):
    """Requested installation or tenant is unknown."""

    code = "NOT_FOUND"
    default_message = "Requested resource was not found"
    recoverable = False


class TenantNotFoundError(NotFoundError):
    """No tenant is registered for the installation id."""

    code = "TENANT_NOT_FOUND"
    default_message = "Tenant not found"

    def __init__(self, installation_id: int) -> None:
        self.installation_id = installation_id
        super().__init__(
            f"Tenant not found for installation {installation_id}",
            details={"installation_id": installation_id},
        )


# =============================================================================
# Webhook Processing Errors
# =============================================================================


class ProcessorError(TenantLinkError):
    """A webhook event processor failed for one delivery."""

    code = "PROCESSOR_ERROR"
    default_message = "Webhook event processing failed"


class UnsupportedEventActionError(ProcessorError):
    """Lifecycle event carried an action the processor does not handle."""

    code = "UNSUPPORTED_EVENT_ACTION"
    default_message = "Unsupported webhook event action"


# =============================================================================
# Service Errors
# =============================================================================


class ServiceNotInitializedError(TenantLinkError):
    """The service facade was used before initialize() completed."""

    code = "SERVICE_NOT_INITIALIZED"
    default_message = "GitHub App service not initialized"


class WebhooksDisabledError(TenantLinkError):
    """Webhook handling is switched off in configuration."""

    code = "WEBHOOKS_DISABLED"
    default_message = "Webhooks are disabled"
    recoverable = False


# =============================================================================
# Error Handlers
# =============================================================================


def handle_error(error: Exception) -> str:
    """Convert any exception to a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable."""
    if isinstance(error, TenantLinkError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "TenantLinkError",
    # Configuration
    "ConfigurationError",
    "MissingCredentialError",
    # Authentication
    "AuthenticationError",
    "SignatureVerificationFailure",
    # Provider API
    "GitHubAPIError",
    "RateLimitExceeded",
    "TransientNetworkError",
    # Tenants
    "NotFoundError",
    "TenantNotFoundError",
    # Webhooks
    "ProcessorError",
    "UnsupportedEventActionError",
    # Service
    "ServiceNotInitializedError",
    "WebhooksDisabledError",
    # Handlers
    "handle_error",
    "is_recoverable",
]
