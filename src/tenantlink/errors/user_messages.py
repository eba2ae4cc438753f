"""User-friendly error messages for tenantlink.

This module maps error codes to human-readable messages and recovery
suggestions used by the CLI and the webhook server responses.

Privacy Note:
- Messages NEVER include tokens, private keys or webhook secrets
- Webhook payload content is never echoed back
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue with the GitHub App.",
    "MISSING_CREDENTIAL": "GitHub App credentials are incomplete.",
    # Authentication errors
    "AUTHENTICATION_ERROR": "GitHub rejected the app's credentials.",
    "SIGNATURE_VERIFICATION_FAILED": "The webhook signature could not be verified.",
    # Provider API errors
    "GITHUB_API_ERROR": "GitHub returned an error for this request.",
    "RATE_LIMIT_EXCEEDED": "GitHub's API rate limit has been reached.",
    "TRANSIENT_NETWORK_ERROR": "GitHub could not be reached. Please try again.",
    # Tenant errors
    "NOT_FOUND": "The requested resource wasn't found.",
    "TENANT_NOT_FOUND": "No organization is registered for this installation.",
    # Webhook processing errors
    "PROCESSOR_ERROR": "A webhook event couldn't be processed.",
    "UNSUPPORTED_EVENT_ACTION": "This webhook action isn't supported.",
    # Service errors
    "SERVICE_NOT_INITIALIZED": "The GitHub App service hasn't started yet.",
    "WEBHOOKS_DISABLED": "Webhook handling is turned off.",
    # Generic
    "TENANTLINK_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "Check config: tenantlink config show",
    "MISSING_CREDENTIAL": "Set GITHUB_APP_ID, GITHUB_APP_PRIVATE_KEY and GITHUB_APP_WEBHOOK_SECRET.",
    # Authentication errors
    "AUTHENTICATION_ERROR": "Verify the app id and private key match the registered GitHub App.",
    "SIGNATURE_VERIFICATION_FAILED": "Make sure the webhook secret matches the GitHub App settings.",
    # Provider API errors
    "GITHUB_API_ERROR": "Check that the installation grants the required permissions.",
    "RATE_LIMIT_EXCEEDED": "Wait until the rate limit resets, then retry.",
    "TRANSIENT_NETWORK_ERROR": "Check network connectivity and https://www.githubstatus.com.",
    # Tenant errors
    "NOT_FOUND": "List known installations with: tenantlink tenants",
    "TENANT_NOT_FOUND": "Install the GitHub App on the organization, then retry.",
    # Webhook processing errors
    "PROCESSOR_ERROR": "Inspect recent failures in the webhook statistics.",
    "UNSUPPORTED_EVENT_ACTION": "No action needed; the event was recorded and skipped.",
    # Service errors
    "SERVICE_NOT_INITIALIZED": "Wait for startup to complete or check the startup logs.",
    "WEBHOOKS_DISABLED": "Enable webhooks with TENANTLINK_ENABLE_WEBHOOKS=true.",
    # Generic
    "TENANTLINK_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Retry the operation. Report if the issue continues.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    message = ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])

    # Rate limit messages are only useful with the reset time attached
    reset_time = getattr(error, "reset_time", None)
    if reset_time and reset_time != "unknown":
        message = f"{message} Reset at {reset_time}."

    return message


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]

    if getattr(error, "details", None):
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            if key not in ("token", "private_key", "webhook_secret", "payload"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


def format_error_for_response(error: Any) -> dict:
    """Format error as a JSON body for HTTP responses."""
    return {
        "error": getattr(error, "code", "UNKNOWN_ERROR"),
        "message": get_user_message(error),
        "recoverable": getattr(error, "recoverable", False),
    }


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
    "format_error_for_response",
]
