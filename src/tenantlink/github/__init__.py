"""GitHub App REST integration.

This package provides the outbound side of the integration: a rate-limit
aware REST client and the GitHub App authenticator that mints assertions,
caches installation tokens and verifies webhook signatures.

Example:
    >>> from tenantlink.github import AppAuthenticator, RateLimitedClient
    >>>
    >>> client = RateLimitedClient.from_settings(settings)
    >>> auth = AppAuthenticator.from_settings(settings, client)
    >>> token = await auth.get_installation_token(555)
"""

from .app_auth import AppAuthenticator, verify_webhook_signature
from .client import RateLimitedClient
from .models import Account, Installation, InstallationToken, RateLimitInfo, Repository

__all__ = [
    "Account",
    "AppAuthenticator",
    "Installation",
    "InstallationToken",
    "RateLimitInfo",
    "RateLimitedClient",
    "Repository",
    "verify_webhook_signature",
]
