"""GitHub App authentication: assertions, installation tokens and webhook HMAC.

The authenticator signs short-lived RS256 JWT assertions with the app's
private key, exchanges them for per-installation access tokens, and caches
those tokens until they get close to expiry. Concurrent callers that need the
same expired token share one in-flight refresh.

It also verifies inbound webhook signatures with the shared secret.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from jose import jwt
from jose.exceptions import JOSEError
from pydantic import ValidationError

from tenantlink.configuration.settings import AppCredential, AppSettings
from tenantlink.errors import (
    AuthenticationError,
    ConfigurationError,
    GitHubAPIError,
    NotFoundError,
    RateLimitExceeded,
)

from .client import RateLimitedClient
from .models import Installation, InstallationToken, Repository, parse_repositories

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
ASSERTION_BACKDATE_SECONDS = 60
ASSERTION_LIFETIME_SECONDS = 600
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)


class AppAuthenticator:
    """Authenticates as a GitHub App and as its installations.

    Attributes:
        credential: Immutable app credential
        client: Outbound REST client used for token exchange and app endpoints

    Example:
        >>> auth = AppAuthenticator(settings.credential(), client)
        >>> token = await auth.get_installation_token(555)
        >>> repos = await auth.get_installation_repositories(555)
    """

    def __init__(
        self,
        credential: AppCredential,
        client: RateLimitedClient,
        *,
        clock=time.time,
    ):
        self.credential = credential
        self.client = client
        self._clock = clock
        self._tokens: Dict[int, InstallationToken] = {}
        self._inflight: Dict[int, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings: AppSettings, client: RateLimitedClient) -> "AppAuthenticator":
        """Build an authenticator, failing fast on missing credentials."""
        return cls(settings.credential(), client)

    # -----------------------------------------------------------------------
    # App assertion
    # -----------------------------------------------------------------------

    def mint_assertion(self) -> str:
        """Sign a fresh app assertion.

        The assertion is backdated 60 seconds to tolerate clock drift and
        expires 10 minutes after issue, the maximum GitHub allows.

        Raises:
            ConfigurationError: If the private key cannot sign
        """
        now = int(self._clock())
        claims = {
            "iat": now - ASSERTION_BACKDATE_SECONDS,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
            "iss": self.credential.app_id,
        }
        try:
            return jwt.encode(
                claims,
                self.credential.private_key.get_secret_value(),
                algorithm="RS256",
            )
        except (JOSEError, ValueError) as exc:
            raise ConfigurationError(f"Unable to sign GitHub App assertion: {exc}") from exc

    # -----------------------------------------------------------------------
    # Installation tokens
    # -----------------------------------------------------------------------

    async def get_installation_token(
        self, installation_id: int, force_refresh: bool = False
    ) -> str:
        """Return a valid access token for an installation.

        Cached tokens are reused while more than five minutes of validity
        remain. Concurrent refreshes for the same installation are coalesced.

        Args:
            installation_id: Installation id
            force_refresh: Ignore the cache and exchange a new assertion

        Raises:
            AuthenticationError: If GitHub rejects the exchange
        """
        if not force_refresh:
            cached = self._tokens.get(installation_id)
            if cached is not None and self._is_fresh(cached):
                return cached.token

        pending = self._inflight.get(installation_id)
        if pending is None:
            pending = asyncio.ensure_future(self._refresh_token(installation_id))
            self._inflight[installation_id] = pending
            pending.add_done_callback(
                lambda task, key=installation_id: self._forget_refresh(key, task)
            )

        token = await asyncio.shield(pending)
        return token.token

    def _forget_refresh(self, installation_id: int, task: asyncio.Future) -> None:
        if self._inflight.get(installation_id) is task:
            del self._inflight[installation_id]

    async def _refresh_token(self, installation_id: int) -> InstallationToken:
        assertion = self.mint_assertion()
        try:
            data = await self.client.request(
                f"/app/installations/{installation_id}/access_tokens",
                method="POST",
                token=assertion,
            )
        except RateLimitExceeded:
            raise
        except GitHubAPIError as exc:
            logger.error(
                f"Installation token exchange rejected for {installation_id}",
                extra={"installation_id": installation_id, "status_code": exc.status_code},
            )
            raise AuthenticationError(
                f"Failed to get installation token for {installation_id}: {exc.message}",
                details={"installation_id": installation_id, "status_code": exc.status_code},
            ) from exc

        if not isinstance(data, dict) or not data.get("token"):
            raise AuthenticationError(
                f"Token endpoint returned no token for installation {installation_id}",
                details={"installation_id": installation_id},
            )

        try:
            token = InstallationToken(
                token=data["token"],
                expires_at=data.get("expires_at"),
                permissions=data.get("permissions") or {},
                repository_selection=data.get("repository_selection") or "all",
                repositories=(
                    parse_repositories(data["repositories"]) if "repositories" in data else None
                ),
            )
        except ValidationError as exc:
            raise AuthenticationError(
                f"Token endpoint returned a malformed token for installation {installation_id}",
                details={"installation_id": installation_id, "errors": exc.error_count()},
            ) from exc
        self._tokens[installation_id] = token
        logger.info(
            f"Installation token refreshed for {installation_id}",
            extra={"installation_id": installation_id, "expires_at": token.expires_at.isoformat()},
        )
        return token

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _is_fresh(self, token: InstallationToken) -> bool:
        return token.remaining_seconds(self._now()) > TOKEN_REFRESH_BUFFER.total_seconds()

    def get_cached_token_info(self, installation_id: int) -> Optional[Dict[str, Any]]:
        """Describe the cached token without exposing it."""
        token = self._tokens.get(installation_id)
        if token is None:
            return None
        return {
            "expires_at": token.expires_at.isoformat(),
            "permissions": dict(token.permissions),
            "repository_selection": token.repository_selection,
            "remaining_seconds": max(0, int(token.remaining_seconds(self._now()))),
        }

    @property
    def cached_token_count(self) -> int:
        return len(self._tokens)

    def clear_token_cache(self) -> None:
        """Drop every cached installation token and cancel pending refreshes."""
        for pending in self._inflight.values():
            pending.cancel()
        self._inflight.clear()
        self._tokens.clear()
        logger.info("Installation token cache cleared")

    # -----------------------------------------------------------------------
    # App and installation endpoints
    # -----------------------------------------------------------------------

    async def list_installations(self) -> List[Installation]:
        """List every installation of this app."""
        items = await self.client.paginate("/app/installations", token=self.mint_assertion())
        return [Installation.model_validate(item) for item in items]

    async def get_installation(self, installation_id: int) -> Installation:
        """Fetch one installation record.

        Raises:
            NotFoundError: If GitHub does not know the installation
        """
        try:
            data = await self.client.request(
                f"/app/installations/{installation_id}", token=self.mint_assertion()
            )
        except GitHubAPIError as exc:
            if exc.status_code == 404:
                raise NotFoundError(
                    f"Installation {installation_id} not found",
                    details={"installation_id": installation_id},
                ) from exc
            raise
        return Installation.model_validate(data)

    async def get_installation_repositories(self, installation_id: int) -> List[Repository]:
        """List repositories an installation is authorized for."""
        token = await self.get_installation_token(installation_id)
        items = await self.client.paginate(
            "/installation/repositories", token=token, item_key="repositories"
        )
        return parse_repositories(items)

    async def installation_request(
        self,
        installation_id: int,
        path: str,
        *,
        method: str = "GET",
        **kwargs: Any,
    ) -> Any:
        """Call a tenant-scoped endpoint with the installation's token."""
        token = await self.get_installation_token(installation_id)
        return await self.client.request(path, method=method, token=token, **kwargs)

    # -----------------------------------------------------------------------
    # Webhook signatures
    # -----------------------------------------------------------------------

    def verify_webhook_signature(
        self, payload: Union[bytes, str], signature: Optional[str]
    ) -> bool:
        """Verify an ``X-Hub-Signature-256`` value against the raw payload.

        Malformed input yields False rather than an exception.

        Args:
            payload: Raw request body
            signature: Header value, ``sha256=<hex digest>``

        Returns:
            True if the signature matches
        """
        return verify_webhook_signature(
            payload, signature, self.credential.webhook_secret.get_secret_value()
        )


def verify_webhook_signature(
    payload: Union[bytes, str], signature: Optional[str], secret: str
) -> bool:
    """Verify a GitHub webhook signature using HMAC-SHA256.

    Uses constant-time comparison to prevent timing attacks.

    Args:
        payload: Raw webhook payload body
        signature: Value of the X-Hub-Signature-256 header
        secret: Webhook secret configured on the GitHub App

    Returns:
        True if signature is valid, False otherwise
    """
    if not isinstance(signature, str) or not signature.startswith(SIGNATURE_PREFIX):
        logger.warning("Invalid signature header format")
        return False

    try:
        body = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        received = signature[len(SIGNATURE_PREFIX):].encode("ascii")
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    except (TypeError, ValueError):
        logger.warning("Failed to decode webhook signature input")
        return False

    is_valid = hmac.compare_digest(received, expected.encode("ascii"))
    if not is_valid:
        logger.warning("Webhook signature verification failed")
    return is_valid


__all__ = [
    "ASSERTION_BACKDATE_SECONDS",
    "ASSERTION_LIFETIME_SECONDS",
    "SIGNATURE_PREFIX",
    "TOKEN_REFRESH_BUFFER",
    "AppAuthenticator",
    "verify_webhook_signature",
]
