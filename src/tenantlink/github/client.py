"""Rate-limit aware GitHub REST client built on httpx.

This module implements the outbound HTTP layer used for every call to the
GitHub API. It attaches bearer credentials and the pinned API headers, waits
out primary and secondary rate limits using the reset headers, and retries
transient failures with exponential backoff.

Only idempotent requests are retried on rate limiting. Mutating requests are
retried solely on network errors and 5xx responses so that side effects are
never duplicated because of a 4xx.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from tenantlink.configuration.settings import (
    APP_VERSION,
    DEFAULT_API_URL,
    DEFAULT_API_VERSION,
    AppSettings,
)
from tenantlink.errors import GitHubAPIError, RateLimitExceeded, TransientNetworkError

from .models import RateLimitInfo

logger = logging.getLogger(__name__)

LOW_QUOTA_THRESHOLD = 100
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


BACKOFF_BASE_DELAY = 1.0
BACKOFF_MAX_DELAY = 60.0


def backoff_delay(retry: int) -> float:
    """Delay before the given transient retry: 1s, 2s, 4s, ... capped at 60s."""
    return min(BACKOFF_BASE_DELAY * (2 ** retry), BACKOFF_MAX_DELAY)


@dataclass
class ClientStats:
    """Counters for requests issued by a client instance."""

    requests: int = 0
    retries: int = 0
    rate_limited: int = 0
    failures: int = 0


# ---------------------------------------------------------------------------
# Rate Limited Client
# ---------------------------------------------------------------------------


class RateLimitedClient:
    """Outbound GitHub REST client with rate limit handling and retries.

    Attributes:
        base_url: API base URL relative paths are joined onto
        max_retries: Default retry budget per request
        stats: Request counters
        last_rate_limit: Most recent rate limit headers seen

    Example:
        >>> async with RateLimitedClient() as client:
        ...     repos = await client.request(
        ...         "/installation/repositories", token=installation_token
        ...     )
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_API_URL,
        user_agent: str = f"tenantlink/{APP_VERSION}",
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.api_version = api_version
        self.max_retries = max_retries
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, transport=transport)
        self._sleep = sleep
        self._clock = clock
        self._low_quota_warned_reset: Optional[int] = None

        self.stats = ClientStats()
        self.last_rate_limit: Optional[RateLimitInfo] = None

    @classmethod
    def from_settings(cls, settings: AppSettings, **kwargs: Any) -> "RateLimitedClient":
        """Create a client configured from application settings."""
        return cls(
            base_url=settings.api_url,
            user_agent=settings.user_agent,
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            **kwargs,
        )

    async def __aenter__(self) -> "RateLimitedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        token: Optional[str] = None,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retries: Optional[int] = None,
        idempotent: Optional[bool] = None,
    ) -> Any:
        """Issue a request, waiting out rate limits and retrying transient errors.

        Args:
            url: Absolute URL or path relative to ``base_url``
            method: HTTP method
            token: Bearer credential (app assertion or installation token)
            json: JSON request body
            params: Query parameters
            headers: Extra headers, applied over the defaults
            retries: Retry budget; defaults to ``max_retries``
            idempotent: Whether rate-limited responses may be retried.
                Defaults to True for non-mutating methods.

        Returns:
            Parsed JSON body, or ``None`` for 204 and empty responses

        Raises:
            RateLimitExceeded: Rate limited after the retry budget was spent
            TransientNetworkError: Network or 5xx failures exhausted the budget
            GitHubAPIError: Any other 4xx response
        """
        method = method.upper()
        retries = self.max_retries if retries is None else retries
        if idempotent is None:
            idempotent = method not in MUTATING_METHODS

        target = self._url(url)
        request_headers = self._build_headers(token, headers)
        attempt = 0
        transient_retries = 0

        while True:
            self.stats.requests += 1
            try:
                response = await self._client.request(
                    method, target, headers=request_headers, json=json, params=params
                )
            except httpx.TransportError as exc:
                if attempt >= retries:
                    self.stats.failures += 1
                    raise TransientNetworkError(
                        f"{method} {target} failed after {attempt + 1} attempts: {exc}",
                        details={"method": method, "url": target, "attempts": attempt + 1},
                    ) from exc
                delay = backoff_delay(transient_retries)
                logger.warning(
                    f"Network error calling GitHub, retrying in {delay:.1f}s: {exc}",
                    extra={"method": method, "url": target, "attempt": attempt + 1},
                )
                await self._retry_after(delay)
                attempt += 1
                transient_retries += 1
                continue

            rate_limit = RateLimitInfo.from_headers(response.headers)
            if rate_limit is not None:
                self._record_rate_limit(rate_limit)

            if self._is_rate_limited(response, rate_limit):
                self.stats.rate_limited += 1
                wait, reset_at = self._rate_limit_wait(response, rate_limit)
                if not idempotent or attempt >= retries:
                    self.stats.failures += 1
                    raise RateLimitExceeded(
                        reset_at,
                        status_code=response.status_code,
                        details={"method": method, "url": target},
                    )
                logger.warning(
                    f"GitHub rate limit hit, waiting {wait:.0f}s until reset",
                    extra={
                        "method": method,
                        "url": target,
                        "reset_at": reset_at.isoformat(),
                        "attempt": attempt + 1,
                    },
                )
                await self._retry_after(wait)
                attempt += 1
                continue

            if response.status_code >= 500:
                if attempt >= retries:
                    self.stats.failures += 1
                    raise TransientNetworkError(
                        f"GitHub API error: {response.status_code} {_error_message(response)}",
                        details={
                            "method": method,
                            "url": target,
                            "status_code": response.status_code,
                            "attempts": attempt + 1,
                        },
                    )
                delay = backoff_delay(transient_retries)
                logger.warning(
                    f"GitHub returned {response.status_code}, retrying in {delay:.1f}s",
                    extra={"method": method, "url": target, "attempt": attempt + 1},
                )
                await self._retry_after(delay)
                attempt += 1
                transient_retries += 1
                continue

            if response.status_code >= 400:
                self.stats.failures += 1
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code} {_error_message(response)}",
                    status_code=response.status_code,
                    details={"method": method, "url": target},
                )

            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    async def paginate(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        item_key: Optional[str] = None,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint.

        Args:
            url: Endpoint URL or path
            token: Bearer credential
            params: Extra query parameters
            item_key: Key holding the items when the endpoint wraps them in an
                object (e.g. ``repositories``); ``None`` for bare lists
            per_page: Page size

        Returns:
            All items across pages
        """
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {}, per_page=per_page, page=page)
            data = await self.request(url, token=token, params=query)
            batch = (data or {}).get(item_key, []) if item_key else (data or [])
            items.extend(batch)
            if len(batch) < per_page:
                return items
            page += 1

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def _build_headers(
        self, token: Optional[str], extra: Optional[Dict[str, str]]
    ) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.api_version,
            "User-Agent": self.user_agent,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        headers.update(extra or {})
        return headers

    async def _retry_after(self, delay: float) -> None:
        self.stats.retries += 1
        await self._sleep(delay)

    @staticmethod
    def _is_rate_limited(response: httpx.Response, rate_limit: Optional[RateLimitInfo]) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and rate_limit is not None
            and rate_limit.remaining == 0
        )

    def _rate_limit_wait(
        self, response: httpx.Response, rate_limit: Optional[RateLimitInfo]
    ) -> tuple[float, datetime]:
        now = self._clock()
        if rate_limit is not None and rate_limit.reset > 0:
            wait = max(rate_limit.reset - now, 1.0)
            return wait, rate_limit.reset_at

        retry_after = response.headers.get("retry-after")
        try:
            wait = max(float(retry_after), 1.0) if retry_after else 1.0
        except ValueError:
            wait = 1.0
        return wait, datetime.fromtimestamp(now + wait, tz=timezone.utc)

    def _record_rate_limit(self, rate_limit: RateLimitInfo) -> None:
        self.last_rate_limit = rate_limit
        if (
            rate_limit.remaining < LOW_QUOTA_THRESHOLD
            and self._low_quota_warned_reset != rate_limit.reset
        ):
            self._low_quota_warned_reset = rate_limit.reset
            logger.warning(
                f"GitHub API rate limit low: {rate_limit.remaining} requests remaining",
                extra={
                    "remaining": rate_limit.remaining,
                    "limit": rate_limit.limit,
                    "reset_at": rate_limit.reset_at.isoformat(),
                },
            )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase


__all__ = [
    "LOW_QUOTA_THRESHOLD",
    "MUTATING_METHODS",
    "ClientStats",
    "RateLimitedClient",
    "backoff_delay",
]
