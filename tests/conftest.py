"""Shared fixtures for tenantlink tests.

The GitHub REST API is faked with ``httpx.MockTransport``: ``FakeGitHub``
maps (method, path) to canned responses and records every request so tests
can assert on call counts and headers.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tenantlink.configuration.settings import AppSettings
from tenantlink.github.app_auth import AppAuthenticator
from tenantlink.github.client import RateLimitedClient

API_URL = "https://api.github.test"
APP_ID = "12345"
WEBHOOK_SECRET = "test-webhook-secret-0123456789"
NOW = 1_700_000_000.0

ResponseSpec = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def sign(body: Union[bytes, str], secret: str = WEBHOOK_SECRET) -> str:
    """Compute the X-Hub-Signature-256 value for a body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def repo_payload(repo_id: int, full_name: str, private: bool = False) -> Dict[str, Any]:
    return {
        "id": repo_id,
        "name": full_name.split("/", 1)[1],
        "full_name": full_name,
        "private": private,
        "html_url": f"https://github.com/{full_name}",
    }


def make_repos(count: int, owner: str = "acme") -> List[Dict[str, Any]]:
    return [repo_payload(1000 + i, f"{owner}/repo-{i}") for i in range(count)]


def installation_payload(
    installation_id: int = 555,
    login: str = "Acme",
    account_type: str = "Organization",
    suspended_at: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": installation_id,
        "account": {"id": 9000 + installation_id, "login": login, "type": account_type},
        "app_id": int(APP_ID),
        "repository_selection": "selected",
        "permissions": {"contents": "read", "metadata": "read"},
        "events": ["push", "pull_request"],
        "suspended_at": suspended_at,
    }


def token_payload(
    token: str = "ghs_installation_token", lifetime: timedelta = timedelta(hours=1)
) -> Dict[str, Any]:
    expires_at = datetime.fromtimestamp(NOW, tz=timezone.utc) + lifetime
    return {
        "token": token,
        "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "permissions": {"contents": "read", "metadata": "read"},
        "repository_selection": "selected",
    }


def rate_limit_headers(remaining: int, reset: float, limit: int = 5000) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(int(reset)),
        "X-RateLimit-Used": str(limit - remaining),
    }


# ---------------------------------------------------------------------------
# Fake GitHub API
# ---------------------------------------------------------------------------


class FakeGitHub:
    """Programmable GitHub REST API for httpx.MockTransport."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[ResponseSpec]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: ResponseSpec) -> None:
        """Queue responses for a route; the last one repeats."""
        self.routes[(method.upper(), path)] = list(responses)

    def add_json(self, method: str, path: str, body: Any, status: int = 200, **kwargs) -> None:
        self.add(method, path, httpx.Response(status, json=body, **kwargs))

    def add_installation(
        self,
        installation_id: int = 555,
        repositories: Optional[List[Dict[str, Any]]] = None,
        *,
        login: str = "Acme",
        account_type: str = "Organization",
        token: str = "ghs_installation_token",
    ) -> None:
        """Register token, repository and installation routes for one installation."""
        self.add_json(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            token_payload(token),
            status=201,
        )
        repos = repositories if repositories is not None else make_repos(3)
        self.add_json(
            "GET",
            "/installation/repositories",
            {"total_count": len(repos), "repositories": repos},
        )
        self.add_json(
            "GET",
            f"/app/installations/{installation_id}",
            installation_payload(installation_id, login, account_type),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        spec = queue.pop(0) if len(queue) > 1 else queue[0]
        return spec(request) if callable(spec) else spec

    def count(self, method: str, path: str) -> int:
        return sum(
            1 for call in self.calls if call.method == method.upper() and call.url.path == path
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def public_key_pem(rsa_key) -> str:
    return rsa_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture
def app_settings(private_key_pem) -> AppSettings:
    return AppSettings(
        app_id=APP_ID,
        private_key=private_key_pem,
        webhook_secret=WEBHOOK_SECRET,
        api_url=API_URL,
    )


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def client(github, sleeper) -> RateLimitedClient:
    return RateLimitedClient(
        base_url=API_URL,
        transport=github.transport,
        sleep=sleeper,
        clock=lambda: NOW,
    )


@pytest.fixture
def authenticator(app_settings, client) -> AppAuthenticator:
    return AppAuthenticator(app_settings.credential(), client, clock=lambda: NOW)

