"""Data models for GitHub App REST resources.

Only the fields the integration layer consumes are modeled; unknown fields in
provider responses are ignored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Installations and repositories
# ---------------------------------------------------------------------------


class Repository(BaseModel):
    """Repository an installation is authorized for."""

    id: int = Field(..., description="Repository id")
    name: str = Field(..., description="Repository name")
    full_name: str = Field(..., description="owner/name")
    private: bool = Field(default=False, description="Whether the repository is private")
    html_url: Optional[str] = Field(default=None, description="Web URL")
    default_branch: Optional[str] = Field(default=None, description="Default branch name")


class Account(BaseModel):
    """Organization or user account an app is installed on."""

    id: int = Field(..., description="Account id")
    login: str = Field(..., description="Account login")
    type: str = Field(default="Organization", description="Organization or User")
    avatar_url: Optional[str] = Field(default=None, description="Avatar URL")


class Installation(BaseModel):
    """GitHub App installation record."""

    id: int = Field(..., description="Installation id")
    account: Account = Field(..., description="Owning account")
    app_id: Optional[int] = Field(default=None, description="App id")
    repository_selection: Literal["all", "selected"] = Field(
        default="all", description="Repository selection mode"
    )
    permissions: Dict[str, str] = Field(default_factory=dict, description="Granted permissions")
    events: List[str] = Field(default_factory=list, description="Subscribed events")
    created_at: Optional[datetime] = Field(default=None, description="Installation time")
    updated_at: Optional[datetime] = Field(default=None, description="Last update time")
    suspended_at: Optional[datetime] = Field(default=None, description="Suspension time")


class InstallationToken(BaseModel):
    """Installation access token issued by the token endpoint.

    Tokens are replaced on refresh, never mutated.
    """

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., description="Access token")
    expires_at: datetime = Field(..., description="Expiry timestamp")
    permissions: Dict[str, str] = Field(default_factory=dict, description="Permission map")
    repository_selection: Literal["all", "selected"] = Field(
        default="all", description="Repository selection mode"
    )
    repositories: Optional[List[Repository]] = Field(
        default=None, description="Repositories the token is scoped to"
    )

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds of validity left."""
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (expires_at - now).total_seconds()


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimitInfo(BaseModel):
    """Rate limit information from GitHub response headers."""

    limit: int = Field(..., description="Total rate limit")
    remaining: int = Field(..., description="Remaining requests")
    reset: int = Field(..., description="Reset time as epoch seconds")
    used: int = Field(default=0, description="Used requests")

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["RateLimitInfo"]:
        """Parse ``X-RateLimit-*`` headers, or ``None`` if absent or malformed."""
        lowered = {key.lower(): value for key, value in headers.items()}
        remaining = lowered.get("x-ratelimit-remaining")
        if remaining is None:
            return None
        try:
            return cls(
                limit=int(lowered.get("x-ratelimit-limit", 0)),
                remaining=int(remaining),
                reset=int(lowered.get("x-ratelimit-reset", 0)),
                used=int(lowered.get("x-ratelimit-used", 0)),
            )
        except ValueError:
            return None

    @property
    def reset_at(self) -> datetime:
        """Reset time as an aware datetime."""
        return datetime.fromtimestamp(self.reset, tz=timezone.utc)


def parse_repositories(items: Optional[List[Dict[str, Any]]]) -> List[Repository]:
    """Validate a list of raw repository payloads."""
    return [Repository.model_validate(item) for item in items or []]


__all__ = [
    "Account",
    "Installation",
    "InstallationToken",
    "RateLimitInfo",
    "Repository",
    "parse_repositories",
]
