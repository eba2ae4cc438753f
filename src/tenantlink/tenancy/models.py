"""Tenant data models.

A tenant is this service's in-memory record of one GitHub App installation:
its settings, authorized repositories, subscription, usage counters and a
per-repository project data scaffold. Plan limits and entitlements are
defined here as well.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from tenantlink.github.models import Repository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SubscriptionPlan(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class NotificationSettings(BaseModel):
    email: bool = True
    slack: bool = False
    webhook: bool = False
    webhook_url: Optional[str] = None


class SecurityPolicies(BaseModel):
    branch_protection: bool = True
    require_reviews: bool = True
    dismiss_stale_reviews: bool = False
    require_code_owner_reviews: bool = False
    restrict_pushes: bool = False


class TenantFeatures(BaseModel):
    """Tenant-level feature toggles.

    A feature is usable only when it is both toggled on here and included in
    the subscription's entitlements.
    """

    relationship_graph: bool = True
    ai_assistant: bool = True
    compliance_module: bool = True
    security_dashboard: bool = True
    organizational_intelligence: bool = False
    process_asset_framework: bool = True


class TenantSettings(BaseModel):
    """Per-tenant configuration."""

    compliance_standards: List[str] = Field(default_factory=lambda: ["ISO27001", "SOC2"])
    audit_level: Literal["basic", "enhanced", "enterprise"] = "basic"
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    security_policies: SecurityPolicies = Field(default_factory=SecurityPolicies)
    features: TenantFeatures = Field(default_factory=TenantFeatures)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Subscription and usage
# ---------------------------------------------------------------------------


class PlanLimits(BaseModel):
    """Quantitative plan limits; -1 means unlimited."""

    repositories: int = Field(..., description="Maximum repositories")
    users: int = Field(..., description="Maximum users")
    storage: int = Field(..., description="Storage quota in MB")


class Subscription(BaseModel):
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    features: List[str] = Field(default_factory=list, description="Entitled features")
    limits: PlanLimits


class Usage(BaseModel):
    repositories: int = 0
    users: int = 1
    storage: int = Field(default=0, description="Project data size in KB")
    api_calls: int = 0
    last_activity: datetime = Field(default_factory=_utcnow)


_FREE_FEATURES = ["relationship_graph", "compliance_module", "basic_support"]
_PRO_FEATURES = _FREE_FEATURES + [
    "ai_assistant",
    "security_dashboard",
    "process_asset_framework",
    "priority_support",
]
_ENTERPRISE_FEATURES = _PRO_FEATURES + [
    "organizational_intelligence",
    "custom_compliance",
    "sso",
    "advanced_analytics",
]

PLAN_FEATURES: Dict[SubscriptionPlan, List[str]] = {
    SubscriptionPlan.FREE: _FREE_FEATURES,
    SubscriptionPlan.PRO: _PRO_FEATURES,
    SubscriptionPlan.ENTERPRISE: _ENTERPRISE_FEATURES,
}

PLAN_LIMITS: Dict[SubscriptionPlan, PlanLimits] = {
    SubscriptionPlan.FREE: PlanLimits(repositories=5, users=10, storage=1000),
    SubscriptionPlan.PRO: PlanLimits(repositories=50, users=100, storage=5000),
    SubscriptionPlan.ENTERPRISE: PlanLimits(repositories=-1, users=-1, storage=10000),
}

ENTERPRISE_MIN_REPOSITORIES = 10
PRO_MIN_REPOSITORIES = 5


def classify_plan(organization_type: str, repository_count: int) -> SubscriptionPlan:
    """Pick a plan from account type and repository count."""
    if organization_type == "Organization" and repository_count >= ENTERPRISE_MIN_REPOSITORIES:
        return SubscriptionPlan.ENTERPRISE
    if repository_count >= PRO_MIN_REPOSITORIES:
        return SubscriptionPlan.PRO
    return SubscriptionPlan.FREE


def subscription_for(plan: SubscriptionPlan) -> Subscription:
    return Subscription(
        plan=plan,
        status=SubscriptionStatus.ACTIVE,
        features=list(PLAN_FEATURES[plan]),
        limits=PLAN_LIMITS[plan].model_copy(),
    )


# ---------------------------------------------------------------------------
# Project data scaffold
# ---------------------------------------------------------------------------


def project_scaffold(repository: Repository) -> Dict[str, Any]:
    """Empty project data document for a newly authorized repository."""
    return {
        "project_name": repository.name,
        "repository": repository.full_name,
        "documents": {},
        "requirements": [],
        "test_cases": [],
        "risks": [],
        "configuration_items": [],
        "links": {},
        "audit_log": [],
        "process_assets": [],
        "security_alerts": [],
        "organizational_data": {
            "projects": [],
            "assets": [],
            "metrics": {
                "total_projects": 1,
                "total_assets": 0,
                "avg_asset_reuse": 0,
                "organizational_maturity_level": 1,
            },
        },
    }


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


class Tenant(BaseModel):
    """In-memory record for one installation."""

    installation_id: int = Field(..., description="Installation id (primary key)")
    organization_login: str = Field(..., description="Account login")
    organization_type: Literal["Organization", "User"] = Field(
        default="Organization", description="Account type"
    )
    settings: TenantSettings = Field(default_factory=TenantSettings)
    repositories: List[Repository] = Field(default_factory=list)
    subscription: Subscription
    usage: Usage = Field(default_factory=Usage)
    project_data: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Project data keyed by repository full name"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = Field(default=None, description="Archive timestamp")

    @property
    def repository_names(self) -> List[str]:
        return [repo.full_name for repo in self.repositories]

    def touch(self) -> None:
        self.updated_at = _utcnow()


__all__ = [
    "ENTERPRISE_MIN_REPOSITORIES",
    "PLAN_FEATURES",
    "PLAN_LIMITS",
    "PRO_MIN_REPOSITORIES",
    "NotificationSettings",
    "PlanLimits",
    "SecurityPolicies",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "Tenant",
    "TenantFeatures",
    "TenantSettings",
    "Usage",
    "classify_plan",
    "project_scaffold",
    "subscription_for",
]
