"""Multi-tenant state for GitHub App installations.

Example:
    >>> from tenantlink.tenancy import TenantRegistry
    >>>
    >>> registry = TenantRegistry(authenticator)
    >>> tenant = await registry.handle_installation(created_event)
    >>> tenant.subscription.plan
    <SubscriptionPlan.ENTERPRISE: 'enterprise'>
"""

from .models import (
    PLAN_FEATURES,
    PLAN_LIMITS,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    Tenant,
    TenantFeatures,
    TenantSettings,
    Usage,
    classify_plan,
    project_scaffold,
)
from .project_sync import ProjectDataSynchronizer, touches_project_data
from .registry import TenantRegistry

__all__ = [
    "PLAN_FEATURES",
    "PLAN_LIMITS",
    "ProjectDataSynchronizer",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "Tenant",
    "TenantFeatures",
    "TenantRegistry",
    "TenantSettings",
    "Usage",
    "classify_plan",
    "project_scaffold",
    "touches_project_data",
]
