"""GitHub App service facade.

``TenantLinkService`` is the entry point for the rest of the application. It
rebuilds tenant state at startup by replaying the app's installations,
exposes read models over tenants and webhook activity, passes webhook
deliveries to the router, and owns shutdown.

Example:
    >>> service = TenantLinkService(load_settings())
    >>> await service.initialize()
    >>> overview = await service.get_organization_overview(555)
    >>> await service.aclose()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field

from tenantlink.configuration.settings import AppSettings
from tenantlink.context import ServiceContext
from tenantlink.errors import (
    NotFoundError,
    ServiceNotInitializedError,
    TenantLinkError,
    WebhooksDisabledError,
)
from tenantlink.github.models import Installation, Repository
from tenantlink.tenancy.models import SubscriptionStatus, Tenant
from tenantlink.webhook.models import ProcessedEvent, ProcessingStats, WebhookEvent

logger = logging.getLogger(__name__)

SECURITY_PENALTY_PER_OPEN_ALERT = 10


# ---------------------------------------------------------------------------
# Read Models
# ---------------------------------------------------------------------------


class ProjectSummary(BaseModel):
    total_projects: int = Field(..., description="Repositories with project data")
    active_projects: int = Field(..., description="Projects with requirements or tests")
    compliance_score: int = Field(..., description="Average requirement test coverage (0-100)")
    security_score: int = Field(..., description="100 minus a penalty per open alert")
    open_security_alerts: int = Field(default=0, description="Open alerts across projects")
    last_activity: datetime = Field(..., description="Tenant's last recorded activity")


class UsageSummary(BaseModel):
    api_calls_today: int = 0
    storage_used: int = Field(default=0, description="Project data size in KB")
    features_used: List[str] = Field(default_factory=list)


class OrganizationOverview(BaseModel):
    installation: Installation
    tenant: Tenant
    repositories: List[Repository]
    project_summary: ProjectSummary
    usage: UsageSummary


class AppMetrics(BaseModel):
    total_installations: int = 0
    active_installations: int = 0
    total_repositories: int = 0
    total_users: int = 0
    api_calls_today: int = 0
    webhook_events: int = 0
    error_rate: float = Field(default=0.0, description="Percentage of failed webhook events")
    signature_failures: int = 0
    cached_tokens: int = 0
    outbound_requests: int = 0
    rate_limit_remaining: Optional[int] = None


# ---------------------------------------------------------------------------
# Service Facade
# ---------------------------------------------------------------------------


class TenantLinkService:
    """Orchestrates startup, queries, webhook handling and shutdown."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        context: Optional[ServiceContext] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.context = context or ServiceContext.build(settings, transport=transport)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def authenticator(self):
        return self.context.authenticator

    @property
    def registry(self):
        return self.context.registry

    @property
    def router(self):
        return self.context.router

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def initialize(self) -> None:
        """Validate credentials and rebuild tenants from existing installations.

        Each installation is replayed as a synthetic ``created`` event. A
        failure for one installation is logged and skipped; a failure to list
        installations aborts startup.

        Raises:
            ConfigurationError: If the private key cannot sign
            AuthenticationError: If GitHub rejects the app
        """
        async with self._init_lock:
            if self._initialized:
                return

            self.authenticator.mint_assertion()
            installations = await self.authenticator.list_installations()

            restored = 0
            for installation in installations:
                try:
                    await self.registry.handle_installation(_replay_event(installation))
                    restored += 1
                except TenantLinkError as exc:
                    logger.error(
                        f"Failed to restore installation {installation.id}: {exc}",
                        extra={
                            "installation_id": installation.id,
                            "organization": installation.account.login,
                            "error_code": exc.code,
                        },
                    )

            self._initialized = True
            logger.info(
                f"GitHub App service initialized with {restored}/{len(installations)} installations",
                extra={"restored": restored, "installations": len(installations)},
            )

    async def shutdown(self) -> None:
        """Cancel background work, drop cached tokens and mark uninitialized."""
        await self.router.cancel_pending()
        self.authenticator.clear_token_cache()
        self._initialized = False
        logger.info("GitHub App service shut down")

    async def aclose(self) -> None:
        """Shut down and release the HTTP client."""
        await self.shutdown()
        await self.context.client.aclose()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ServiceNotInitializedError()

    # -----------------------------------------------------------------------
    # Webhooks
    # -----------------------------------------------------------------------

    async def handle_webhook(
        self,
        event_type: str,
        payload: Union[bytes, str],
        signature: Optional[str],
        delivery_id: Optional[str] = None,
    ) -> ProcessedEvent:
        """Pass a webhook delivery to the router.

        Raises:
            ServiceNotInitializedError: Before ``initialize`` completed
            WebhooksDisabledError: If webhooks are disabled in settings
            SignatureVerificationFailure: If the signature does not match
        """
        self._require_initialized()
        if not self.settings.enable_webhooks:
            raise WebhooksDisabledError()
        return await self.router.process_webhook(event_type, payload, signature, delivery_id)

    def get_webhook_history(
        self, installation_id: Optional[int] = None, limit: int = 100
    ) -> List[ProcessedEvent]:
        return self.router.get_event_history(installation_id, limit)

    def get_webhook_stats(self) -> ProcessingStats:
        return self.router.get_processing_stats()

    # -----------------------------------------------------------------------
    # Overviews and metrics
    # -----------------------------------------------------------------------

    async def get_organization_overview(self, installation_id: int) -> OrganizationOverview:
        """Combine provider installation data with tenant state and scores.

        Raises:
            TenantNotFoundError: If no tenant exists for the installation
        """
        self._require_initialized()
        tenant = self.registry.get_tenant(installation_id)
        installation = await self.authenticator.get_installation(installation_id)
        return OrganizationOverview(
            installation=installation,
            tenant=tenant,
            repositories=list(tenant.repositories),
            project_summary=summarize_projects(tenant),
            usage=summarize_usage(tenant),
        )

    async def get_all_installations_overview(self) -> List[OrganizationOverview]:
        """Overview for every tenant; tenants that fail to load are skipped."""
        self._require_initialized()
        overviews = []
        for tenant in self.registry.list_tenants():
            try:
                overviews.append(await self.get_organization_overview(tenant.installation_id))
            except TenantLinkError as exc:
                logger.error(
                    f"Failed to build overview for installation {tenant.installation_id}: {exc}",
                    extra={"installation_id": tenant.installation_id, "error_code": exc.code},
                )
        return overviews

    def get_app_metrics(self) -> AppMetrics:
        tenants = self.registry.list_tenants()
        stats = self.router.get_processing_stats()
        rate_limit = self.context.client.last_rate_limit
        return AppMetrics(
            total_installations=len(tenants),
            active_installations=sum(
                1 for t in tenants if t.subscription.status == SubscriptionStatus.ACTIVE
            ),
            total_repositories=sum(len(t.repositories) for t in tenants),
            total_users=sum(t.usage.users for t in tenants),
            api_calls_today=sum(t.usage.api_calls for t in tenants),
            webhook_events=stats.total_events,
            error_rate=100.0 - stats.success_rate if stats.total_events else 0.0,
            signature_failures=stats.signature_failures,
            cached_tokens=self.authenticator.cached_token_count,
            outbound_requests=self.context.client.stats.requests,
            rate_limit_remaining=rate_limit.remaining if rate_limit else None,
        )

    # -----------------------------------------------------------------------
    # Tenant operations
    # -----------------------------------------------------------------------

    def update_tenant_settings(self, installation_id: int, changes: Dict[str, Any]) -> Tenant:
        return self.registry.update_tenant_settings(installation_id, changes)

    def has_feature_access(self, installation_id: int, feature: str) -> bool:
        return self.registry.has_feature_access(installation_id, feature)

    def get_project_data(self, repository_full_name: str) -> Optional[Dict[str, Any]]:
        return self.registry.get_project_data(repository_full_name)

    def update_project_data(self, repository_full_name: str, data: Dict[str, Any]) -> Tenant:
        """Replace a repository's project data document.

        Raises:
            NotFoundError: If no tenant owns the repository
        """
        return self.registry.set_project_data(repository_full_name, data)

    async def installation_request(
        self, installation_id: int, path: str, *, method: str = "GET", **kwargs: Any
    ) -> Any:
        """Call a tenant-scoped GitHub endpoint as the installation."""
        self.registry.get_tenant(installation_id)
        return await self.authenticator.installation_request(
            installation_id, path, method=method, **kwargs
        )

    async def sync_repository(self, repository_full_name: str) -> Optional[Dict[str, Any]]:
        """Re-read a repository's project data document now.

        Raises:
            NotFoundError: If no tenant owns the repository
        """
        tenant = self.registry.get_tenant_by_repository(repository_full_name)
        if tenant is None:
            raise NotFoundError(
                f"No tenant found for repository {repository_full_name}",
                details={"repository": repository_full_name},
            )
        document = await self.context.synchronizer.sync_project_data(repository_full_name)
        self.registry.update_usage(tenant.installation_id, {})
        return document


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _replay_event(installation: Installation) -> WebhookEvent:
    return WebhookEvent(
        event_type="installation",
        action="created",
        installation_id=installation.id,
        payload={"action": "created", "installation": installation.model_dump(mode="json")},
    )


def summarize_projects(tenant: Tenant) -> ProjectSummary:
    """Derive project counts and scores from a tenant's project data."""
    projects = list(tenant.project_data.values())
    total = len(projects)
    active = sum(1 for p in projects if p.get("requirements") or p.get("test_cases"))

    coverage_total = 0.0
    open_alerts = 0
    for project in projects:
        requirements = project.get("requirements") or []
        links = project.get("links") or {}
        if requirements:
            covered = sum(1 for req in requirements if _has_linked_tests(req, links))
            coverage_total += covered / len(requirements) * 100
        open_alerts += sum(
            1 for alert in project.get("security_alerts") or [] if alert.get("state") == "open"
        )

    return ProjectSummary(
        total_projects=total,
        active_projects=active,
        compliance_score=round(coverage_total / max(total, 1)),
        security_score=max(0, 100 - SECURITY_PENALTY_PER_OPEN_ALERT * open_alerts),
        open_security_alerts=open_alerts,
        last_activity=tenant.usage.last_activity,
    )


def _has_linked_tests(requirement: Any, links: Dict[str, Any]) -> bool:
    if not isinstance(requirement, dict):
        return False
    req_id = requirement.get("id")
    link = links.get(req_id) or links.get(str(req_id)) or {}
    return bool(link.get("tests")) if isinstance(link, dict) else False


def summarize_usage(tenant: Tenant) -> UsageSummary:
    features = tenant.settings.features.model_dump()
    return UsageSummary(
        api_calls_today=tenant.usage.api_calls,
        storage_used=tenant.usage.storage,
        features_used=[name for name, enabled in features.items() if enabled],
    )


__all__ = [
    "AppMetrics",
    "OrganizationOverview",
    "ProjectSummary",
    "TenantLinkService",
    "UsageSummary",
    "summarize_projects",
    "summarize_usage",
]
