"""Owned service context.

All mutable state (token cache, tenant map, event history) lives in objects
created here once per service instance and passed by reference. There is no
module-level state, so tests can build a fresh context per case.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from tenantlink.configuration.settings import AppSettings
from tenantlink.github.app_auth import AppAuthenticator
from tenantlink.github.client import RateLimitedClient
from tenantlink.tenancy.project_sync import ProjectDataSynchronizer
from tenantlink.tenancy.registry import TenantRegistry
from tenantlink.webhook.router import EventRouter


@dataclass
class ServiceContext:
    """Components shared by the service facade and the webhook router."""

    settings: AppSettings
    client: RateLimitedClient
    authenticator: AppAuthenticator
    registry: TenantRegistry
    synchronizer: ProjectDataSynchronizer
    router: EventRouter

    @classmethod
    def build(
        cls,
        settings: AppSettings,
        *,
        client: Optional[RateLimitedClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ServiceContext":
        """Wire every component from settings.

        Raises:
            ConfigurationError: If credential material is missing or invalid
        """
        credential = settings.credential()
        client = client or RateLimitedClient.from_settings(settings, transport=transport)
        authenticator = AppAuthenticator(credential, client)
        registry = TenantRegistry(authenticator)
        synchronizer = ProjectDataSynchronizer(authenticator, registry)
        router = EventRouter(
            authenticator,
            registry,
            synchronizer,
            history_size=settings.history_size,
            deduplicate_deliveries=settings.deduplicate_deliveries,
            real_time_sync=settings.enable_real_time_sync,
            compliance_checks=settings.enable_compliance_checks,
        )
        return cls(
            settings=settings,
            client=client,
            authenticator=authenticator,
            registry=registry,
            synchronizer=synchronizer,
            router=router,
        )


__all__ = ["ServiceContext"]
