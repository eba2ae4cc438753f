"""Tenant registry: installation lifecycle and repository index.

The registry owns every tenant record and the repository full name to
installation id index. A repository appears in the index exactly when it is
in its tenant's repository list; every add and remove updates both sides.

All mutations happen after the last suspension point of a handler, so a
handler's changes are applied atomically with respect to other in-flight
deliveries on the same event loop.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from tenantlink.errors import (
    NotFoundError,
    ProcessorError,
    TenantNotFoundError,
    UnsupportedEventActionError,
)
from tenantlink.github.models import Installation, Repository, parse_repositories

from .models import (
    SubscriptionStatus,
    Tenant,
    TenantSettings,
    Usage,
    classify_plan,
    project_scaffold,
    subscription_for,
)

if TYPE_CHECKING:
    from tenantlink.github.app_auth import AppAuthenticator
    from tenantlink.webhook.models import WebhookEvent

logger = logging.getLogger(__name__)


class TenantRegistry:
    """Owns tenant records and the repository index.

    Example:
        >>> registry = TenantRegistry(authenticator)
        >>> tenant = await registry.handle_installation(event)
        >>> registry.get_tenant_by_repository("acme/widgets")
    """

    def __init__(self, authenticator: AppAuthenticator):
        self.authenticator = authenticator
        self._tenants: Dict[int, Tenant] = {}
        self._repository_index: Dict[str, int] = {}
        self._archive: List[Tenant] = []

    # -----------------------------------------------------------------------
    # Lifecycle events
    # -----------------------------------------------------------------------

    async def handle_installation(self, event: WebhookEvent) -> Tenant:
        """Apply an ``installation`` event.

        Args:
            event: Event with action created, deleted, suspend or unsuspend

        Returns:
            The created or updated tenant, or the archived copy on deletion

        Raises:
            UnsupportedEventActionError: For any other action
            TenantNotFoundError: If the tenant is unknown for delete/suspend
        """
        installation = _installation_from(event)
        action = event.action

        if action == "created":
            return await self._create_tenant(installation)
        if action == "deleted":
            return self._delete_tenant(installation.id)
        if action == "suspend":
            return self._set_status(installation.id, SubscriptionStatus.SUSPENDED)
        if action == "unsuspend":
            return self._set_status(installation.id, SubscriptionStatus.ACTIVE)

        raise UnsupportedEventActionError(
            f"Unknown installation action: {action}",
            details={"installation_id": installation.id, "action": action},
        )

    async def handle_repository_changes(self, event: WebhookEvent) -> Tenant:
        """Apply an ``installation_repositories`` event (added or removed)."""
        installation = _installation_from(event)

        if event.action == "added":
            repositories = parse_repositories(event.payload.get("repositories_added"))
            return self._add_repositories(installation.id, repositories)
        if event.action == "removed":
            repositories = parse_repositories(event.payload.get("repositories_removed"))
            return self._remove_repositories(installation.id, repositories)

        raise UnsupportedEventActionError(
            f"Unknown repository action: {event.action}",
            details={"installation_id": installation.id, "action": event.action},
        )

    async def _create_tenant(self, installation: Installation) -> Tenant:
        existing = self._tenants.get(installation.id)
        suspended = installation.suspended_at is not None
        if suspended:
            # GitHub refuses installation tokens while an installation is suspended
            repositories = list(existing.repositories) if existing else []
        else:
            repositories = await self.authenticator.get_installation_repositories(installation.id)

        plan = classify_plan(installation.account.type, len(repositories))
        organization_type = (
            "Organization" if installation.account.type == "Organization" else "User"
        )

        if existing is not None:
            settings = existing.settings.model_copy(deep=True)
            usage = existing.usage.model_copy(update={"repositories": len(repositories)})
            created_at = existing.created_at
            carried = dict(existing.project_data)
            self._unindex(existing)
        else:
            settings = TenantSettings()
            usage = Usage(repositories=len(repositories))
            created_at = datetime.now(timezone.utc)
            carried = {}

        subscription = subscription_for(plan)
        if suspended:
            subscription.status = SubscriptionStatus.SUSPENDED

        tenant = Tenant(
            installation_id=installation.id,
            organization_login=installation.account.login,
            organization_type=organization_type,
            settings=settings,
            repositories=list(repositories),
            subscription=subscription,
            usage=usage,
            created_at=created_at,
        )
        for repo in repositories:
            tenant.project_data[repo.full_name] = carried.get(repo.full_name) or project_scaffold(repo)

        self._tenants[installation.id] = tenant
        self._index(tenant, repositories)

        logger.info(
            f"{'Rebuilt' if existing else 'Created'} tenant for {installation.account.login}",
            extra={
                "installation_id": installation.id,
                "organization": installation.account.login,
                "plan": plan.value,
                "status": subscription.status.value,
                "repository_count": len(repositories),
            },
        )
        return tenant

    def _delete_tenant(self, installation_id: int) -> Tenant:
        tenant = self.get_tenant(installation_id)
        self._unindex(tenant)
        del self._tenants[installation_id]

        archived = tenant.model_copy(
            update={"deleted_at": datetime.now(timezone.utc)}, deep=True
        )
        self._archive.append(archived)

        logger.info(
            f"Archived tenant for {tenant.organization_login}",
            extra={"installation_id": installation_id, "organization": tenant.organization_login},
        )
        return archived

    def _set_status(self, installation_id: int, status: SubscriptionStatus) -> Tenant:
        tenant = self.get_tenant(installation_id)
        tenant.subscription.status = status
        tenant.touch()
        logger.info(
            f"Tenant {tenant.organization_login} is now {status.value}",
            extra={"installation_id": installation_id, "status": status.value},
        )
        return tenant

    def _add_repositories(self, installation_id: int, repositories: Sequence[Repository]) -> Tenant:
        tenant = self.get_tenant(installation_id)
        known_ids = {repo.id for repo in tenant.repositories}

        added = []
        for repo in repositories:
            if repo.id in known_ids:
                continue
            known_ids.add(repo.id)
            tenant.repositories.append(repo)
            tenant.project_data.setdefault(repo.full_name, project_scaffold(repo))
            added.append(repo)
        self._index(tenant, added)

        tenant.usage.repositories = len(tenant.repositories)
        tenant.touch()
        logger.info(
            f"Added {len(added)} repositories to {tenant.organization_login}",
            extra={"installation_id": installation_id, "repositories": [r.full_name for r in added]},
        )
        return tenant

    def _remove_repositories(
        self, installation_id: int, repositories: Sequence[Repository]
    ) -> Tenant:
        tenant = self.get_tenant(installation_id)
        removed_ids = {repo.id for repo in repositories}
        removed_names = {repo.full_name for repo in repositories}

        kept = []
        for repo in tenant.repositories:
            if repo.id in removed_ids:
                removed_names.add(repo.full_name)
            else:
                kept.append(repo)
        tenant.repositories = kept

        for full_name in removed_names:
            if self._repository_index.get(full_name) == installation_id:
                del self._repository_index[full_name]
            tenant.project_data.pop(full_name, None)

        tenant.usage.repositories = len(tenant.repositories)
        tenant.touch()
        logger.info(
            f"Removed {len(removed_names)} repositories from {tenant.organization_login}",
            extra={"installation_id": installation_id, "repositories": sorted(removed_names)},
        )
        return tenant

    def _index(self, tenant: Tenant, repositories: Iterable[Repository]) -> None:
        for repo in repositories:
            self._repository_index[repo.full_name] = tenant.installation_id

    def _unindex(self, tenant: Tenant) -> None:
        for repo in tenant.repositories:
            if self._repository_index.get(repo.full_name) == tenant.installation_id:
                del self._repository_index[repo.full_name]

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def get_tenant(self, installation_id: int) -> Tenant:
        """Return the tenant for an installation.

        Raises:
            TenantNotFoundError: If no tenant is registered
        """
        tenant = self._tenants.get(installation_id)
        if tenant is None:
            raise TenantNotFoundError(installation_id)
        return tenant

    def get_tenant_by_repository(self, repository_full_name: str) -> Optional[Tenant]:
        """Return the tenant owning a repository, or None if no tenant does."""
        installation_id = self._repository_index.get(repository_full_name)
        if installation_id is None:
            return None
        return self._tenants.get(installation_id)

    def list_tenants(self) -> List[Tenant]:
        return list(self._tenants.values())

    def get_archived_tenants(self) -> List[Tenant]:
        return list(self._archive)

    def __len__(self) -> int:
        return len(self._tenants)

    # -----------------------------------------------------------------------
    # Settings, usage and features
    # -----------------------------------------------------------------------

    def update_tenant_settings(self, installation_id: int, changes: Dict[str, Any]) -> Tenant:
        """Shallow-merge top-level settings fields into the tenant's settings.

        Nested sections such as ``features`` are replaced as a whole.

        Raises:
            pydantic.ValidationError: If the merged settings are invalid
        """
        tenant = self.get_tenant(installation_id)
        merged = tenant.settings.model_dump()
        merged.update(changes)
        tenant.settings = TenantSettings.model_validate(merged)
        tenant.touch()
        return tenant

    def update_usage(self, installation_id: int, changes: Dict[str, Any]) -> Tenant:
        """Shallow-merge usage counters and refresh the last activity time."""
        tenant = self.get_tenant(installation_id)
        merged = tenant.usage.model_dump()
        merged.update(changes)
        merged["last_activity"] = datetime.now(timezone.utc)
        tenant.usage = Usage.model_validate(merged)
        tenant.touch()
        return tenant

    def increment_api_calls(self, installation_id: int, count: int = 1) -> Tenant:
        tenant = self.get_tenant(installation_id)
        return self.update_usage(installation_id, {"api_calls": tenant.usage.api_calls + count})

    def has_feature_access(self, installation_id: int, feature: str) -> bool:
        """True only if the plan entitles the feature and the tenant enabled it."""
        tenant = self.get_tenant(installation_id)
        entitled = feature in tenant.subscription.features
        enabled = bool(getattr(tenant.settings.features, feature, False))
        return entitled and enabled

    # -----------------------------------------------------------------------
    # Project data
    # -----------------------------------------------------------------------

    def get_project_data(self, repository_full_name: str) -> Optional[Dict[str, Any]]:
        tenant = self.get_tenant_by_repository(repository_full_name)
        if tenant is None:
            return None
        return tenant.project_data.get(repository_full_name)

    def set_project_data(self, repository_full_name: str, data: Dict[str, Any]) -> Tenant:
        """Replace a repository's project data and recompute storage usage.

        Raises:
            NotFoundError: If no tenant owns the repository
        """
        tenant = self._tenant_for_repository(repository_full_name)
        tenant.project_data[repository_full_name] = data
        return self.update_usage(tenant.installation_id, {"storage": _storage_kb(tenant)})

    def record_project_entry(
        self,
        repository_full_name: str,
        section: str,
        entry: Dict[str, Any],
        *,
        key: Sequence[str] = (),
    ) -> Dict[str, Any]:
        """Append an entry to a list section of a repository's project data.

        When ``key`` names fields, an existing entry with the same values for
        those fields is replaced instead of duplicated.
        """
        tenant = self._tenant_for_repository(repository_full_name)
        document = tenant.project_data.setdefault(repository_full_name, {})
        entries = document.setdefault(section, [])
        if not isinstance(entries, list):
            raise ProcessorError(
                f"Project data section '{section}' is not a list",
                details={"repository": repository_full_name, "section": section},
            )

        if key:
            identity = tuple(entry.get(field) for field in key)
            entries[:] = [
                existing
                for existing in entries
                if tuple(existing.get(field) for field in key) != identity
            ]
        entries.append(entry)
        tenant.touch()
        return entry

    def _tenant_for_repository(self, repository_full_name: str) -> Tenant:
        tenant = self.get_tenant_by_repository(repository_full_name)
        if tenant is None:
            raise NotFoundError(
                f"No tenant found for repository {repository_full_name}",
                details={"repository": repository_full_name},
            )
        return tenant


def _installation_from(event: WebhookEvent) -> Installation:
    raw = event.payload.get("installation")
    if not isinstance(raw, dict) or "id" not in raw:
        raise ProcessorError(
            f"{event.event_type} event has no installation",
            details={"event_type": event.event_type},
        )
    return Installation.model_validate(raw)


def _storage_kb(tenant: Tenant) -> int:
    size = len(json.dumps(tenant.project_data, default=str))
    return round(size / 1024)


__all__ = ["TenantRegistry"]
