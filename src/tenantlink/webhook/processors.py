"""Per-event-type webhook processors.

Each processor turns one decoded ``WebhookEvent`` into a ``ProcessedEvent``.
Subclasses implement ``handle`` and return the metadata to record; the base
class converts any failure into an unsuccessful ``ProcessedEvent`` so that a
bad delivery never escapes the router.

Repository-scoped processors resolve their tenant through the repository
index and gate every side effect on the tenant's feature access.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Dict, List, Optional

from tenantlink.errors import ProcessorError, TenantLinkError
from tenantlink.tenancy.project_sync import touches_project_data

from .models import ProcessedEvent, WebhookEvent

if TYPE_CHECKING:
    from tenantlink.tenancy.models import Tenant
    from tenantlink.tenancy.project_sync import ProjectDataSynchronizer
    from tenantlink.tenancy.registry import TenantRegistry

logger = logging.getLogger(__name__)

Scheduler = Callable[[Coroutine[Any, Any, Any], str], Any]

COMPLIANCE_PR_ACTIONS = frozenset({"opened", "synchronize", "reopened"})


# ---------------------------------------------------------------------------
# Base Processor
# ---------------------------------------------------------------------------


class EventProcessor(ABC):
    """Processes one webhook event type."""

    def __init__(self, registry: TenantRegistry):
        self.registry = registry

    async def process(self, event: WebhookEvent) -> ProcessedEvent:
        """Handle an event and record the outcome; never raises."""
        try:
            metadata = await self.handle(event)
        except Exception as exc:
            logger.error(
                f"{event.event_type} event processing failed: {exc}",
                exc_info=not isinstance(exc, TenantLinkError),
                extra={
                    "event_type": event.event_type,
                    "action": event.action,
                    "installation_id": event.installation_id,
                    "repository": event.repository_full_name,
                    "delivery_id": event.delivery_id,
                },
            )
            return ProcessedEvent.for_event(event, success=False, error=str(exc) or type(exc).__name__)
        return ProcessedEvent.for_event(event, success=True, metadata=metadata)

    @abstractmethod
    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        """Apply the event and return metadata describing what was done."""

    def require_tenant(self, event: WebhookEvent) -> Tenant:
        if not event.repository_full_name:
            raise ProcessorError(
                f"{event.event_type} event has no repository",
                details={"event_type": event.event_type},
            )
        tenant = self.registry.get_tenant_by_repository(event.repository_full_name)
        if tenant is None:
            raise ProcessorError(
                f"No tenant found for repository {event.repository_full_name}",
                details={"repository": event.repository_full_name},
            )
        return tenant


# ---------------------------------------------------------------------------
# Installation lifecycle
# ---------------------------------------------------------------------------


class InstallationProcessor(EventProcessor):
    """Creates, archives, suspends and unsuspends tenants."""

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = await self.registry.handle_installation(event)
        return {
            "organization_login": tenant.organization_login,
            "repository_count": len(tenant.repositories),
            "subscription_plan": tenant.subscription.plan.value,
            "subscription_status": tenant.subscription.status.value,
        }


class InstallationRepositoriesProcessor(EventProcessor):
    """Adds and removes repositories from a tenant."""

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = await self.registry.handle_repository_changes(event)
        changed = event.payload.get("repositories_added") or event.payload.get(
            "repositories_removed"
        ) or []
        return {
            "organization_login": tenant.organization_login,
            "repository_count": len(tenant.repositories),
            "action": event.action,
            "affected_repositories": len(changed),
        }


# ---------------------------------------------------------------------------
# Repository activity
# ---------------------------------------------------------------------------


class PushProcessor(EventProcessor):
    """Schedules a project data re-sync when project data files change."""

    def __init__(
        self,
        registry: TenantRegistry,
        synchronizer: ProjectDataSynchronizer,
        schedule: Scheduler,
        *,
        real_time_sync: bool = True,
    ):
        super().__init__(registry)
        self.synchronizer = synchronizer
        self.schedule = schedule
        self.real_time_sync = real_time_sync

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = self.require_tenant(event)
        payload = event.payload
        commits = payload.get("commits") or []
        repository = event.repository_full_name

        project_files = [path for path in _changed_paths(commits) if touches_project_data(path)]
        resync = bool(
            project_files
            and self.real_time_sync
            and not payload.get("deleted")
            and self.registry.has_feature_access(tenant.installation_id, "process_asset_framework")
        )
        if resync:
            logger.info(
                f"Project data files changed in {repository}, scheduling re-sync",
                extra={
                    "installation_id": tenant.installation_id,
                    "repository": repository,
                    "files": project_files,
                },
            )
            self.schedule(
                self.synchronizer.sync_project_data(repository, ref=payload.get("after")),
                f"project-sync:{repository}",
            )

        self.registry.increment_api_calls(tenant.installation_id)

        return {
            "branch": _branch_name(payload.get("ref")),
            "commits": len(commits),
            "pusher": (payload.get("pusher") or {}).get("name"),
            "project_files": project_files,
            "resync_scheduled": resync,
        }


class PullRequestProcessor(EventProcessor):
    """Queues compliance checks for opened and updated pull requests."""

    def __init__(
        self,
        registry: TenantRegistry,
        synchronizer: ProjectDataSynchronizer,
        *,
        compliance_checks: bool = True,
    ):
        super().__init__(registry)
        self.synchronizer = synchronizer
        self.compliance_checks = compliance_checks

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = self.require_tenant(event)
        pull_request = event.payload.get("pull_request") or {}

        checked = (
            event.action in COMPLIANCE_PR_ACTIONS
            and self.compliance_checks
            and self.registry.has_feature_access(tenant.installation_id, "compliance_module")
        )
        if checked:
            self.synchronizer.run_compliance_check(
                event.repository_full_name, pull_request, event.action
            )

        return {
            "pr_number": pull_request.get("number"),
            "title": pull_request.get("title"),
            "author": (pull_request.get("user") or {}).get("login"),
            "state": pull_request.get("state"),
            "compliance_check": checked,
        }


class IssuesProcessor(EventProcessor):
    """Tracks issues for the relationship graph."""

    def __init__(self, registry: TenantRegistry, synchronizer: ProjectDataSynchronizer):
        super().__init__(registry)
        self.synchronizer = synchronizer

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = self.require_tenant(event)
        issue = event.payload.get("issue") or {}

        tracked = self.registry.has_feature_access(tenant.installation_id, "relationship_graph")
        if tracked:
            self.synchronizer.track_issue(event.repository_full_name, issue, event.action)

        return {
            "issue_number": issue.get("number"),
            "title": issue.get("title"),
            "author": (issue.get("user") or {}).get("login"),
            "state": issue.get("state"),
            "tracked": tracked,
        }


class SecurityProcessor(EventProcessor):
    """Records code scanning, secret scanning and advisory alerts."""

    def __init__(self, registry: TenantRegistry, synchronizer: ProjectDataSynchronizer):
        super().__init__(registry)
        self.synchronizer = synchronizer

    async def handle(self, event: WebhookEvent) -> Dict[str, Any]:
        tenant = self.require_tenant(event)
        alert = event.payload.get("alert") or event.payload.get("security_advisory") or {}
        rule = alert.get("rule") or {}

        recorded = self.registry.has_feature_access(tenant.installation_id, "security_dashboard")
        if recorded:
            self.synchronizer.record_security_alert(
                event.repository_full_name, event.event_type, alert, event.action
            )

        return {
            "alert_type": rule.get("id") or alert.get("secret_type") or alert.get("ghsa_id") or "unknown",
            "severity": (
                rule.get("security_severity_level")
                or rule.get("severity")
                or alert.get("severity")
                or "unknown"
            ),
            "state": alert.get("state"),
            "recorded": recorded,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _changed_paths(commits: List[Dict[str, Any]]) -> List[str]:
    paths: List[str] = []
    seen = set()
    for commit in commits:
        for key in ("added", "modified", "removed"):
            for path in commit.get(key) or []:
                if path not in seen:
                    seen.add(path)
                    paths.append(path)
    return paths


def _branch_name(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


__all__ = [
    "COMPLIANCE_PR_ACTIONS",
    "EventProcessor",
    "InstallationProcessor",
    "InstallationRepositoriesProcessor",
    "IssuesProcessor",
    "PullRequestProcessor",
    "PushProcessor",
    "SecurityProcessor",
]
