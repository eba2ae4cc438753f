"""Tenant-scoped side effects triggered by webhook processors.

The synchronizer re-reads a repository's project data document through the
contents API and records compliance, issue and security bookkeeping entries
into the repository's project data scaffold. Scoring and document generation
happen elsewhere; this module only keeps the stored data current.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from tenantlink.errors import GitHubAPIError, ProcessorError

if TYPE_CHECKING:
    from tenantlink.github.app_auth import AppAuthenticator

    from .registry import TenantRegistry

logger = logging.getLogger(__name__)

PROJECT_DATA_MARKERS = ("tenantlink-project.json", "project-data.json", ".tenantlink/")
PROJECT_DATA_PATHS = (
    "tenantlink-project.json",
    "project-data.json",
    ".tenantlink/project-data.json",
)


def touches_project_data(path: str) -> bool:
    """True if a changed file path is part of the project data document."""
    return any(marker in path for marker in PROJECT_DATA_MARKERS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectDataSynchronizer:
    """Keeps per-repository project data in step with webhook activity."""

    def __init__(self, authenticator: AppAuthenticator, registry: TenantRegistry):
        self.authenticator = authenticator
        self.registry = registry

    async def sync_project_data(
        self, repository_full_name: str, ref: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch the repository's project data document and store it.

        The first existing path in ``PROJECT_DATA_PATHS`` wins. The fetched
        document is merged over the stored scaffold so local bookkeeping
        sections survive a re-sync.

        Returns:
            The fetched document, or None if the repository has none
        """
        tenant = self.registry.get_tenant_by_repository(repository_full_name)
        if tenant is None:
            logger.warning(
                f"Skipping project data sync for unknown repository {repository_full_name}",
                extra={"repository": repository_full_name},
            )
            return None

        params = {"ref": ref} if ref else None
        for path in PROJECT_DATA_PATHS:
            try:
                content = await self.authenticator.installation_request(
                    tenant.installation_id,
                    f"/repos/{repository_full_name}/contents/{path}",
                    params=params,
                )
            except GitHubAPIError as exc:
                if exc.status_code == 404:
                    continue
                raise

            document = _decode_content(content, repository_full_name, path)
            current = self.registry.get_project_data(repository_full_name) or {}
            self.registry.set_project_data(repository_full_name, {**current, **document})
            logger.info(
                f"Synced project data for {repository_full_name} from {path}",
                extra={
                    "installation_id": tenant.installation_id,
                    "repository": repository_full_name,
                    "ref": ref,
                },
            )
            return document

        logger.info(
            f"No project data document in {repository_full_name}",
            extra={"installation_id": tenant.installation_id, "repository": repository_full_name},
        )
        return None

    def run_compliance_check(
        self, repository_full_name: str, pull_request: Dict[str, Any], action: Optional[str]
    ) -> Dict[str, Any]:
        """Queue a compliance review of a pull request into the audit log."""
        tenant = self.registry.get_tenant_by_repository(repository_full_name)
        standards = list(tenant.settings.compliance_standards) if tenant else []
        entry = {
            "type": "compliance_check",
            "pull_request": pull_request.get("number"),
            "title": pull_request.get("title"),
            "head_sha": (pull_request.get("head") or {}).get("sha"),
            "action": action,
            "standards": standards,
            "status": "pending",
            "recorded_at": _now_iso(),
        }
        return self.registry.record_project_entry(
            repository_full_name, "audit_log", entry, key=("type", "pull_request", "head_sha")
        )

    def track_issue(
        self, repository_full_name: str, issue: Dict[str, Any], action: Optional[str]
    ) -> Dict[str, Any]:
        """Record an issue state change for the relationship graph."""
        entry = {
            "type": "issue",
            "number": issue.get("number"),
            "title": issue.get("title"),
            "state": issue.get("state"),
            "labels": [label.get("name") for label in issue.get("labels") or [] if isinstance(label, dict)],
            "action": action,
            "recorded_at": _now_iso(),
        }
        return self.registry.record_project_entry(
            repository_full_name, "audit_log", entry, key=("type", "number")
        )

    def record_security_alert(
        self,
        repository_full_name: str,
        alert_type: str,
        alert: Dict[str, Any],
        action: Optional[str],
    ) -> Dict[str, Any]:
        """Upsert a security alert into the security dashboard data."""
        entry = {
            "source": alert_type,
            "number": alert.get("number") or alert.get("ghsa_id"),
            "state": _alert_state(alert, action),
            "severity": alert.get("severity") or (alert.get("rule") or {}).get("severity"),
            "action": action,
            "recorded_at": _now_iso(),
        }
        return self.registry.record_project_entry(
            repository_full_name, "security_alerts", entry, key=("source", "number")
        )


def _alert_state(alert: Dict[str, Any], action: Optional[str]) -> str:
    state = alert.get("state")
    if state:
        return str(state)
    if action in ("created", "reopened", "published", "appeared_in_branch"):
        return "open"
    return action or "unknown"


def _decode_content(content: Any, repository_full_name: str, path: str) -> Dict[str, Any]:
    if not isinstance(content, dict) or "content" not in content:
        raise ProcessorError(
            f"Unexpected contents response for {repository_full_name}/{path}",
            details={"repository": repository_full_name, "path": path},
        )
    try:
        raw = base64.b64decode(content["content"]).decode("utf-8")
        document = json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProcessorError(
            f"Project data in {repository_full_name}/{path} is not valid JSON",
            details={"repository": repository_full_name, "path": path},
        ) from exc
    if not isinstance(document, dict):
        raise ProcessorError(
            f"Project data in {repository_full_name}/{path} is not a JSON object",
            details={"repository": repository_full_name, "path": path},
        )
    return document


__all__ = [
    "PROJECT_DATA_MARKERS",
    "PROJECT_DATA_PATHS",
    "ProjectDataSynchronizer",
    "touches_project_data",
]
