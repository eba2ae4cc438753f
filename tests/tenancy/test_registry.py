"""Tests for the tenant registry and its repository index."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from conftest import installation_payload, make_repos, repo_payload
from tenantlink.errors import NotFoundError, ProcessorError, TenantNotFoundError, UnsupportedEventActionError
from tenantlink.github.models import parse_repositories
from tenantlink.tenancy.models import SubscriptionPlan, SubscriptionStatus, classify_plan
from tenantlink.tenancy.registry import TenantRegistry
from tenantlink.webhook.models import WebhookEvent


def installation_event(action, installation_id=555, login="Acme", account_type="Organization"):
    return WebhookEvent.from_payload(
        "installation",
        {"action": action, "installation": installation_payload(installation_id, login, account_type)},
    )


def repositories_event(action, added=(), removed=(), installation_id=555):
    return WebhookEvent.from_payload(
        "installation_repositories",
        {
            "action": action,
            "installation": installation_payload(installation_id),
            "repositories_added": list(added),
            "repositories_removed": list(removed),
        },
    )


@pytest.fixture
def repositories():
    return {555: parse_repositories(make_repos(3))}


@pytest.fixture
def registry(repositories):
    authenticator = MagicMock()
    authenticator.get_installation_repositories = AsyncMock(
        side_effect=lambda installation_id: list(repositories.get(installation_id, []))
    )
    return TenantRegistry(authenticator)


# ---------------------------------------------------------------------------
# Plan Classification Tests
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "account_type,count,expected",
    [
        ("Organization", 12, SubscriptionPlan.ENTERPRISE),
        ("Organization", 10, SubscriptionPlan.ENTERPRISE),
        ("Organization", 9, SubscriptionPlan.PRO),
        ("Organization", 6, SubscriptionPlan.PRO),
        ("Organization", 5, SubscriptionPlan.PRO),
        ("Organization", 3, SubscriptionPlan.FREE),
        ("User", 12, SubscriptionPlan.PRO),
        ("User", 0, SubscriptionPlan.FREE),
    ],
)
def test_classify_plan(account_type, count, expected):
    """Test plan thresholds by account type and repository count."""
    assert classify_plan(account_type, count) == expected


# ---------------------------------------------------------------------------
# Installation Lifecycle Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_created_builds_tenant_and_index(registry, repositories):
    """Test installation created registers tenant, repos and index."""
    tenant = await registry.handle_installation(installation_event("created"))

    assert tenant.organization_login == "Acme"
    assert tenant.repository_names == ["acme/repo-0", "acme/repo-1", "acme/repo-2"]
    assert tenant.subscription.plan == SubscriptionPlan.FREE
    assert tenant.subscription.status == SubscriptionStatus.ACTIVE
    assert tenant.usage.repositories == 3
    assert set(tenant.project_data) == set(tenant.repository_names)
    for name in tenant.repository_names:
        assert registry.get_tenant_by_repository(name) is tenant
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_created_enterprise_plan_for_large_organization(registry, repositories):
    """Test an organization with 12 repositories gets enterprise."""
    repositories[555] = parse_repositories(make_repos(12))

    tenant = await registry.handle_installation(installation_event("created"))

    assert tenant.subscription.plan == SubscriptionPlan.ENTERPRISE
    assert "organizational_intelligence" in tenant.subscription.features
    assert tenant.subscription.limits.repositories == -1


@pytest.mark.asyncio
async def test_created_user_account_capped_at_pro(registry, repositories):
    """Test personal accounts never reach enterprise."""
    repositories[777] = parse_repositories(make_repos(12, owner="solo"))

    tenant = await registry.handle_installation(
        installation_event("created", 777, login="solo", account_type="User")
    )

    assert tenant.organization_type == "User"
    assert tenant.subscription.plan == SubscriptionPlan.PRO


@pytest.mark.asyncio
async def test_created_again_rebuilds_and_keeps_settings(registry, repositories):
    """Test a repeated created event rebuilds without losing settings."""
    await registry.handle_installation(installation_event("created"))
    registry.update_tenant_settings(555, {"audit_level": "enhanced"})
    registry.record_project_entry("acme/repo-1", "risks", {"id": "R1"})
    repositories[555] = parse_repositories(make_repos(2)[1:] + [repo_payload(2000, "acme/new")])

    tenant = await registry.handle_installation(installation_event("created"))

    assert tenant.settings.audit_level == "enhanced"
    assert tenant.repository_names == ["acme/repo-1", "acme/new"]
    assert tenant.project_data["acme/repo-1"]["risks"] == [{"id": "R1"}]
    assert registry.get_tenant_by_repository("acme/repo-0") is None
    assert registry.get_tenant_by_repository("acme/new") is tenant
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_deleted_archives_and_unindexes(registry):
    """Test deletion archives a copy and removes index entries."""
    await registry.handle_installation(installation_event("created"))

    archived = await registry.handle_installation(installation_event("deleted"))

    assert archived.deleted_at is not None
    assert registry.get_archived_tenants() == [archived]
    assert len(registry) == 0
    assert registry.get_tenant_by_repository("acme/repo-0") is None
    with pytest.raises(TenantNotFoundError):
        registry.get_tenant(555)


@pytest.mark.asyncio
async def test_deleted_unknown_installation(registry):
    """Test deleting an unknown installation raises TenantNotFoundError."""
    with pytest.raises(TenantNotFoundError):
        await registry.handle_installation(installation_event("deleted", 999))


@pytest.mark.asyncio
async def test_suspend_and_unsuspend(registry):
    """Test suspension toggles subscription status."""
    await registry.handle_installation(installation_event("created"))

    suspended = await registry.handle_installation(installation_event("suspend"))
    assert suspended.subscription.status == SubscriptionStatus.SUSPENDED

    resumed = await registry.handle_installation(installation_event("unsuspend"))
    assert resumed.subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_created_for_suspended_installation(registry):
    """Test a suspended installation is registered suspended without fetching repos."""
    event = WebhookEvent.from_payload(
        "installation",
        {"action": "created", "installation": installation_payload(suspended_at="2024-01-01T00:00:00Z")},
    )

    tenant = await registry.handle_installation(event)

    assert tenant.subscription.status == SubscriptionStatus.SUSPENDED
    assert tenant.repositories == []
    registry.authenticator.get_installation_repositories.assert_not_awaited()


@pytest.mark.asyncio
async def test_rebuild_for_suspended_installation_keeps_repositories(registry):
    """Test replaying a suspended installation keeps the known repositories."""
    await registry.handle_installation(installation_event("created"))
    event = WebhookEvent.from_payload(
        "installation",
        {"action": "created", "installation": installation_payload(suspended_at="2024-01-01T00:00:00Z")},
    )

    tenant = await registry.handle_installation(event)

    assert tenant.subscription.status == SubscriptionStatus.SUSPENDED
    assert len(tenant.repositories) == 3
    assert registry.get_tenant_by_repository("acme/repo-0") is tenant
    assert registry.authenticator.get_installation_repositories.await_count == 1


@pytest.mark.asyncio
async def test_unknown_installation_action(registry):
    """Test unsupported actions raise without touching state."""
    await registry.handle_installation(installation_event("created"))

    with pytest.raises(UnsupportedEventActionError):
        await registry.handle_installation(installation_event("new_permissions_accepted"))

    assert len(registry) == 1


@pytest.mark.asyncio
async def test_event_without_installation(registry):
    """Test a payload missing the installation object is rejected."""
    event = WebhookEvent.from_payload("installation", {"action": "created"})

    with pytest.raises(ProcessorError):
        await registry.handle_installation(event)


# ---------------------------------------------------------------------------
# Repository Change Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_repositories_added(registry):
    """Test added repositories join the tenant and the index."""
    await registry.handle_installation(installation_event("created"))

    tenant = await registry.handle_repository_changes(
        repositories_event("added", added=[repo_payload(50, "acme/widgets")])
    )

    assert "acme/widgets" in tenant.repository_names
    assert registry.get_tenant_by_repository("acme/widgets") is tenant
    assert tenant.project_data["acme/widgets"]["project_name"] == "widgets"
    assert tenant.usage.repositories == 4


@pytest.mark.asyncio
async def test_repositories_added_is_idempotent(registry):
    """Test re-adding a known repository does not duplicate it."""
    await registry.handle_installation(installation_event("created"))
    event = repositories_event("added", added=[repo_payload(50, "acme/widgets")])

    await registry.handle_repository_changes(event)
    tenant = await registry.handle_repository_changes(event)

    assert tenant.repository_names.count("acme/widgets") == 1
    assert tenant.usage.repositories == 4


@pytest.mark.asyncio
async def test_repositories_removed(registry):
    """Test removal drops list entry, index entry and project data."""
    await registry.handle_installation(installation_event("created"))
    await registry.handle_repository_changes(
        repositories_event("added", added=[repo_payload(50, "acme/widgets")])
    )

    tenant = await registry.handle_repository_changes(
        repositories_event("removed", removed=[repo_payload(50, "acme/widgets")])
    )

    assert "acme/widgets" not in tenant.repository_names
    assert registry.get_tenant_by_repository("acme/widgets") is None
    assert "acme/widgets" not in tenant.project_data
    assert tenant.usage.repositories == 3


@pytest.mark.asyncio
async def test_index_matches_repository_lists(registry, repositories):
    """Test every indexed repository is in its tenant's list and vice versa."""
    repositories[777] = parse_repositories(make_repos(2, owner="beta"))
    await registry.handle_installation(installation_event("created"))
    await registry.handle_installation(installation_event("created", 777, login="Beta"))
    await registry.handle_repository_changes(
        repositories_event("removed", removed=[repo_payload(1000, "acme/repo-0")])
    )

    indexed = dict(registry._repository_index)
    listed = {
        name: tenant.installation_id
        for tenant in registry.list_tenants()
        for name in tenant.repository_names
    }
    assert indexed == listed


@pytest.mark.asyncio
async def test_repository_change_for_unknown_tenant(registry):
    """Test repository changes for an unknown installation fail."""
    with pytest.raises(TenantNotFoundError):
        await registry.handle_repository_changes(
            repositories_event("added", added=[repo_payload(50, "acme/widgets")], installation_id=999)
        )


# ---------------------------------------------------------------------------
# Settings, Usage and Feature Access Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_feature_access_requires_entitlement_and_toggle(registry, repositories):
    """Test access needs both plan entitlement and tenant toggle."""
    await registry.handle_installation(installation_event("created"))

    # free plan: entitled and enabled
    assert registry.has_feature_access(555, "compliance_module") is True
    # enabled but not entitled on free
    assert registry.has_feature_access(555, "security_dashboard") is False

    registry.update_tenant_settings(555, {"features": {"compliance_module": False}})
    assert registry.has_feature_access(555, "compliance_module") is False


@pytest.mark.asyncio
async def test_enterprise_feature_needs_toggle(registry, repositories):
    """Test organizational intelligence is off until toggled on."""
    repositories[555] = parse_repositories(make_repos(10))
    await registry.handle_installation(installation_event("created"))

    assert registry.has_feature_access(555, "organizational_intelligence") is False

    registry.update_tenant_settings(555, {"features": {"organizational_intelligence": True}})
    assert registry.has_feature_access(555, "organizational_intelligence") is True


@pytest.mark.asyncio
async def test_unknown_feature_is_denied(registry):
    """Test features outside the toggle set are never granted."""
    await registry.handle_installation(installation_event("created"))
    assert registry.has_feature_access(555, "basic_support") is False


@pytest.mark.asyncio
async def test_settings_update_is_shallow(registry):
    """Test nested sections are replaced wholesale."""
    await registry.handle_installation(installation_event("created"))
    registry.update_tenant_settings(555, {"features": {"relationship_graph": False}})

    tenant = registry.update_tenant_settings(555, {"features": {"ai_assistant": False}})

    assert tenant.settings.features.relationship_graph is True
    assert tenant.settings.features.ai_assistant is False
    assert tenant.settings.compliance_standards == ["ISO27001", "SOC2"]


@pytest.mark.asyncio
async def test_invalid_settings_rejected(registry):
    """Test invalid settings values raise validation errors."""
    await registry.handle_installation(installation_event("created"))

    with pytest.raises(ValidationError):
        registry.update_tenant_settings(555, {"audit_level": "paranoid"})

    assert registry.get_tenant(555).settings.audit_level == "basic"


@pytest.mark.asyncio
async def test_usage_updates(registry):
    """Test usage merges and api call increments."""
    tenant = await registry.handle_installation(installation_event("created"))
    before = tenant.usage.last_activity

    registry.update_usage(555, {"users": 4})
    updated = registry.increment_api_calls(555, 3)

    assert updated.usage.users == 4
    assert updated.usage.api_calls == 3
    assert updated.usage.last_activity >= before


# ---------------------------------------------------------------------------
# Project Data Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_set_project_data_updates_storage(registry):
    """Test replacing project data recomputes storage usage."""
    await registry.handle_installation(installation_event("created"))
    document = {"requirements": [{"id": f"REQ-{i}", "text": "x" * 100} for i in range(50)]}

    tenant = registry.set_project_data("acme/repo-0", document)

    assert registry.get_project_data("acme/repo-0") == document
    assert tenant.usage.storage > 0


def test_set_project_data_unknown_repository(registry):
    """Test unknown repositories cannot receive project data."""
    with pytest.raises(NotFoundError):
        registry.set_project_data("nobody/nothing", {})
    assert registry.get_project_data("nobody/nothing") is None


@pytest.mark.asyncio
async def test_record_project_entry_upserts_by_key(registry):
    """Test keyed entries replace earlier entries with the same identity."""
    await registry.handle_installation(installation_event("created"))

    registry.record_project_entry("acme/repo-0", "audit_log", {"type": "issue", "number": 1, "state": "open"}, key=("type", "number"))
    registry.record_project_entry("acme/repo-0", "audit_log", {"type": "issue", "number": 2, "state": "open"}, key=("type", "number"))
    registry.record_project_entry("acme/repo-0", "audit_log", {"type": "issue", "number": 1, "state": "closed"}, key=("type", "number"))

    log = registry.get_project_data("acme/repo-0")["audit_log"]
    assert [(e["number"], e["state"]) for e in log] == [(2, "open"), (1, "closed")]


@pytest.mark.asyncio
async def test_record_project_entry_rejects_non_list_section(registry):
    """Test appending to a mapping section fails."""
    await registry.handle_installation(installation_event("created"))

    with pytest.raises(ProcessorError):
        registry.record_project_entry("acme/repo-0", "links", {"id": "L1"})
