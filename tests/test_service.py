"""Tests for the TenantLinkService facade."""

import json

import pytest

from conftest import installation_payload, make_repos, sign
from tenantlink.configuration.settings import AppSettings
from tenantlink.context import ServiceContext
from tenantlink.errors import (
    GitHubAPIError,
    MissingCredentialError,
    NotFoundError,
    ServiceNotInitializedError,
    SignatureVerificationFailure,
    TenantNotFoundError,
    WebhooksDisabledError,
)
from tenantlink.service import TenantLinkService, summarize_projects
from tenantlink.tenancy.models import SubscriptionPlan, SubscriptionStatus, Tenant, subscription_for


def build_service(settings, client):
    return TenantLinkService(settings, context=ServiceContext.build(settings, client=client))


@pytest.fixture
def service(app_settings, client):
    return build_service(app_settings, client)


@pytest.fixture
def one_installation(github):
    github.add_json("GET", "/app/installations", [installation_payload(555)])
    github.add_installation(555, make_repos(6))


# ---------------------------------------------------------------------------
# Construction and Initialization Tests
# ---------------------------------------------------------------------------


def test_missing_credentials_fail_fast():
    """Test the service refuses to build without credentials."""
    with pytest.raises(MissingCredentialError):
        TenantLinkService(AppSettings(app_id="1"))


@pytest.mark.asyncio
async def test_initialize_replays_installations(service, one_installation):
    """Test startup rebuilds a tenant per existing installation."""
    await service.initialize()

    assert service.is_initialized is True
    tenant = service.registry.get_tenant(555)
    assert tenant.subscription.plan == SubscriptionPlan.PRO
    assert len(tenant.repositories) == 6


@pytest.mark.asyncio
async def test_initialize_is_idempotent(service, github, one_installation):
    """Test a second initialize does not list installations again."""
    await service.initialize()
    await service.initialize()

    assert github.count("GET", "/app/installations") == 1


@pytest.mark.asyncio
async def test_initialize_skips_failing_installation(service, github):
    """Test one failing installation does not abort startup."""
    github.add_json(
        "GET", "/app/installations", [installation_payload(555), installation_payload(666, "Beta")]
    )
    github.add_installation(555)
    github.add_json(
        "POST", "/app/installations/666/access_tokens", {"message": "Bad credentials"}, status=401
    )

    await service.initialize()

    assert service.is_initialized is True
    assert len(service.registry) == 1
    with pytest.raises(TenantNotFoundError):
        service.registry.get_tenant(666)


@pytest.mark.asyncio
async def test_initialize_restores_suspended_installation(service, github):
    """Test a suspended installation is restored suspended after a restart."""
    github.add_json(
        "GET",
        "/app/installations",
        [installation_payload(555), installation_payload(777, "Gamma", suspended_at="2024-01-01T00:00:00Z")],
    )
    github.add_installation(555)

    await service.initialize()

    assert service.registry.get_tenant(555).subscription.status == SubscriptionStatus.ACTIVE
    assert service.registry.get_tenant(777).subscription.status == SubscriptionStatus.SUSPENDED
    assert github.count("POST", "/app/installations/777/access_tokens") == 0


@pytest.mark.asyncio
async def test_initialize_fails_when_listing_fails(service, github):
    """Test a rejected app listing aborts startup."""
    github.add_json("GET", "/app/installations", {"message": "Bad credentials"}, status=401)

    with pytest.raises(GitHubAPIError):
        await service.initialize()

    assert service.is_initialized is False


# ---------------------------------------------------------------------------
# Webhook Gating Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_webhook_before_initialize(service):
    """Test deliveries are refused until startup completes."""
    with pytest.raises(ServiceNotInitializedError):
        await service.handle_webhook("push", b"{}", sign(b"{}"))


@pytest.mark.asyncio
async def test_webhook_when_disabled(app_settings, client, github):
    """Test deliveries are refused when webhooks are switched off."""
    github.add_json("GET", "/app/installations", [])
    service = build_service(app_settings.model_copy(update={"enable_webhooks": False}), client)
    await service.initialize()

    with pytest.raises(WebhooksDisabledError):
        await service.handle_webhook("push", b"{}", sign(b"{}"))


@pytest.mark.asyncio
async def test_webhook_delivery_flows_to_router(service, one_installation):
    """Test a signed delivery is processed and recorded."""
    await service.initialize()
    body = json.dumps(
        {
            "action": "opened",
            "repository": {"full_name": "acme/repo-0"},
            "issue": {"number": 1, "title": "Bug"},
            "installation": {"id": 555},
        }
    ).encode("utf-8")

    result = await service.handle_webhook("issues", body, sign(body), "d-1")

    assert result.success is True
    assert service.get_webhook_history(555)[-1].delivery_id == "d-1"
    assert service.get_webhook_stats().total_events == 1


@pytest.mark.asyncio
async def test_webhook_bad_signature(service, one_installation):
    """Test forged deliveries propagate the verification failure."""
    await service.initialize()

    with pytest.raises(SignatureVerificationFailure):
        await service.handle_webhook("issues", b"{}", "sha256=00")


# ---------------------------------------------------------------------------
# Overview Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_overview_requires_initialize(service):
    """Test overviews are refused before startup."""
    with pytest.raises(ServiceNotInitializedError):
        await service.get_organization_overview(555)


@pytest.mark.asyncio
async def test_overview_unknown_tenant(service, one_installation):
    """Test overviews for unknown installations raise TenantNotFoundError."""
    await service.initialize()

    with pytest.raises(TenantNotFoundError):
        await service.get_organization_overview(999)


@pytest.mark.asyncio
async def test_overview_scores(service, one_installation):
    """Test compliance and security scores derived from project data."""
    await service.initialize()
    current = service.get_project_data("acme/repo-0")
    service.update_project_data(
        "acme/repo-0",
        {
            **current,
            "requirements": [{"id": "REQ-1"}, {"id": "REQ-2"}],
            "links": {"REQ-1": {"tests": ["TC-1"]}},
            "security_alerts": [
                {"source": "code_scanning_alert", "number": 1, "state": "open"},
                {"source": "code_scanning_alert", "number": 2, "state": "open"},
                {"source": "code_scanning_alert", "number": 3, "state": "fixed"},
            ],
        },
    )

    overview = await service.get_organization_overview(555)

    summary = overview.project_summary
    assert overview.installation.account.login == "Acme"
    assert len(overview.repositories) == 6
    assert summary.total_projects == 6
    assert summary.active_projects == 1
    # one of six projects has 50% coverage
    assert summary.compliance_score == round(50 / 6)
    assert summary.open_security_alerts == 2
    assert summary.security_score == 80
    assert "relationship_graph" in overview.usage.features_used
    assert "organizational_intelligence" not in overview.usage.features_used


def test_security_score_floor():
    """Test the security score never drops below zero."""
    tenant = Tenant(
        installation_id=1,
        organization_login="x",
        subscription=subscription_for(SubscriptionPlan.FREE),
        project_data={
            "x/a": {"security_alerts": [{"number": i, "state": "open"} for i in range(15)]}
        },
    )

    summary = summarize_projects(tenant)

    assert summary.security_score == 0
    assert summary.compliance_score == 0


@pytest.mark.asyncio
async def test_all_installations_overview(service, one_installation):
    """Test overviews are built for every tenant."""
    await service.initialize()

    overviews = await service.get_all_installations_overview()

    assert [o.tenant.installation_id for o in overviews] == [555]


# ---------------------------------------------------------------------------
# Metrics, Tenant Operations and Shutdown Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_app_metrics(service, one_installation):
    """Test aggregate metrics over tenants, webhooks and the client."""
    await service.initialize()
    await service.handle_webhook("unknown", b"{}", sign(b"{}"))

    metrics = service.get_app_metrics()

    assert metrics.total_installations == 1
    assert metrics.active_installations == 1
    assert metrics.total_repositories == 6
    assert metrics.webhook_events == 1
    assert metrics.error_rate == 100.0
    assert metrics.cached_tokens == 1
    assert metrics.outbound_requests > 0


@pytest.mark.asyncio
async def test_feature_access_and_settings(service, one_installation):
    """Test tenant settings updates affect feature access."""
    await service.initialize()

    assert service.has_feature_access(555, "security_dashboard") is True
    service.update_tenant_settings(555, {"features": {"security_dashboard": False}})
    assert service.has_feature_access(555, "security_dashboard") is False


@pytest.mark.asyncio
async def test_installation_request_requires_tenant(service, github, one_installation):
    """Test scoped calls are limited to known tenants."""
    await service.initialize()
    github.add_json("GET", "/repos/acme/repo-0/pulls", [])

    assert await service.installation_request(555, "/repos/acme/repo-0/pulls") == []
    with pytest.raises(TenantNotFoundError):
        await service.installation_request(999, "/repos/acme/repo-0/pulls")


@pytest.mark.asyncio
async def test_sync_repository_unknown(service, one_installation):
    """Test syncing an untracked repository raises NotFoundError."""
    await service.initialize()

    with pytest.raises(NotFoundError):
        await service.sync_repository("ghost/repo")


@pytest.mark.asyncio
async def test_shutdown_clears_state(service, one_installation):
    """Test shutdown drops tokens and requires a new initialize."""
    await service.initialize()
    assert service.authenticator.cached_token_count == 1

    await service.shutdown()

    assert service.authenticator.cached_token_count == 0
    assert service.is_initialized is False
    with pytest.raises(ServiceNotInitializedError):
        await service.handle_webhook("push", b"{}", sign(b"{}"))
