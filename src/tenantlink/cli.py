"""Command line entry points for tenantlink.

Commands:
    serve          Run the webhook server after replaying installations
    tenants        List tenants rebuilt from the app's installations
    overview       Show one organization's overview
    config show    Display effective configuration with secrets masked
    config validate  Check that credentials are complete and the key signs
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tenantlink.configuration.settings import AppSettings, load_settings
from tenantlink.errors import TenantLinkError
from tenantlink.errors.user_messages import format_error_for_cli
from tenantlink.github.app_auth import AppAuthenticator
from tenantlink.github.client import RateLimitedClient
from tenantlink.service import TenantLinkService
from tenantlink.webhook.server import WebhookServer


cli = typer.Typer(help="Multi-tenant GitHub App integration service")
config_app = typer.Typer(help="Inspect tenantlink configuration")
cli.add_typer(config_app, name="config")

console = Console()
error_console = Console(stderr=True)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def configure_logging(level: str) -> None:
    """Configure root logging for CLI processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _load(config_path: Optional[Path]) -> AppSettings:
    try:
        return load_settings(config_path)
    except TenantLinkError as exc:
        _fail(exc)


def _fail(exc: TenantLinkError) -> None:
    error_console.print(format_error_for_cli(exc), markup=False)
    raise typer.Exit(code=1)


async def _with_service(settings: AppSettings, action):
    service = TenantLinkService(settings)
    try:
        await service.initialize()
        return await action(service)
    finally:
        await service.aclose()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (overrides config)"),
    port: Optional[int] = typer.Option(None, help="Bind port (overrides config)"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to JSON config"),
) -> None:
    """Replay installations and serve webhooks until interrupted."""
    settings = _load(config_path)
    updates = {}
    if host:
        updates["listen_host"] = host
    if port:
        updates["listen_port"] = port
    settings = settings.model_copy(update=updates)
    configure_logging(settings.log_level)

    async def _serve(service: TenantLinkService) -> None:
        server = WebhookServer(service)
        await server.start()
        console.print(
            f"[green]Listening on http://{settings.listen_host}:{settings.listen_port}"
            f"{settings.webhook_path}[/green]"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()

    try:
        asyncio.run(_with_service(settings, _serve))
    except KeyboardInterrupt:
        console.print("Stopped")
    except TenantLinkError as exc:
        _fail(exc)


@cli.command("tenants")
def list_tenants(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to JSON config"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """List tenants rebuilt from the app's current installations."""
    settings = _load(config_path)
    configure_logging("WARNING")

    async def _collect(service: TenantLinkService):
        return service.registry.list_tenants()

    try:
        tenants = asyncio.run(_with_service(settings, _collect))
    except TenantLinkError as exc:
        _fail(exc)

    if as_json:
        typer.echo(json.dumps([t.model_dump(mode="json", exclude={"project_data"}) for t in tenants], indent=2))
        return

    if not tenants:
        console.print("No installations found")
        return

    table = Table(title="Tenants")
    table.add_column("Installation", justify="right")
    table.add_column("Organization")
    table.add_column("Type")
    table.add_column("Plan")
    table.add_column("Status")
    table.add_column("Repositories", justify="right")
    for tenant in tenants:
        table.add_row(
            str(tenant.installation_id),
            tenant.organization_login,
            tenant.organization_type,
            tenant.subscription.plan.value,
            tenant.subscription.status.value,
            str(len(tenant.repositories)),
        )
    console.print(table)


@cli.command("overview")
def overview(
    installation_id: int = typer.Argument(..., help="Installation id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to JSON config"),
) -> None:
    """Show one organization's overview as JSON."""
    settings = _load(config_path)
    configure_logging("WARNING")

    async def _overview(service: TenantLinkService):
        return await service.get_organization_overview(installation_id)

    try:
        result = asyncio.run(_with_service(settings, _overview))
    except TenantLinkError as exc:
        _fail(exc)

    payload = result.model_dump(mode="json")
    payload["tenant"].pop("project_data", None)
    typer.echo(json.dumps(payload, indent=2))


@config_app.command("show")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to JSON config"),
) -> None:
    """Display effective configuration with secrets masked."""
    settings = _load(config_path)
    typer.echo(json.dumps(settings.redacted(), indent=2))


@config_app.command("validate")
def validate_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to JSON config"),
) -> None:
    """Check that credentials are complete and the private key can sign."""
    settings = _load(config_path)

    async def _check() -> None:
        async with RateLimitedClient.from_settings(settings) as client:
            AppAuthenticator.from_settings(settings, client).mint_assertion()

    try:
        asyncio.run(_check())
    except TenantLinkError as exc:
        _fail(exc)
    console.print(f"[green]Configuration valid for app {settings.app_id}[/green]")


__all__ = ["cli", "config_app", "configure_logging"]
