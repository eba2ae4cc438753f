"""GitHub App webhook server implementation using aiohttp.

The server reads the raw delivery body and GitHub's event headers, hands the
delivery to the service facade and maps the outcome onto an HTTP response:

- 200 with the recorded ``ProcessedEvent`` (including unsuccessful ones, so
  GitHub does not redeliver events that will fail again)
- 401 when the signature does not verify
- 503 when webhooks are disabled or the service has not finished starting
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from aiohttp import web

from tenantlink.errors import (
    ServiceNotInitializedError,
    SignatureVerificationFailure,
    WebhooksDisabledError,
)
from tenantlink.errors.user_messages import format_error_for_response

if TYPE_CHECKING:
    from tenantlink.service import TenantLinkService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Webhook Server
# ---------------------------------------------------------------------------


class WebhookServer:
    """Receives GitHub App webhooks and forwards them to the service.

    Attributes:
        service: Initialized service facade
        app: aiohttp web application
        runner: aiohttp app runner
        site: aiohttp TCP site

    Example:
        >>> server = WebhookServer(service)
        >>> await server.start()
        >>> # Server running...
        >>> await server.stop()
    """

    def __init__(self, service: TenantLinkService):
        self.service = service
        self.settings = service.settings

        self.app = web.Application()
        self._setup_routes()

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def _setup_routes(self) -> None:
        """Setup HTTP routes."""
        self.app.router.add_post(self.settings.webhook_path, self.handle_webhook)
        self.app.router.add_get("/health", self.health_check)

    async def handle_webhook(self, request: web.Request) -> web.Response:
        """Handle an incoming GitHub webhook delivery.

        Args:
            request: aiohttp web request

        Returns:
            HTTP response (200, 400, 401 or 503)
        """
        signature = request.headers.get("X-Hub-Signature-256")
        event_type = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery")

        if not event_type:
            return web.json_response(
                {"error": "MISSING_EVENT_TYPE", "message": "X-GitHub-Event header is required"},
                status=400,
            )

        body = await request.read()

        try:
            result = await self.service.handle_webhook(event_type, body, signature, delivery_id)
        except SignatureVerificationFailure as exc:
            return web.json_response(format_error_for_response(exc), status=401)
        except (WebhooksDisabledError, ServiceNotInitializedError) as exc:
            logger.warning(
                f"Webhook {delivery_id} refused: {exc.message}",
                extra={"event_type": event_type, "delivery_id": delivery_id},
            )
            return web.json_response(format_error_for_response(exc), status=503)

        return web.json_response(result.model_dump(mode="json"), status=200)

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        stats = self.service.get_webhook_stats()
        return web.json_response(
            {
                "status": "healthy" if self.service.is_initialized else "starting",
                "initialized": self.service.is_initialized,
                "webhooks_enabled": self.settings.enable_webhooks,
                "tenants": len(self.service.registry),
                "history_size": self.service.router.history_size,
                "pending_tasks": self.service.router.pending_tasks,
                "success_rate": stats.success_rate,
            }
        )

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.settings.listen_host, self.settings.listen_port)
        await self.site.start()

        logger.info(
            f"Webhook server listening on {self.settings.listen_host}:{self.settings.listen_port}",
            extra={
                "host": self.settings.listen_host,
                "port": self.settings.listen_port,
                "path": self.settings.webhook_path,
            },
        )

    async def stop(self) -> None:
        """Stop the server and release its resources."""
        logger.info("Stopping webhook server...")
        if self.runner is not None:
            await self.runner.cleanup()
        self.runner = None
        self.site = None


__all__ = ["WebhookServer"]
