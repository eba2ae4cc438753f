"""GitHub App webhook routing.

This package verifies inbound deliveries, dispatches them to per-event-type
processors and keeps a bounded history of outcomes. The aiohttp server lives
in ``tenantlink.webhook.server``.

Example:
    >>> from tenantlink.webhook import EventRouter
    >>>
    >>> router = EventRouter(authenticator, registry, synchronizer)
    >>> result = await router.process_webhook("push", body, signature)
    >>> router.get_processing_stats().success_rate
    100.0
"""

from .models import ProcessedEvent, ProcessingStats, WebhookEvent, WebhookEventType
from .processors import (
    EventProcessor,
    InstallationProcessor,
    InstallationRepositoriesProcessor,
    IssuesProcessor,
    PullRequestProcessor,
    PushProcessor,
    SecurityProcessor,
)
from .router import EventRouter

__all__ = [
    "EventProcessor",
    "EventRouter",
    "InstallationProcessor",
    "InstallationRepositoriesProcessor",
    "IssuesProcessor",
    "ProcessedEvent",
    "ProcessingStats",
    "PullRequestProcessor",
    "PushProcessor",
    "SecurityProcessor",
    "WebhookEvent",
    "WebhookEventType",
]
