"""Data models for webhook routing.

This module defines the decoded webhook event handed to processors, the
immutable record of each handling attempt and the derived statistics view.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class WebhookEventType(str, Enum):
    """GitHub App webhook event types with a registered processor."""

    INSTALLATION = "installation"  # App installed/uninstalled/suspended
    INSTALLATION_REPOSITORIES = "installation_repositories"  # Repos added/removed
    PUSH = "push"  # New commits pushed
    PULL_REQUEST = "pull_request"  # PR opened/updated/closed
    ISSUES = "issues"  # Issue opened/updated/closed
    SECURITY_ADVISORY = "security_advisory"  # Advisory published/updated
    CODE_SCANNING_ALERT = "code_scanning_alert"  # Code scanning alert changes
    SECRET_SCANNING_ALERT = "secret_scanning_alert"  # Secret scanning alert changes


SECURITY_EVENT_TYPES = (
    WebhookEventType.SECURITY_ADVISORY,
    WebhookEventType.CODE_SCANNING_ALERT,
    WebhookEventType.SECRET_SCANNING_ALERT,
)


# ---------------------------------------------------------------------------
# Webhook Event
# ---------------------------------------------------------------------------


class WebhookEvent(BaseModel):
    """Decoded webhook delivery routed to a processor.

    Attributes:
        event_type: Value of the X-GitHub-Event header
        action: Payload ``action`` field, if any
        installation_id: Installation the delivery belongs to, if any
        repository_full_name: Repository the delivery concerns, if any
        payload: Full decoded payload
        delivery_id: Value of the X-GitHub-Delivery header
        received_at: When the delivery was decoded
    """

    event_type: str = Field(..., description="GitHub event type")
    action: Optional[str] = Field(default=None, description="Event action")
    installation_id: Optional[int] = Field(default=None, description="Installation id")
    repository_full_name: Optional[str] = Field(default=None, description="owner/name")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Decoded payload")
    delivery_id: Optional[str] = Field(default=None, description="Delivery GUID")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_payload(
        cls,
        event_type: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str] = None,
    ) -> "WebhookEvent":
        """Build an event, lifting routing fields out of the payload."""
        installation = payload.get("installation")
        repository = payload.get("repository")
        installation_id = installation.get("id") if isinstance(installation, dict) else None
        full_name = repository.get("full_name") if isinstance(repository, dict) else None
        return cls(
            event_type=event_type,
            action=payload.get("action") if isinstance(payload.get("action"), str) else None,
            installation_id=installation_id if isinstance(installation_id, int) else None,
            repository_full_name=full_name if isinstance(full_name, str) else None,
            payload=payload,
            delivery_id=delivery_id,
        )


# ---------------------------------------------------------------------------
# Processing results
# ---------------------------------------------------------------------------


class ProcessedEvent(BaseModel):
    """Immutable outcome of one webhook handling attempt."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Record id")
    type: str = Field(..., description="Routed event type")
    action: Optional[str] = Field(default=None, description="Event action")
    installation_id: Optional[int] = Field(default=None, description="Installation id")
    repository_full_name: Optional[str] = Field(default=None, description="owner/name")
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = Field(..., description="Whether handling succeeded")
    error: Optional[str] = Field(default=None, description="Failure message")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Processor metadata")
    delivery_id: Optional[str] = Field(default=None, description="Delivery GUID")

    @classmethod
    def for_event(
        cls,
        event: WebhookEvent,
        *,
        success: bool,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ProcessedEvent":
        return cls(
            type=event.event_type,
            action=event.action,
            installation_id=event.installation_id,
            repository_full_name=event.repository_full_name,
            success=success,
            error=error,
            metadata=metadata or {},
            delivery_id=event.delivery_id,
        )


class ProcessingStats(BaseModel):
    """Aggregate view over the processed event history."""

    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    success_rate: float = Field(default=0.0, description="Percentage of successful events")
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    recent_errors: List[ProcessedEvent] = Field(default_factory=list)
    signature_failures: int = Field(default=0, description="Deliveries rejected as unsigned")
    duplicate_deliveries: int = Field(default=0, description="Deliveries skipped as repeats")


__all__ = [
    "SECURITY_EVENT_TYPES",
    "ProcessedEvent",
    "ProcessingStats",
    "WebhookEvent",
    "WebhookEventType",
]
