"""Webhook event router.

The router is the boundary between raw webhook deliveries and tenant state.
It verifies the delivery signature before decoding anything, dispatches the
decoded event to the processor registered for its type, and records every
handling attempt in a bounded FIFO history from which statistics are derived
on demand.

Signature failures are raised to the caller and counted apart from
processing failures. Every other failure becomes an unsuccessful
``ProcessedEvent``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict, deque
from typing import (
    TYPE_CHECKING,
    Any,
    Coroutine,
    Deque,
    Dict,
    List,
    Optional,
    Set,
    Union,
)

from tenantlink.errors import SignatureVerificationFailure

from .models import (
    SECURITY_EVENT_TYPES,
    ProcessedEvent,
    ProcessingStats,
    WebhookEvent,
    WebhookEventType,
)
from .processors import (
    EventProcessor,
    InstallationProcessor,
    InstallationRepositoriesProcessor,
    IssuesProcessor,
    PullRequestProcessor,
    PushProcessor,
    SecurityProcessor,
)

if TYPE_CHECKING:
    from tenantlink.github.app_auth import AppAuthenticator
    from tenantlink.tenancy.project_sync import ProjectDataSynchronizer
    from tenantlink.tenancy.registry import TenantRegistry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1000
RECENT_ERRORS_LIMIT = 10


class EventRouter:
    """Verifies, dispatches and records webhook deliveries.

    Attributes:
        authenticator: Verifies delivery signatures
        registry: Tenant state processors act on
        synchronizer: Side-effect collaborator used by repository processors
        deduplicate_deliveries: Return the earlier result for a repeated
            delivery id instead of processing it again

    Example:
        >>> router = EventRouter(authenticator, registry, synchronizer)
        >>> result = await router.process_webhook("push", body, signature, delivery_id)
        >>> result.success
        True
    """

    def __init__(
        self,
        authenticator: AppAuthenticator,
        registry: TenantRegistry,
        synchronizer: ProjectDataSynchronizer,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        deduplicate_deliveries: bool = False,
        real_time_sync: bool = True,
        compliance_checks: bool = True,
    ):
        self.authenticator = authenticator
        self.registry = registry
        self.synchronizer = synchronizer
        self.deduplicate_deliveries = deduplicate_deliveries

        self._history: Deque[ProcessedEvent] = deque(maxlen=history_size)
        self._deliveries: "OrderedDict[str, ProcessedEvent]" = OrderedDict()
        self._delivery_cap = history_size
        self._processors: Dict[str, EventProcessor] = {}
        self._pending: Set[asyncio.Task] = set()
        self._signature_failures = 0
        self._duplicate_deliveries = 0

        self._register_defaults(real_time_sync=real_time_sync, compliance_checks=compliance_checks)

    def _register_defaults(self, *, real_time_sync: bool, compliance_checks: bool) -> None:
        self.register_processor(
            WebhookEventType.INSTALLATION, InstallationProcessor(self.registry)
        )
        self.register_processor(
            WebhookEventType.INSTALLATION_REPOSITORIES,
            InstallationRepositoriesProcessor(self.registry),
        )
        self.register_processor(
            WebhookEventType.PUSH,
            PushProcessor(
                self.registry, self.synchronizer, self.schedule, real_time_sync=real_time_sync
            ),
        )
        self.register_processor(
            WebhookEventType.PULL_REQUEST,
            PullRequestProcessor(
                self.registry, self.synchronizer, compliance_checks=compliance_checks
            ),
        )
        self.register_processor(
            WebhookEventType.ISSUES, IssuesProcessor(self.registry, self.synchronizer)
        )
        security = SecurityProcessor(self.registry, self.synchronizer)
        for event_type in SECURITY_EVENT_TYPES:
            self.register_processor(event_type, security)

    def register_processor(
        self, event_type: Union[str, WebhookEventType], processor: EventProcessor
    ) -> None:
        """Register (or replace) the processor for an event type."""
        key = event_type.value if isinstance(event_type, WebhookEventType) else event_type
        self._processors[key] = processor

    @property
    def registered_event_types(self) -> List[str]:
        return sorted(self._processors)

    # -----------------------------------------------------------------------
    # Processing
    # -----------------------------------------------------------------------

    async def process_webhook(
        self,
        event_type: str,
        raw_payload: Union[bytes, str],
        signature: Optional[str],
        delivery_id: Optional[str] = None,
    ) -> ProcessedEvent:
        """Verify, decode, dispatch and record one webhook delivery.

        Args:
            event_type: Value of the X-GitHub-Event header
            raw_payload: Raw request body exactly as received
            signature: Value of the X-Hub-Signature-256 header
            delivery_id: Value of the X-GitHub-Delivery header

        Returns:
            The recorded processing outcome

        Raises:
            SignatureVerificationFailure: If the signature does not match
        """
        if not self.authenticator.verify_webhook_signature(raw_payload, signature):
            self._signature_failures += 1
            logger.warning(
                f"Rejected {event_type} delivery with invalid signature",
                extra={"event_type": event_type, "delivery_id": delivery_id},
            )
            raise SignatureVerificationFailure(
                details={"event_type": event_type, "delivery_id": delivery_id}
            )

        if self.deduplicate_deliveries and delivery_id and delivery_id in self._deliveries:
            self._duplicate_deliveries += 1
            logger.info(
                f"Skipping repeated delivery {delivery_id}",
                extra={"event_type": event_type, "delivery_id": delivery_id},
            )
            return self._deliveries[delivery_id]

        try:
            payload = json.loads(raw_payload)
        except ValueError as exc:
            return self._record(
                ProcessedEvent(
                    type=event_type,
                    success=False,
                    error=f"Invalid JSON payload: {exc}",
                    delivery_id=delivery_id,
                )
            )
        if not isinstance(payload, dict):
            return self._record(
                ProcessedEvent(
                    type=event_type,
                    success=False,
                    error="Webhook payload is not a JSON object",
                    delivery_id=delivery_id,
                )
            )

        event = WebhookEvent.from_payload(event_type, payload, delivery_id)
        processor = self._processors.get(event_type)
        if processor is None:
            logger.warning(
                f"No processor found for event type: {event_type}",
                extra={"event_type": event_type, "delivery_id": delivery_id},
            )
            return self._record(
                ProcessedEvent.for_event(
                    event, success=False, error=f"No processor for event type: {event_type}"
                )
            )

        try:
            result = await processor.process(event)
        except Exception as exc:
            logger.error(
                f"Processor for {event_type} raised: {exc}",
                exc_info=True,
                extra={"event_type": event_type, "delivery_id": delivery_id},
            )
            result = ProcessedEvent.for_event(
                event, success=False, error=str(exc) or type(exc).__name__
            )
        return self._record(result)

    def _record(self, result: ProcessedEvent) -> ProcessedEvent:
        self._history.append(result)
        if result.delivery_id:
            self._deliveries[result.delivery_id] = result
            while len(self._deliveries) > self._delivery_cap:
                self._deliveries.popitem(last=False)

        log = logger.info if result.success else logger.warning
        log(
            f"Processed {result.type} event: {'ok' if result.success else result.error}",
            extra={
                "event_id": result.id,
                "event_type": result.type,
                "action": result.action,
                "installation_id": result.installation_id,
                "repository": result.repository_full_name,
                "delivery_id": result.delivery_id,
                "success": result.success,
            },
        )
        return result

    # -----------------------------------------------------------------------
    # Background side effects
    # -----------------------------------------------------------------------

    def schedule(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run a side effect outside the delivery's critical path."""
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_side_effect_done)
        return task

    def _on_side_effect_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=exc,
                extra={"task": task.get_name()},
            )

    @property
    def pending_tasks(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled side effect to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def cancel_pending(self) -> None:
        """Cancel scheduled side effects that have not finished."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} pending background tasks")

    # -----------------------------------------------------------------------
    # History and statistics
    # -----------------------------------------------------------------------

    def get_event_history(
        self, installation_id: Optional[int] = None, limit: int = 100
    ) -> List[ProcessedEvent]:
        """Return the most recent events, oldest first.

        Args:
            installation_id: Only events for this installation
            limit: Maximum number of events
        """
        events = list(self._history)
        if installation_id is not None:
            events = [e for e in events if e.installation_id == installation_id]
        if limit <= 0:
            return []
        return events[-limit:]

    def get_processing_stats(self) -> ProcessingStats:
        """Derive aggregate statistics from the current history."""
        events = list(self._history)
        total = len(events)
        successful = sum(1 for e in events if e.success)

        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.type] = by_type.get(event.type, 0) + 1

        failures = [e for e in events if not e.success]
        return ProcessingStats(
            total_events=total,
            successful_events=successful,
            failed_events=total - successful,
            success_rate=(successful / total) * 100 if total else 0.0,
            events_by_type=by_type,
            recent_errors=failures[-RECENT_ERRORS_LIMIT:],
            signature_failures=self._signature_failures,
            duplicate_deliveries=self._duplicate_deliveries,
        )

    @property
    def history_size(self) -> int:
        return len(self._history)


__all__ = ["DEFAULT_HISTORY_SIZE", "EventRouter"]
