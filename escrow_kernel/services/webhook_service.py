"""
WebhookEventService -- replay detection for processor webhooks.

A webhook is registered by its external event id before any effect is
applied.  A second delivery of an already processed event raises
``DuplicateOperationError``, which callers treat as success.  Events that
previously failed may be processed again.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from escrow_kernel.exceptions import DuplicateOperationError
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.webhook_event import WebhookEvent, WebhookEventStatus
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.outbox_service import jsonable

logger = get_logger("services.webhook")


class WebhookEventService(BaseService[WebhookEvent]):

    def _find(self, external_event_id: str) -> WebhookEvent | None:
        return self.session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.external_event_id == external_event_id)
            .with_for_update()
        ).scalar_one_or_none()

    def register(
        self,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
        provider: str = "stripe",
    ) -> WebhookEvent:
        """Claim an event for processing.

        Raises:
            DuplicateOperationError: the event was already processed.
        """
        existing = self._find(external_event_id)
        if existing is None:
            savepoint = self.session.begin_nested()
            try:
                event = WebhookEvent(
                    external_event_id=external_event_id,
                    provider=provider,
                    event_type=event_type,
                    payload=jsonable(payload),
                    status=WebhookEventStatus.RECEIVED.value,
                    received_at=self.clock.now(),
                )
                self.session.add(event)
                self.session.flush()
                savepoint.commit()
                return event
            except IntegrityError:
                savepoint.rollback()
                existing = self._find(external_event_id)
                if existing is None:
                    raise

        if existing.status == WebhookEventStatus.PROCESSED.value:
            logger.info(
                "webhook_replay_ignored",
                extra={"external_event_id": external_event_id, "event_type": event_type},
            )
            raise DuplicateOperationError("webhook", external_event_id)
        return existing

    def mark_processed(self, event: WebhookEvent) -> None:
        event.status = WebhookEventStatus.PROCESSED.value
        event.processed_at = self.clock.now()
        event.error_message = None
        self.session.flush()

    def mark_failed(self, event: WebhookEvent, error: str) -> None:
        event.status = WebhookEventStatus.FAILED.value
        event.error_message = error[:1000]
        self.session.flush()
