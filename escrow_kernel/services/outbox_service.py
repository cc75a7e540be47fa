"""
Outbox -- side effects recorded inside the transaction, delivered after it.

Responsibility:
    ``OutboxService`` enqueues notifications, chat system messages and
    chat archival as ``OutboxMessage`` rows (flush-only, part of the
    caller's transaction).  ``OutboxPublisher`` delivers pending rows
    through the ``NotificationDispatcher`` / ``ChatSink`` ports after the
    business transaction committed.

Invariants enforced:
    - Nothing is delivered for a transaction that rolled back: its rows
      are rolled back with it.
    - Delivery is best-effort.  A failing dispatcher marks the row failed
      and increments ``attempts``; the failure is logged and swallowed so
      it can never undo the committed business change.
    - Rows stop being retried after ``max_attempts``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.ports import ChatSink, NotificationDispatcher
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.outbox import OutboxChannel, OutboxMessage, OutboxStatus
from escrow_kernel.services.base import BaseService

logger = get_logger("services.outbox")


def jsonable(value: Any) -> Any:
    """Convert UUID / Decimal / datetime / Enum leaves to JSON-safe values."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class OutboxService(BaseService[OutboxMessage]):
    """Enqueue side effects in the caller's transaction."""

    def _enqueue(
        self,
        channel: OutboxChannel,
        template_key: str,
        payload: dict[str, Any],
        recipient_id: UUID | None = None,
        room_id: str | None = None,
    ) -> OutboxMessage:
        message = OutboxMessage(
            channel=channel.value,
            recipient_id=recipient_id,
            room_id=room_id,
            template_key=template_key,
            payload=jsonable(payload),
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_at=self.clock.now(),
        )
        self.session.add(message)
        self.session.flush()
        return message

    def notify(
        self, recipient_id: UUID, template_key: str, payload: dict[str, Any],
    ) -> OutboxMessage:
        return self._enqueue(
            OutboxChannel.NOTIFICATION, template_key, payload, recipient_id=recipient_id,
        )

    def notify_parties(
        self, recipient_ids: tuple[UUID, ...], template_key: str, payload: dict[str, Any],
    ) -> list[OutboxMessage]:
        return [self.notify(r, template_key, payload) for r in recipient_ids]

    def post_chat_message(self, room_id: str, text: str) -> OutboxMessage:
        return self._enqueue(
            OutboxChannel.CHAT_MESSAGE, "system_message", {"text": text}, room_id=room_id,
        )

    def archive_chat_room(self, room_id: str, reason: str) -> OutboxMessage:
        return self._enqueue(
            OutboxChannel.CHAT_ARCHIVE, "archive_room", {"reason": reason}, room_id=room_id,
        )


@dataclass(frozen=True)
class PublishReport:
    sent: int = 0
    failed: int = 0


class OutboxPublisher:
    """
    Deliver pending outbox rows.

    Contract:
        Call only after the business transaction committed.  The publisher
        commits its own bookkeeping (sent/failed markers) on the session it
        is given.
    """

    def __init__(
        self,
        session: Session,
        dispatcher: NotificationDispatcher,
        chat_sink: ChatSink,
        clock: Clock | None = None,
        max_attempts: int = 5,
    ):
        self._session = session
        self._dispatcher = dispatcher
        self._chat_sink = chat_sink
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    def _deliver(self, message: OutboxMessage) -> None:
        payload = dict(message.payload or {})
        if message.channel == OutboxChannel.NOTIFICATION.value:
            self._dispatcher.notify(message.recipient_id, message.template_key, payload)
        elif message.channel == OutboxChannel.CHAT_MESSAGE.value:
            self._chat_sink.post_system_message(message.room_id, payload.get("text", ""))
        elif message.channel == OutboxChannel.CHAT_ARCHIVE.value:
            self._chat_sink.archive_room(message.room_id, payload.get("reason", ""))
        else:
            raise ValueError(f"Unknown outbox channel {message.channel!r}")

    def publish_pending(self, limit: int = 100, commit: bool = True) -> PublishReport:
        """Deliver up to ``limit`` due rows.

        With ``commit=False`` the bookkeeping is only flushed, for callers
        that own the transaction (the batch runner's SAVEPOINT).
        """
        messages = list(
            self._session.execute(
                select(OutboxMessage)
                .where(
                    or_(
                        OutboxMessage.status == OutboxStatus.PENDING.value,
                        (OutboxMessage.status == OutboxStatus.FAILED.value)
                        & (OutboxMessage.attempts < self._max_attempts),
                    )
                )
                .order_by(OutboxMessage.created_at, OutboxMessage.id)
                .limit(limit)
            ).scalars()
        )

        sent = failed = 0
        for message in messages:
            message.attempts += 1
            try:
                self._deliver(message)
            except Exception as exc:
                # Best-effort: a broken dispatcher must not undo committed work.
                message.status = OutboxStatus.FAILED.value
                message.last_error = str(exc)[:1000]
                failed += 1
                logger.warning(
                    "outbox_delivery_failed",
                    extra={
                        "outbox_id": str(message.id),
                        "channel": message.channel,
                        "template_key": message.template_key,
                        "attempts": message.attempts,
                        "error": str(exc),
                    },
                )
                continue
            message.status = OutboxStatus.SENT.value
            message.sent_at = self._clock.now()
            message.last_error = None
            sent += 1

        if commit:
            self._session.commit()
        else:
            self._session.flush()
        if messages:
            logger.info(
                "outbox_published",
                extra={"sent": sent, "failed": failed},
            )
        return PublishReport(sent=sent, failed=failed)
