"""
Outbound ports (``escrow_kernel.domain.ports``).

The core talks to three external collaborators.  Each is a narrow
``Protocol`` so production adapters and test doubles are interchangeable.

Gateway error contract:
    - A definitive decline is returned as ``GatewayResult`` with
      ``status == GatewayStatus.FAILED``.
    - Transport or API failures raise ``ExternalGatewayError``.
    - A call whose outcome is unknown raises ``GatewayTimeoutError``;
      callers leave the local aggregate in a pending/processing state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


class GatewayStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class GatewayResult:
    """Answer from the payment processor."""

    status: GatewayStatus
    external_id: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == GatewayStatus.SUCCEEDED


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Fire a templated message at a user.  Failures never block the core."""

    def notify(self, recipient_id: UUID, template_key: str, payload: dict[str, Any]) -> None: ...


@runtime_checkable
class ChatSink(Protocol):
    """System messages and archival for campaign/contract chat rooms."""

    def post_system_message(self, room_id: str, text: str) -> None: ...

    def archive_room(self, room_id: str, reason: str) -> None: ...


@runtime_checkable
class PaymentGateway(Protocol):
    """Stripe-equivalent processor client."""

    def charge_or_subscribe(
        self,
        reference: str,
        amount: Decimal,
        customer_id: UUID,
        metadata: dict[str, Any],
    ) -> GatewayResult: ...

    def retrieve(self, external_id: str) -> GatewayResult: ...

    def cancel(self, external_id: str) -> GatewayResult: ...

    def payout(
        self,
        reference: str,
        amount: Decimal,
        method_code: str,
        details: dict[str, Any],
    ) -> GatewayResult: ...

    def lookup_bank_account(self, details: dict[str, Any]) -> dict[str, Any] | None: ...
