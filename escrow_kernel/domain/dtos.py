"""
Result DTOs returned by module services.

Frozen dataclasses; services never return ORM rows across the
transaction boundary for decisions, only these.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class ActionResult:
    """Structured success/failure of a user-facing action.

    ``message`` is the human-readable (pt-BR) text shown to the user;
    ``code`` is the machine-readable error code on failure.
    """

    success: bool
    message: str
    code: str | None = None
    entity_id: UUID | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, entity_id: UUID | None = None, **data: Any) -> "ActionResult":
        return cls(success=True, message=message, entity_id=entity_id, data=data)

    @classmethod
    def fail(cls, message: str, code: str, entity_id: UUID | None = None, **data: Any) -> "ActionResult":
        return cls(success=False, message=message, code=code, entity_id=entity_id, data=data)


@dataclass(frozen=True)
class FundingResult:
    """Outcome of charging the brand for a contract."""

    success: bool
    status: str
    contract_id: UUID
    external_id: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class DeadlineSweepReport:
    """Counts produced by one deadline/penalty sweep."""

    checked_at: datetime
    delayed_milestones: tuple[UUID, ...] = ()
    suspended_creators: tuple[UUID, ...] = ()
    penalized_creators: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class VerificationWarning:
    """Admin-facing warning about a withdrawal; never blocks processing."""

    withdrawal_id: UUID
    code: str
    message: str
