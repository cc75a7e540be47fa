"""
Module: escrow_kernel.models.audit_log
Responsibility: Append-only history of every contract state change and
    administrative action, with the acting user recorded explicitly.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import Base


class ContractAuditLog(Base):
    """One audit entry.  Rows are inserted, never updated."""

    __tablename__ = "contract_audit_logs"

    __table_args__ = (
        Index("idx_contract_audit_contract", "contract_id", "created_at"),
    )

    contract_id: Mapped[UUID] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ContractAuditLog {self.action} {self.old_status}->{self.new_status}>"
