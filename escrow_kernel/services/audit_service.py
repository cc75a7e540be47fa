"""
ContractAuditService -- append-only contract history.

Every contract status change, review, dispute action and administrative
override writes one ``ContractAuditLog`` row in the same transaction as the
change, carrying the explicit acting user.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select

from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.audit_log import ContractAuditLog
from escrow_kernel.models.contract import Contract
from escrow_kernel.services.base import BaseService
from escrow_kernel.services.outbox_service import jsonable

logger = get_logger("services.audit")


class ContractAuditService(BaseService[ContractAuditLog]):

    def record(
        self,
        contract: Contract,
        actor_id: UUID,
        action: str,
        old_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ContractAuditLog:
        entry = ContractAuditLog(
            contract_id=contract.id,
            actor_id=actor_id,
            action=action,
            old_status=old_status,
            new_status=new_status,
            details=jsonable(details) if details else None,
            created_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "contract_audit_recorded",
            extra={
                "contract_id": str(contract.id),
                "actor_id": str(actor_id),
                "action": action,
                "old_status": old_status,
                "new_status": new_status,
            },
        )
        return entry

    def history(self, contract_id: UUID) -> list[ContractAuditLog]:
        return list(
            self.session.execute(
                select(ContractAuditLog)
                .where(ContractAuditLog.contract_id == contract_id)
                .order_by(ContractAuditLog.created_at, ContractAuditLog.id)
            ).scalars()
        )
