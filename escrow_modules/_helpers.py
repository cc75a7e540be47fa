"""
Shared helpers for module services.

Used by escrow_modules/*/service.py to reduce duplication when turning
kernel errors into ``ActionResult`` values and when committing or rolling
back after an operation.

Architecture: Modules layer.  Imports only from escrow_kernel.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.exceptions import (
    EscrowKernelError,
    LedgerInvariantViolationError,
    NotFoundError,
    PartyNotFoundError,
    UnauthorizedActorError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.party import Party
from escrow_kernel.services.outbox_service import OutboxPublisher

logger = get_logger("modules.helpers")

# User-facing (pt-BR) text per error code.
MESSAGES: dict[str, str] = {
    "INVALID_TRANSITION": "Operação não permitida no status atual",
    "REVISION_LIMIT_EXCEEDED": "Limite de revisões atingido",
    "INSUFFICIENT_BALANCE": "Saldo insuficiente para o saque",
    "INVALID_AMOUNT": "Valor inválido",
    "WITHDRAWAL_LIMIT": "Valor fora dos limites do método de saque",
    "WITHDRAWAL_METHOD_UNAVAILABLE": "Método de saque indisponível",
    "INVALID_WITHDRAWAL_DETAILS": "Dados para saque incompletos",
    "WITHDRAWAL_FAILED": "Falha no processamento do saque",
    "EXTERNAL_GATEWAY_ERROR": "Erro ao comunicar com o processador de pagamentos",
    "GATEWAY_TIMEOUT": "Pagamento em processamento, aguardando confirmação",
    "OPTIMISTIC_LOCK_CONFLICT": "Registro alterado por outra operação, tente novamente",
    "OFFER_NOT_ACCEPTABLE": "Esta oferta não pode mais ser aceita",
    "REVIEW_NOT_ALLOWED": "Avaliação não permitida",
    "UNAUTHORIZED_ACTOR": "Você não tem permissão para esta ação",
}

NOT_FOUND_MESSAGE = "Registro não encontrado"
GENERIC_MESSAGE = "Não foi possível concluir a operação"


def message_for(exc: EscrowKernelError) -> str:
    if isinstance(exc, NotFoundError):
        return NOT_FOUND_MESSAGE
    return MESSAGES.get(exc.code, GENERIC_MESSAGE)


def failure_result(
    exc: EscrowKernelError,
    entity_id: UUID | None = None,
    **data: Any,
) -> ActionResult:
    """Convert an expected business error into a failed ``ActionResult``."""
    logger.info(
        "action_rejected",
        extra={
            "error_code": exc.code,
            "error": str(exc),
            "entity_id": str(entity_id) if entity_id else None,
        },
    )
    return ActionResult.fail(message_for(exc), exc.code, entity_id, detail=str(exc), **data)


def commit_or_rollback(session: Session, result: ActionResult) -> None:
    """Commit the session if the action succeeded, otherwise rollback."""
    if result.success:
        session.commit()
    else:
        session.rollback()


def publish_after_commit(publisher: OutboxPublisher | None) -> None:
    """Deliver outbox rows of the committed transaction, best-effort."""
    if publisher is None:
        return
    try:
        publisher.publish_pending()
    except Exception:
        logger.warning("outbox_publish_after_commit_failed", exc_info=True)


def load(session: Session, model: type, entity_id: UUID, not_found: type[NotFoundError]):
    entity = session.get(model, entity_id)
    if entity is None:
        raise not_found(str(entity_id))
    return entity


def load_party(session: Session, party_id: UUID) -> Party:
    return load(session, Party, party_id, PartyNotFoundError)


def is_admin(session: Session, actor_id: UUID) -> bool:
    """Platform admins and the system actor (scheduled sweeps)."""
    if actor_id == SYSTEM_ACTOR_ID:
        return True
    party = session.get(Party, actor_id)
    return party is not None and party.is_admin


def require_actor(
    session: Session,
    actor_id: UUID,
    allowed: tuple[UUID, ...],
    action: str,
    entity_id: UUID,
    allow_admin: bool = True,
) -> None:
    """Raise ``UnauthorizedActorError`` unless the actor may act here."""
    if actor_id in allowed:
        return
    if allow_admin and is_admin(session, actor_id):
        return
    raise UnauthorizedActorError(str(actor_id), action, str(entity_id))


class ModuleService:
    """
    Transaction-owning base for module services.

    Contract:
        With ``auto_commit=True`` (default) every public operation commits
        on success and rolls back on failure or unexpected exception, then
        hands the outbox to the publisher.  With ``auto_commit=False`` the
        service only flushes and leaves the boundary to the caller (the
        batch runner's per-item SAVEPOINT).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._publisher = publisher
        self._auto_commit = auto_commit

    def _finish(self, result: ActionResult) -> ActionResult:
        if self._auto_commit:
            commit_or_rollback(self._session, result)
            if result.success:
                publish_after_commit(self._publisher)
        else:
            self._session.flush()
        return result

    def _abort(self) -> None:
        if self._auto_commit:
            self._session.rollback()

    def _reject(self, exc: EscrowKernelError, entity_id: UUID | None = None, **data: Any) -> ActionResult:
        """Business failure; invariant violations are never swallowed."""
        if isinstance(exc, LedgerInvariantViolationError):
            self._abort()
            raise exc
        return failure_result(exc, entity_id, **data)

    def _checkpoint(self) -> None:
        """Make intermediate state durable before an external call."""
        if self._auto_commit:
            self._session.commit()
        else:
            self._session.flush()
