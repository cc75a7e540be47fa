"""
Offer Module Service (``escrow_modules.offers.service``).

Responsibility
--------------
Brand offers to creators and their acceptance.  Accepting an offer is
the only way a Contract is created: in one transaction the offer becomes
``accepted``, the budget is split into platform fee and creator amount,
the contract is created ``pending`` / ``payment_pending`` with its four
milestones, and the creation is audited.  Funding is a separate step
(``FundingService``).

Invariants enforced
-------------------
* One contract per offer: accepting twice returns the existing contract;
  a lost insert race on ``uq_contract_offer`` reuses the winner's row.
* platform_fee + creator_amount == budget (``split_budget``).
* Expired or non-pending offers are never accepted.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_config.schema import ContractPolicy, FeePolicy, OfferPolicy
from escrow_kernel.domain.actors import SYSTEM_ACTOR_ID
from escrow_kernel.domain.clock import Clock
from escrow_kernel.domain.dtos import ActionResult
from escrow_kernel.domain.values import ZERO, split_budget, to_cents
from escrow_kernel.domain.workflow import require_action
from escrow_kernel.exceptions import (
    EscrowKernelError,
    InvalidAmountError,
    InvalidTransitionError,
    OfferNotAcceptableError,
    OfferNotFoundError,
)
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.campaign import Campaign, CampaignStatus
from escrow_kernel.models.contract import Contract, ContractStatus, WorkflowStatus
from escrow_kernel.models.offer import Offer, OfferStatus
from escrow_kernel.services.audit_service import ContractAuditService
from escrow_kernel.services.outbox_service import OutboxPublisher, OutboxService
from escrow_modules._helpers import ModuleService, load, require_actor
from escrow_modules.milestones.service import MilestoneTimeline
from escrow_modules.offers.workflows import OFFER_WORKFLOW

logger = get_logger("modules.offers.service")


class OfferService(ModuleService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: OutboxPublisher | None = None,
        auto_commit: bool = True,
        fees: FeePolicy | None = None,
        contracts: ContractPolicy | None = None,
        offers: OfferPolicy | None = None,
    ):
        super().__init__(session, clock, publisher, auto_commit)
        self._fees = fees or FeePolicy()
        self._contracts = contracts or ContractPolicy()
        self._offers = offers or OfferPolicy()
        self._outbox = OutboxService(session, self._clock)
        self._audit = ContractAuditService(session, self._clock)
        self._timeline = MilestoneTimeline(session, self._clock, self._outbox)

    def _load(self, offer_id: UUID) -> Offer:
        return load(self._session, Offer, offer_id, OfferNotFoundError)

    def _move(self, offer: Offer, action: str, actor_id: UUID) -> None:
        transition = require_action(OFFER_WORKFLOW, "Offer", offer.id, offer.status, action)
        offer.status = transition.to_state
        offer.updated_by_id = actor_id

    def _contract_for(self, offer_id: UUID) -> Contract | None:
        return self._session.execute(
            select(Contract).where(Contract.offer_id == offer_id)
        ).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_offer(
        self,
        brand_id: UUID,
        creator_id: UUID,
        title: str,
        budget: Decimal | int | str,
        actor_id: UUID,
        estimated_days: int | None = None,
        description: str | None = None,
        campaign_id: UUID | None = None,
    ) -> ActionResult:
        with LogContext.bind(actor_id=str(actor_id), creator_id=str(creator_id)):
            try:
                require_actor(self._session, actor_id, (brand_id,), "offer for", brand_id)
                try:
                    value = to_cents(budget)
                except ValueError as exc:
                    raise InvalidAmountError(budget, str(exc)) from exc
                if value <= ZERO:
                    raise InvalidAmountError(value)
                days = estimated_days or self._contracts.default_estimated_days
                if days < 1:
                    raise InvalidAmountError(Decimal(days), "estimated_days must be >= 1")

                now = self._clock.now()
                offer = Offer(
                    brand_id=brand_id,
                    creator_id=creator_id,
                    campaign_id=campaign_id,
                    title=title,
                    description=description,
                    budget=value,
                    estimated_days=days,
                    status=OfferStatus.PENDING.value,
                    expires_at=now + timedelta(days=self._offers.default_expiry_days),
                    created_at=now,
                    created_by_id=actor_id,
                )
                self._session.add(offer)
                self._session.flush()
                self._outbox.notify(
                    creator_id,
                    "offer_received",
                    {"offer_id": offer.id, "title": title, "budget": value},
                )
                logger.info(
                    "offer_created",
                    extra={"offer_id": str(offer.id), "budget": str(value), "estimated_days": days},
                )
                result = ActionResult.ok("Oferta enviada", entity_id=offer.id)
            except EscrowKernelError as exc:
                result = self._reject(exc)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    # -------------------------------------------------------------------------
    # Accept
    # -------------------------------------------------------------------------

    def accept_offer(self, offer_id: UUID, actor_id: UUID) -> ActionResult:
        """Creator accepts: offer accepted, contract and timeline created."""
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                offer = self._load(offer_id)
                require_actor(
                    self._session, actor_id, (offer.creator_id,), "accept", offer.id,
                    allow_admin=False,
                )
                existing = self._contract_for(offer.id)
                if offer.status == OfferStatus.ACCEPTED.value and existing is not None:
                    return self._finish(ActionResult.ok(
                        "Oferta já aceita",
                        entity_id=offer.id,
                        contract_id=existing.id,
                        already_accepted=True,
                    ))

                now = self._clock.now()
                if offer.status != OfferStatus.PENDING.value:
                    raise OfferNotAcceptableError(str(offer.id), offer.status, "offer is not pending")
                if offer.is_expired(now):
                    raise OfferNotAcceptableError(str(offer.id), offer.status, "offer has expired")

                self._move(offer, "accept", actor_id)
                offer.accepted_at = now
                contract = existing or self._create_contract(offer, actor_id, now)

                self._outbox.notify(
                    offer.brand_id,
                    "offer_accepted",
                    {"offer_id": offer.id, "contract_id": contract.id, "title": offer.title},
                )
                self._outbox.notify(
                    offer.creator_id,
                    "contract_created",
                    {"contract_id": contract.id, "title": contract.title, "amount": contract.creator_amount},
                )
                result = ActionResult.ok(
                    "Oferta aceita",
                    entity_id=offer.id,
                    contract_id=contract.id,
                    platform_fee=contract.platform_fee,
                    creator_amount=contract.creator_amount,
                    already_accepted=False,
                )
            except EscrowKernelError as exc:
                result = self._reject(exc, offer_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def _create_contract(self, offer: Offer, actor_id: UUID, now: datetime) -> Contract:
        split = split_budget(offer.budget, self._fees.platform_fee_rate)
        campaign = self._session.get(Campaign, offer.campaign_id) if offer.campaign_id else None

        savepoint = self._session.begin_nested()
        try:
            contract = Contract(
                brand_id=offer.brand_id,
                creator_id=offer.creator_id,
                campaign_id=offer.campaign_id,
                offer_id=offer.id,
                title=offer.title,
                description=offer.description,
                budget=split.budget,
                platform_fee=split.platform_fee,
                creator_amount=split.creator_amount,
                estimated_days=offer.estimated_days,
                status=ContractStatus.PENDING.value,
                workflow_status=WorkflowStatus.PAYMENT_PENDING.value,
                revision_count=0,
                max_revisions=self._contracts.max_revisions,
                chat_room_id=campaign.chat_room_id if campaign else None,
                created_at=now,
                created_by_id=actor_id,
            )
            self._session.add(contract)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            contract = self._contract_for(offer.id)
            if contract is None:
                raise
            return contract

        self._timeline.create_timeline(contract, now, offer.estimated_days, actor_id)
        if campaign is not None and campaign.status == CampaignStatus.OPEN.value:
            campaign.status = CampaignStatus.IN_PROGRESS.value
            campaign.updated_by_id = actor_id
        self._session.flush()

        self._audit.record(
            contract, actor_id, "contract_created",
            new_status=contract.status,
            details={
                "offer_id": offer.id,
                "budget": split.budget,
                "platform_fee": split.platform_fee,
                "creator_amount": split.creator_amount,
            },
        )
        logger.info(
            "contract_created",
            extra={
                "contract_id": str(contract.id),
                "offer_id": str(offer.id),
                "budget": str(split.budget),
                "platform_fee": str(split.platform_fee),
                "creator_amount": str(split.creator_amount),
            },
        )
        return contract

    # -------------------------------------------------------------------------
    # Decline / withdraw / expire
    # -------------------------------------------------------------------------

    def reject_offer(self, offer_id: UUID, actor_id: UUID, reason: str | None = None) -> ActionResult:
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                offer = self._load(offer_id)
                require_actor(
                    self._session, actor_id, (offer.creator_id,), "reject", offer.id,
                    allow_admin=False,
                )
                self._move(offer, "reject", actor_id)
                offer.rejected_at = self._clock.now()
                offer.rejection_reason = reason
                self._session.flush()
                self._outbox.notify(
                    offer.brand_id,
                    "offer_rejected",
                    {"offer_id": offer.id, "title": offer.title, "reason": reason},
                )
                logger.info("offer_rejected", extra={"offer_id": str(offer.id)})
                result = ActionResult.ok("Oferta recusada", entity_id=offer.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, offer_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def cancel_offer(self, offer_id: UUID, actor_id: UUID) -> ActionResult:
        with LogContext.bind(actor_id=str(actor_id)):
            try:
                offer = self._load(offer_id)
                require_actor(self._session, actor_id, (offer.brand_id,), "cancel", offer.id)
                self._move(offer, "cancel", actor_id)
                self._session.flush()
                self._outbox.notify(
                    offer.creator_id,
                    "offer_cancelled",
                    {"offer_id": offer.id, "title": offer.title},
                )
                logger.info("offer_cancelled", extra={"offer_id": str(offer.id)})
                result = ActionResult.ok("Oferta cancelada", entity_id=offer.id)
            except EscrowKernelError as exc:
                result = self._reject(exc, offer_id)
            except Exception:
                self._abort()
                raise
            return self._finish(result)

    def stale_offer_ids(self, now: datetime | None = None) -> list[UUID]:
        now = now or self._clock.now()
        return list(self._session.execute(
            select(Offer.id)
            .where(Offer.status == OfferStatus.PENDING.value)
            .where(Offer.expires_at.is_not(None))
            .where(Offer.expires_at <= now)
            .order_by(Offer.expires_at, Offer.id)
        ).scalars().all())

    def _expire(self, offer: Offer, now: datetime) -> None:
        if not offer.is_expired(now):
            raise InvalidTransitionError(
                "Offer", str(offer.id), offer.status, OfferStatus.EXPIRED.value,
                "offer has not expired yet",
            )
        self._move(offer, "expire", SYSTEM_ACTOR_ID)
        self._session.flush()
        self._outbox.notify(
            offer.brand_id,
            "offer_expired",
            {"offer_id": offer.id, "title": offer.title},
        )

    def expire_offer(self, offer_id: UUID, now: datetime | None = None) -> ActionResult:
        """Flip one stale pending offer to expired."""
        now = now or self._clock.now()
        try:
            offer = self._load(offer_id)
            self._expire(offer, now)
            result = ActionResult.ok("Oferta expirada", entity_id=offer.id)
        except EscrowKernelError as exc:
            result = self._reject(exc, offer_id)
        except Exception:
            self._abort()
            raise
        return self._finish(result)

    def expire_stale_offers(self, now: datetime | None = None) -> ActionResult:
        """Expire every pending offer past expires_at, in one transaction."""
        now = now or self._clock.now()
        try:
            expired = []
            for offer_id in self.stale_offer_ids(now):
                self._expire(self._load(offer_id), now)
                expired.append(offer_id)
            logger.info("stale_offers_expired", extra={"count": len(expired)})
            result = ActionResult.ok(
                f"{len(expired)} oferta(s) expirada(s)", expired=expired,
            )
        except EscrowKernelError as exc:
            result = self._reject(exc)
        except Exception:
            self._abort()
            raise
        return self._finish(result)
