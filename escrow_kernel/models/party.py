"""
Module: escrow_kernel.models.party
Responsibility: Marketplace accounts (brands, creators, admins) and the
    account restrictions the deadline policy applies to creators.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - suspended_until / penalty_until only ever move forward in time;
      the penalty service refuses to shorten an active restriction.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_kernel.db.base import TrackedBase


class PartyRole(str, Enum):
    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"


class Party(TrackedBase):
    """
    A marketplace account.

    Guarantees:
        - role is fixed at creation.
        - bank_account_holder / bank_document are what withdrawal
          verification compares payout details against.
    """

    __tablename__ = "parties"

    __table_args__ = (
        Index("idx_party_role", "role"),
    )

    role: Mapped[str] = mapped_column(String(20), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Restrictions applied by the deadline policy
    suspended_until: Mapped[datetime | None] = mapped_column(nullable=True)
    penalty_until: Mapped[datetime | None] = mapped_column(nullable=True)

    # Payout identity
    bank_account_holder: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bank_document: Mapped[str | None] = mapped_column(String(32), nullable=True)

    def is_suspended(self, now: datetime) -> bool:
        return self.suspended_until is not None and self.suspended_until > now

    def is_penalized(self, now: datetime) -> bool:
        return self.penalty_until is not None and self.penalty_until > now

    @property
    def is_creator(self) -> bool:
        return self.role == PartyRole.CREATOR.value

    @property
    def is_brand(self) -> bool:
        return self.role == PartyRole.BRAND.value

    @property
    def is_admin(self) -> bool:
        return self.role == PartyRole.ADMIN.value

    def __repr__(self) -> str:
        return f"<Party {self.display_name} ({self.role})>"
