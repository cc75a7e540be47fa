"""
Module: escrow_kernel.models.review
Responsibility: Post-completion reviews between the two contract parties.
    The creator's review is the trigger that releases escrow.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from escrow_kernel.models.contract import Contract


class Review(TrackedBase):
    """One party's rating of the other on a completed contract."""

    __tablename__ = "reviews"

    __table_args__ = (
        UniqueConstraint("contract_id", "reviewer_id", name="uq_review_contract_reviewer"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating"),
    )

    contract_id: Mapped[UUID] = mapped_column(ForeignKey("contracts.id"), nullable=False)
    reviewer_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    reviewed_id: Mapped[UUID] = mapped_column(ForeignKey("parties.id"), nullable=False)
    rating: Mapped[int] = mapped_column(nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="public")

    contract: Mapped[Contract] = relationship(back_populates="reviews")

    def __repr__(self) -> str:
        return f"<Review {self.rating}/5 by {self.reviewer_id}>"
