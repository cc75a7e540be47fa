"""Offers and the offer -> contract gate."""

from escrow_modules.offers.service import OfferService
from escrow_modules.offers.workflows import OFFER_WORKFLOW

__all__ = ["OFFER_WORKFLOW", "OfferService"]
