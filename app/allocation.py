"""
Penalty distribution across the funding sources that paid the refundable base.

Credits absorb a penalty first, then bonus, then the card, so the guest's
card refund is only reduced once promotional balances are used up. Whatever
a source did not absorb goes back to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from app.money import ZERO


@dataclass(frozen=True)
class FundingSplit:
    credits: Decimal
    bonus: Decimal
    card: Decimal


@dataclass(frozen=True)
class PenaltyDistribution:
    penalty_from_credits: Decimal
    penalty_from_bonus: Decimal
    penalty_from_card: Decimal
    credits_restored: Decimal
    bonus_restored: Decimal
    card_refund: Decimal

    @property
    def total_penalty(self) -> Decimal:
        return self.penalty_from_credits + self.penalty_from_bonus + self.penalty_from_card


def clamp_sources(
    refundable_base: Decimal,
    credits_applied: Decimal,
    bonus_applied: Decimal,
) -> FundingSplit:
    """
    Cap credits and bonus at the refundable base; the card covers the rest.
    Credits or bonus beyond the base paid for fees and are not refundable.
    """
    credits = min(max(credits_applied, ZERO), refundable_base)
    bonus = min(max(bonus_applied, ZERO), refundable_base - credits)
    return FundingSplit(credits=credits, bonus=bonus, card=refundable_base - credits - bonus)


def distribute(
    penalty_amount: Decimal,
    refundable_base: Decimal,
    credits_applied: Decimal,
    bonus_applied: Decimal,
    card_applied: Decimal,
) -> PenaltyDistribution:
    for name, value in (
        ("penalty_amount", penalty_amount),
        ("refundable_base", refundable_base),
        ("credits_applied", credits_applied),
        ("bonus_applied", bonus_applied),
        ("card_applied", card_applied),
    ):
        if value < 0:
            raise ValueError(f"{name} must be >= 0, got {value}")

    # card_applied is implied by the clamp; it is accepted for symmetry with
    # the booking record and validated above.
    split = clamp_sources(refundable_base, credits_applied, bonus_applied)
    remaining = min(penalty_amount, refundable_base)

    from_credits = min(remaining, split.credits)
    remaining -= from_credits
    from_bonus = min(remaining, split.bonus)
    remaining -= from_bonus
    from_card = min(remaining, split.card)

    return PenaltyDistribution(
        penalty_from_credits=from_credits,
        penalty_from_bonus=from_bonus,
        penalty_from_card=from_card,
        credits_restored=split.credits - from_credits,
        bonus_restored=split.bonus - from_bonus,
        card_refund=split.card - from_card,
    )
