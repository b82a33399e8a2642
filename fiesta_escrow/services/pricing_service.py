"""
Group pricing for experiences.

A match is priced once, at request time, from the experience's base price
per person and its optional group tiers. The first tier whose
[min_people, max_people] range contains the participant count replaces the
base price (max_people NULL means open-ended).

The match service depends on the small PricingService protocol rather than
this module directly, so tests and future catalogue services can plug in
their own pricing.
"""

import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fiesta_escrow.exceptions import NotFoundError, ValidationError
from fiesta_escrow.models.experience import Experience


@dataclass(frozen=True)
class GroupPrice:
    price_per_person_cents: int
    total_price_cents: int
    # Whole percent off the base price, 0 when no tier applies
    discount_percent: int
    original_price_per_person_cents: int
    participants: int

    @property
    def savings_cents(self) -> int:
        return (self.original_price_per_person_cents - self.price_per_person_cents) * self.participants


class PricingService(Protocol):
    async def calculate_group_price(
        self, db: AsyncSession, experience_id: uuid.UUID, participants: int
    ) -> GroupPrice:
        ...


class GroupPricingService:
    """Prices matches from Experience.price_cents and GroupPricingTier rows."""

    async def calculate_group_price(
        self,
        db: AsyncSession,
        experience_id: uuid.UUID,
        participants: int,
    ) -> GroupPrice:
        result = await db.execute(
            select(Experience)
            .where(Experience.id == experience_id)
            .options(selectinload(Experience.pricing_tiers))
            .execution_options(populate_existing=True)
        )
        experience = result.scalar_one_or_none()
        if experience is None:
            raise NotFoundError("Experience", experience_id)

        minimum = experience.min_participants or 1
        if participants < minimum:
            raise ValidationError(f"Minimum participants is {minimum}")
        if experience.max_participants is not None and participants > experience.max_participants:
            raise ValidationError(f"Maximum participants is {experience.max_participants}")

        base = experience.price_cents or 0
        per_person = base
        for tier in experience.pricing_tiers:
            if participants >= tier.min_people and (
                tier.max_people is None or participants <= tier.max_people
            ):
                per_person = tier.price_per_person_cents
                break

        discount = round((base - per_person) * 100 / base) if base > 0 else 0
        return GroupPrice(
            price_per_person_cents=per_person,
            total_price_cents=per_person * participants,
            discount_percent=discount,
            original_price_per_person_cents=base,
            participants=participants,
        )
