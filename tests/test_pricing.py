"""
Tests for group pricing.
"""

import uuid

import pytest

from fiesta_escrow.exceptions import NotFoundError, ValidationError
from fiesta_escrow.services.pricing_service import GroupPricingService


@pytest.fixture
def pricing():
    return GroupPricingService()


class TestGroupPricing:
    async def test_base_price_without_tiers(self, db_session, pricing, make_user, make_experience):
        host = await make_user()
        experience = await make_experience(host.id, price_cents=2500)

        quote = await pricing.calculate_group_price(db_session, experience.id, 2)
        assert quote.price_per_person_cents == 2500
        assert quote.total_price_cents == 5000
        assert quote.discount_percent == 0
        assert quote.savings_cents == 0

    async def test_first_matching_tier_wins(self, db_session, pricing, make_user, make_experience):
        host = await make_user()
        experience = await make_experience(
            host.id,
            price_cents=2500,
            tiers=[(2, 4, 2250), (5, None, 2000)],
        )

        small = await pricing.calculate_group_price(db_session, experience.id, 3)
        large = await pricing.calculate_group_price(db_session, experience.id, 6)
        single = await pricing.calculate_group_price(db_session, experience.id, 1)

        assert small.total_price_cents == 6750
        assert small.discount_percent == 10
        assert small.savings_cents == 750
        assert large.total_price_cents == 12000
        assert large.discount_percent == 20
        assert single.total_price_cents == 2500

    async def test_free_experience(self, db_session, pricing, make_user, make_experience):
        host = await make_user()
        experience = await make_experience(host.id, price_cents=None)

        quote = await pricing.calculate_group_price(db_session, experience.id, 4)
        assert quote.total_price_cents == 0
        assert quote.discount_percent == 0

    async def test_participant_bounds(self, db_session, pricing, make_user, make_experience):
        host = await make_user()
        experience = await make_experience(host.id, min_participants=2, max_participants=6)

        with pytest.raises(ValidationError):
            await pricing.calculate_group_price(db_session, experience.id, 1)
        with pytest.raises(ValidationError):
            await pricing.calculate_group_price(db_session, experience.id, 7)

    async def test_unknown_experience(self, db_session, pricing):
        with pytest.raises(NotFoundError):
            await pricing.calculate_group_price(db_session, uuid.uuid4(), 1)
