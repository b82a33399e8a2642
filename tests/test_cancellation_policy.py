"""
Tests for the cancellation refund rules.

The boundaries are inclusive: cancelling exactly 24h before start under the
flexible policy is still a full refund.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fiesta_escrow.models.experience import CancellationPolicy
from fiesta_escrow.services.cancellation_policy import calculate_refund, hours_until, refund_percent

NOW = datetime(2026, 8, 14, 12, 0, tzinfo=timezone.utc)


def _starts_in(hours: float) -> datetime:
    return NOW + timedelta(hours=hours)


class TestRefundPercent:
    @pytest.mark.parametrize(
        "policy, hours, percent",
        [
            (CancellationPolicy.FLEXIBLE, 24, 100),
            (CancellationPolicy.FLEXIBLE, 23.9, 0),
            (CancellationPolicy.MODERATE, 72, 100),
            (CancellationPolicy.MODERATE, 48, 50),
            (CancellationPolicy.MODERATE, 24, 50),
            (CancellationPolicy.MODERATE, 10, 0),
            (CancellationPolicy.STRICT, 168, 100),
            (CancellationPolicy.STRICT, 100, 50),
            (CancellationPolicy.STRICT, 71, 0),
            (CancellationPolicy.NON_REFUNDABLE, 1000, 0),
            (CancellationPolicy.FULL, -5, 100),
        ],
    )
    def test_steps(self, policy, hours, percent):
        assert refund_percent(policy, hours) == percent

    @pytest.mark.parametrize("policy", list(CancellationPolicy))
    def test_no_start_date_is_far_future(self, policy):
        expected = 0 if policy == CancellationPolicy.NON_REFUNDABLE else 100
        assert refund_percent(policy, None) == expected

    def test_started_experience_refunds_nothing(self):
        assert refund_percent(CancellationPolicy.FLEXIBLE, -1) == 0


class TestCalculateRefund:
    def test_half_refund_rounds_to_cent(self):
        result = calculate_refund("moderate", 2501, _starts_in(30), now=NOW)
        assert result.policy == CancellationPolicy.MODERATE
        assert result.refund_percent == 50
        assert result.refund_cents == 1250
        assert result.hours_until_start == pytest.approx(30)

    def test_full_policy_ignores_timing(self):
        result = calculate_refund(CancellationPolicy.FULL, 2500, _starts_in(-2), now=NOW)
        assert result.refund_cents == 2500

    def test_naive_start_date_is_utc(self):
        naive = _starts_in(48).replace(tzinfo=None)
        assert hours_until(naive, now=NOW) == pytest.approx(48)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            calculate_refund("generous", 2500, None, now=NOW)
