"""Tests for price-state classification and staleness decay."""

from datetime import timedelta

import pytest

from priceguard.freshness import (
    apply_price_state,
    compute_display_price,
    compute_price_state,
    sweep_stale,
)
from priceguard.models import Offer
from priceguard.tests.conftest import FIXED_NOW

TTL = 6 * 3600


def verified_offer(**overrides) -> Offer:
    values = dict(
        offer_id="offer_test",
        source_url="https://www.coupang.com/vp/products/123456",
        raw_price=1000000,
        verified_price=950000,
        verification_status="verified",
        verification_method="api",
        verified_at=FIXED_NOW,
        is_active=True,
    )
    values.update(overrides)
    return Offer(**values)


class TestPriceState:
    """Test the four-way price state."""

    def test_fresh_just_inside_ttl(self):
        """Test that a verification just inside the TTL is fresh."""
        offer = verified_offer()
        now = FIXED_NOW + timedelta(seconds=TTL - 1)
        assert compute_price_state(offer, now, TTL) == "verified_fresh"
        assert compute_display_price(offer, now, TTL) == 950000

    def test_stale_just_past_ttl(self):
        """Test that a verification just past the TTL is stale."""
        offer = verified_offer()
        now = FIXED_NOW + timedelta(seconds=TTL + 1)
        assert compute_price_state(offer, now, TTL) == "verified_stale"
        assert compute_display_price(offer, now, TTL) is None

    def test_personalized_marker_wins(self):
        """Test that the personalized marker wins over every other state."""
        offer = verified_offer(personalized=True)
        assert compute_price_state(offer, FIXED_NOW, TTL) == "personalized"

    def test_inactive_verified_is_not_fresh(self):
        """Test that an inactive verified offer is not fresh."""
        offer = verified_offer(is_active=False)
        assert compute_price_state(offer, FIXED_NOW, TTL) == "unverified"

    @pytest.mark.parametrize("overrides", [
        {"verification_status": "failed"},
        {"verified_price": 0},
        {"verified_at": None},
    ])
    def test_unverified(self, overrides):
        """Test that an offer without verification is unverified."""
        offer = verified_offer(**overrides)
        assert compute_price_state(offer, FIXED_NOW, TTL) == "unverified"

    def test_swept_stale_with_price_reports_verified_stale(self):
        """Test that a swept offer keeping its price reports verified_stale."""
        offer = verified_offer(verification_status="stale", is_active=False)
        now = FIXED_NOW + timedelta(hours=7)
        assert compute_price_state(offer, now, TTL) == "verified_stale"


class TestSweep:
    """Test the freshness sweep."""

    def test_downgrades_expired_verification(self):
        """Test that an expired verification is swept to stale and inactive."""
        offer = verified_offer()
        now = FIXED_NOW + timedelta(hours=10)

        assert sweep_stale(offer, now, TTL) is True
        assert offer.verification_status == "stale"
        assert offer.is_active is False
        assert offer.verified_price == 950000

    def test_idempotent(self):
        """Test that sweeping twice changes nothing."""
        offer = verified_offer()
        now = FIXED_NOW + timedelta(hours=10)
        sweep_stale(offer, now, TTL)

        assert sweep_stale(offer, now, TTL) is False
        assert offer.verification_status == "stale"

    def test_fresh_offer_untouched(self):
        """Test that a fresh offer is left alone."""
        offer = verified_offer()
        assert sweep_stale(offer, FIXED_NOW + timedelta(hours=1), TTL) is False
        assert offer.verification_status == "verified"
        assert offer.is_active is True

    def test_non_verified_offer_is_never_active(self):
        """Test that a non-verified offer is never active."""
        offer = verified_offer(verification_status="failed", is_active=True)
        assert sweep_stale(offer, FIXED_NOW, TTL) is True
        assert offer.is_active is False


class TestApplyPriceState:
    """Test the derived fields written back onto the offer."""

    def test_display_price_iff_fresh(self):
        """Test that a display price exists only for fresh offers."""
        offer = verified_offer()
        apply_price_state(offer, FIXED_NOW, TTL)
        assert offer.price_state == "verified_fresh"
        assert offer.display_price == 950000
        assert offer.fresh_until == FIXED_NOW + timedelta(seconds=TTL)

        later = FIXED_NOW + timedelta(seconds=TTL + 1)
        sweep_stale(offer, later, TTL)
        apply_price_state(offer, later, TTL)
        assert offer.price_state == "verified_stale"
        assert offer.display_price is None

    def test_reports_no_change_on_second_run(self):
        """Test that a second run reports no change."""
        offer = verified_offer()
        assert apply_price_state(offer, FIXED_NOW, TTL) is True
        assert apply_price_state(offer, FIXED_NOW, TTL) is False
