"""Tests for price and confirm tokens."""

from datetime import timedelta

import pytest

from priceguard.models import Offer
from priceguard.tests.conftest import FIXED_NOW, FakeClock
from priceguard.tokens import TokenError, TokenService


@pytest.fixture
def token_clock():
    return FakeClock()


@pytest.fixture
def tokens(token_clock):
    return TokenService(secret="unit-secret", price_ttl=900, confirm_ttl=60, clock=token_clock)


def fresh_offer(**overrides) -> Offer:
    values = dict(
        offer_id="offer_abc",
        verified_price=950000,
        verification_status="verified",
        verified_at=FIXED_NOW,
        is_active=True,
        price_state="verified_fresh",
        display_price=950000,
    )
    values.update(overrides)
    return Offer(**values)


def reject_code(call) -> str:
    with pytest.raises(TokenError) as exc_info:
        call()
    return exc_info.value.code


class TestPriceToken:
    """Test issuing and verifying price tokens."""

    def test_round_trip(self, tokens):
        """Test issuing and verifying a price token."""
        token = tokens.issue_price_token(fresh_offer())
        payload = tokens.verify_price_token(token, "offer_abc")

        assert payload["purpose"] == "price"
        assert payload["offerId"] == "offer_abc"
        assert payload["listedPrice"] == 950000
        assert payload["verifiedAt"] == "2026-03-01T12:00:00.000Z"

    @pytest.mark.parametrize("state", ["verified_stale", "unverified", "personalized"])
    def test_not_issued_unless_fresh(self, tokens, state):
        """Test that only fresh offers get a price token."""
        assert tokens.issue_price_token(fresh_offer(price_state=state, display_price=None)) is None

    def test_valid_until_expiry(self, tokens, token_clock):
        """Test that a token is valid until it expires."""
        token = tokens.issue_price_token(fresh_offer())

        token_clock.advance(seconds=899)
        assert tokens.verify_price_token(token)["offerId"] == "offer_abc"

        token_clock.advance(seconds=1)
        assert reject_code(lambda: tokens.verify_price_token(token)) == "TOKEN_EXPIRED"

    def test_tampered_payload(self, tokens):
        """Test that a modified payload is rejected."""
        token = tokens.issue_price_token(fresh_offer())
        body, signature = token.split(".")
        forged = tokens.encode({"purpose": "price", "offerId": "offer_abc", "listedPrice": 1, "exp": 9999999999})
        forged_body = forged.split(".")[0]

        assert reject_code(lambda: tokens.verify_price_token(f"{forged_body}.{signature}")) == "TOKEN_SIGNATURE_INVALID"
        flipped = ("A" if body[5] != "A" else "B").join([body[:5], body[6:]])
        assert reject_code(lambda: tokens.verify_price_token(f"{flipped}.{signature}")) == "TOKEN_SIGNATURE_INVALID"

    def test_other_secret_rejected(self, tokens, token_clock):
        """Test that a token signed with another secret is rejected."""
        other = TokenService(secret="another-secret", clock=token_clock)
        token = other.issue_price_token(fresh_offer())
        assert reject_code(lambda: tokens.verify_price_token(token)) == "TOKEN_SIGNATURE_INVALID"

    @pytest.mark.parametrize("token,code", [
        (None, "TOKEN_MISSING"),
        ("", "TOKEN_MISSING"),
        ("no-dot-here", "TOKEN_INVALID"),
        ("a.b.c", "TOKEN_INVALID"),
    ])
    def test_malformed(self, tokens, token, code):
        """Test that malformed tokens are rejected."""
        assert reject_code(lambda: tokens.verify_price_token(token)) == code

    def test_offer_binding(self, tokens):
        """Test that a token is bound to its offer."""
        token = tokens.issue_price_token(fresh_offer())
        assert reject_code(lambda: tokens.verify_price_token(token, "offer_other")) == "TOKEN_OFFER_MISMATCH"

    def test_purpose_binding(self, tokens):
        """Test that a price token is bound to its purpose."""
        confirm = tokens.issue_confirm_token("offer_abc", 950000, 990000)
        assert reject_code(lambda: tokens.verify_price_token(confirm)) == "TOKEN_PURPOSE_MISMATCH"

    def test_non_positive_price(self, tokens):
        """Test that a non-positive listed price is rejected."""
        token = tokens.encode({"purpose": "price", "offerId": "offer_abc", "listedPrice": 0, "exp": 9999999999})
        assert reject_code(lambda: tokens.verify_price_token(token)) == "TOKEN_PRICE_INVALID"


class TestConfirmToken:
    """Test confirm tokens issued on a click-time price change."""

    def test_round_trip(self, tokens):
        """Test issuing and verifying a confirm token."""
        token = tokens.issue_confirm_token("offer_abc", 950000, 990000)
        payload = tokens.verify_confirm_token(token, "offer_abc")
        assert payload["oldPrice"] == 950000
        assert payload["newPrice"] == 990000

    def test_short_lifetime(self, tokens, token_clock):
        """Test that a confirm token expires quickly."""
        token = tokens.issue_confirm_token("offer_abc", 950000, 990000)
        token_clock.now = FIXED_NOW + timedelta(seconds=60)
        assert reject_code(lambda: tokens.verify_confirm_token(token)) == "TOKEN_EXPIRED"

    def test_price_token_is_not_a_confirm_token(self, tokens):
        """Test that a price token cannot confirm a redirect."""
        token = tokens.issue_price_token(fresh_offer())
        assert reject_code(lambda: tokens.verify_confirm_token(token)) == "TOKEN_PURPOSE_MISMATCH"


def test_ephemeral_secret_still_round_trips(token_clock):
    service = TokenService(secret=None, clock=token_clock)
    token = service.issue_price_token(fresh_offer())
    assert service.verify_price_token(token)["listedPrice"] == 950000
