"""Signed, expiring tokens that bind a displayed price to an offer.

Token format: ``base64url(json payload) + "." + base64url(hmac_sha256)``,
both segments without padding. ``exp`` is epoch seconds.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from priceguard.logging_config import get_logger
from priceguard.models import Offer, format_timestamp

__all__ = [
    "TokenError",
    "TokenService",
    "PRICE_PURPOSE",
    "CONFIRM_PURPOSE",
]

logger = get_logger("tokens")

PRICE_PURPOSE = "price"
CONFIRM_PURPOSE = "confirm"


class TokenError(Exception):
    """Raised when a token is rejected; ``code`` names the exact reason."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class TokenService:
    """Issues and verifies price tokens and confirm tokens.

    Args:
        secret: HMAC key; a random per-process key is generated when omitted,
            which means tokens do not survive a restart
        price_ttl: Lifetime of a listing-price token in seconds
        confirm_ttl: Lifetime of a confirm token in seconds
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        price_ttl: float = 900,
        confirm_ttl: float = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not secret:
            logger.warning("PRICE_TOKEN_SECRET not set, using an ephemeral signing key")
            secret = secrets.token_hex(32)
        self._key = secret.encode("utf-8")
        self.price_ttl = price_ttl
        self.confirm_ttl = confirm_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------ #
    # Encoding
    # ------------------------------------------------------------------ #

    def _sign(self, body: str) -> str:
        digest = hmac.new(self._key, body.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def encode(self, payload: Dict[str, Any]) -> str:
        body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{body}.{self._sign(body)}"

    def decode(self, token: Optional[str]) -> Dict[str, Any]:
        """Check shape, signature and expiry; return the payload."""
        if not token or not isinstance(token, str):
            raise TokenError("TOKEN_MISSING", "No token supplied")

        parts = token.strip().split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise TokenError("TOKEN_INVALID", "Malformed token")
        body, signature = parts

        if not hmac.compare_digest(self._sign(body), signature):
            raise TokenError("TOKEN_SIGNATURE_INVALID", "Token signature does not match")

        try:
            payload = json.loads(_b64decode(body).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise TokenError("TOKEN_INVALID", f"Undecodable payload: {e}") from e
        if not isinstance(payload, dict):
            raise TokenError("TOKEN_INVALID", "Payload is not an object")

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenError("TOKEN_INVALID", "Token has no expiry")
        if self._clock().timestamp() >= exp:
            raise TokenError("TOKEN_EXPIRED", "Token has expired")
        return payload

    def _check_binding(self, payload: Dict[str, Any], purpose: str, offer_id: Optional[str]) -> None:
        if payload.get("purpose") != purpose:
            raise TokenError("TOKEN_PURPOSE_MISMATCH", f"Expected a {purpose} token")
        if offer_id is not None and str(payload.get("offerId")) != str(offer_id):
            raise TokenError("TOKEN_OFFER_MISMATCH", "Token belongs to a different offer")

    @staticmethod
    def _positive_price(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

    # ------------------------------------------------------------------ #
    # Price tokens
    # ------------------------------------------------------------------ #

    def issue_price_token(self, offer: Offer) -> Optional[str]:
        """Token for the offer's display price; None unless it is ``verified_fresh``."""
        if offer.price_state != "verified_fresh" or not offer.display_price:
            return None
        now = self._clock()
        return self.encode({
            "purpose": PRICE_PURPOSE,
            "offerId": offer.offer_id,
            "listedPrice": offer.display_price,
            "verifiedAt": format_timestamp(offer.verified_at),
            "exp": int(now.timestamp() + self.price_ttl),
        })

    def verify_price_token(self, token: Optional[str], offer_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self.decode(token)
        self._check_binding(payload, PRICE_PURPOSE, offer_id)
        if not self._positive_price(payload.get("listedPrice")):
            raise TokenError("TOKEN_PRICE_INVALID", "Listed price must be positive")
        return payload

    # ------------------------------------------------------------------ #
    # Confirm tokens
    # ------------------------------------------------------------------ #

    def issue_confirm_token(self, offer_id: str, old_price: int, new_price: int) -> str:
        now = self._clock()
        return self.encode({
            "purpose": CONFIRM_PURPOSE,
            "offerId": offer_id,
            "oldPrice": old_price,
            "newPrice": new_price,
            "exp": int(now.timestamp() + self.confirm_ttl),
        })

    def verify_confirm_token(self, token: Optional[str], offer_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self.decode(token)
        self._check_binding(payload, CONFIRM_PURPOSE, offer_id)
        if not self._positive_price(payload.get("newPrice")):
            raise TokenError("TOKEN_PRICE_INVALID", "Confirmed price must be positive")
        return payload
