"""Freshness and display-price policy.

Pure functions over an :class:`~priceguard.models.Offer` and a clock value.
No I/O, no logging: callers decide when to persist what these compute.
"""

from datetime import datetime, timedelta
from typing import Optional

from priceguard.models import Offer

__all__ = [
    "is_within_ttl",
    "compute_price_state",
    "compute_display_price",
    "sweep_stale",
    "apply_price_state",
]


def is_within_ttl(verified_at: Optional[datetime], now: datetime, ttl_seconds: float) -> bool:
    """True when ``now - verified_at <= ttl``. A missing timestamp is never fresh."""
    if verified_at is None:
        return False
    return (now - verified_at) <= timedelta(seconds=ttl_seconds)


def compute_price_state(offer: Offer, now: datetime, ttl_seconds: float) -> str:
    """Classify an offer into one of the four price states.

    * ``personalized``: explicit marker, wins over everything else
    * ``verified_fresh``: verified, active, positive price, within TTL
    * ``verified_stale``: has a verified price whose TTL has elapsed
      (status still ``verified`` or already swept to ``stale``)
    * ``unverified``: everything else
    """
    if offer.personalized:
        return "personalized"

    has_price = offer.verified_price > 0 and offer.verified_at is not None
    fresh = is_within_ttl(offer.verified_at, now, ttl_seconds)

    if offer.verification_status == "verified" and has_price:
        if fresh and offer.is_active:
            return "verified_fresh"
        if not fresh:
            return "verified_stale"
    if offer.verification_status == "stale" and has_price:
        return "verified_stale"
    return "unverified"


def compute_display_price(offer: Offer, now: datetime, ttl_seconds: float) -> Optional[int]:
    """The only price safe to show as verified; None unless ``verified_fresh``."""
    if compute_price_state(offer, now, ttl_seconds) == "verified_fresh":
        return offer.verified_price
    return None


def sweep_stale(offer: Offer, now: datetime, ttl_seconds: float) -> bool:
    """Decay an expired verification without a network call.

    ``verified`` past its TTL becomes ``stale`` and inactive; any offer that
    is not ``verified`` is never active. Returns True if anything changed.
    Running it twice is the same as running it once.
    """
    changed = False
    if offer.verification_status == "verified" and not is_within_ttl(offer.verified_at, now, ttl_seconds):
        offer.verification_status = "stale"
        offer.is_active = False
        changed = True

    if offer.verification_status != "verified" and offer.is_active:
        offer.is_active = False
        changed = True
    return changed


def apply_price_state(offer: Offer, now: datetime, ttl_seconds: float) -> bool:
    """Write the derived fields (``price_state``, ``display_price``, ``fresh_until``).

    Returns True if any stored value changed.
    """
    state = compute_price_state(offer, now, ttl_seconds)
    display = offer.verified_price if state == "verified_fresh" else None
    fresh_until = (
        offer.verified_at + timedelta(seconds=ttl_seconds)
        if offer.verified_at is not None else None
    )

    changed = (
        offer.price_state != state
        or offer.display_price != display
        or offer.fresh_until != fresh_until
    )
    offer.price_state = state
    offer.display_price = display
    offer.fresh_until = fresh_until
    return changed
