"""Offer verification state machine, batch runs and the catalog view.

Every method that writes the catalog is meant to run on the single-writer
job queue (see :mod:`priceguard.engine`); the read-only view and metrics
normalize in memory and never persist.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from priceguard.adapters import PlatformAdapter, VerifyResult, pick_adapter
from priceguard.browser_fallback import BrowserFallbackScraper
from priceguard.canonical import is_http_url
from priceguard.catalog_store import CatalogStore
from priceguard.config import VerificationSettings
from priceguard.freshness import apply_price_state, is_within_ttl, sweep_stale
from priceguard.logging_config import get_logger, log_verification_event
from priceguard.models import VERIFICATION_METHODS, Catalog, Offer, Product, format_timestamp
from priceguard.tokens import TokenService
from priceguard.verification_log import VERIFICATION_KIND, VerificationLog, compute_metrics

__all__ = [
    "OfferVerificationService",
    "VerificationResult",
    "BatchSummary",
    "REDIRECT_PATH",
    "OFFER_NOT_FOUND",
    "UNSUPPORTED_STORE",
    "PERSONALIZED_PRICE",
]

logger = get_logger("orchestrator")

REDIRECT_PATH = "/r/"

OFFER_NOT_FOUND = "OFFER_NOT_FOUND"
UNSUPPORTED_STORE = "UNSUPPORTED_STORE"
PERSONALIZED_PRICE = "PERSONALIZED_PRICE"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class VerificationResult:
    """What a verification request returns to its caller."""

    ok: bool
    offer_id: str
    code: Optional[str] = None
    message: Optional[str] = None
    product_id: Optional[str] = None
    product_type: Optional[str] = None
    verification_status: Optional[str] = None
    verification_method: Optional[str] = None
    verified_price: int = 0
    verified_at: Optional[str] = None
    price_state: Optional[str] = None
    display_price: Optional[int] = None
    source_url: Optional[str] = None
    redirect_url: Optional[str] = None
    skipped: bool = False
    price_changed: bool = False
    hard_mismatch: bool = False
    old_price: Optional[int] = None
    new_price: Optional[int] = None
    degraded_redirect: bool = False
    requires_confirmation: bool = False
    confirm_token: Optional[str] = None
    price_token: Optional[str] = None
    token_error: Optional[str] = None
    timed_out: bool = False
    latency_ms: Optional[int] = None

    @property
    def blocked(self) -> bool:
        return self.redirect_url is None

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items()}


@dataclass
class BatchSummary:
    """Counts accumulated over one batch run of one product type."""

    product_type: str
    total_offers: int = 0
    attempted: int = 0
    verified: int = 0
    failed: int = 0
    stale: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items()}


@dataclass
class _Located:
    product_type: str
    catalog: Catalog
    product: Product
    offer: Offer
    changed: bool = False


@dataclass
class _Attempt:
    """One pass through the verification chain, already applied to the offer."""

    result: VerifyResult
    baseline: int = 0
    mismatch: bool = False
    delta_percent: Optional[float] = None
    latency_ms: int = 0
    log_entry: Dict[str, Any] = field(default_factory=dict)


def compute_discount(original: int, current: int) -> Dict[str, int]:
    if original > current > 0:
        return {
            "percent": round((original - current) / original * 100),
            "amount": original - current,
        }
    return {"percent": 0, "amount": 0}


class OfferVerificationService:
    """Verifies offers against their live source and keeps the catalog consistent.

    Args:
        store: Whole-document catalog store
        adapters: Platform adapters, tried in order of URL recognition
        fallback: Page scraper used when the adapter fails
        tokens: Price/confirm token issuer
        log: Append-only verification log
        settings: Engine settings
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        store: CatalogStore,
        adapters: List[PlatformAdapter],
        fallback: BrowserFallbackScraper,
        tokens: TokenService,
        log: VerificationLog,
        settings: VerificationSettings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.adapters = adapters
        self.fallback = fallback
        self.tokens = tokens
        self.log = log
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def product_types(self) -> Tuple[str, ...]:
        return self.store.product_types

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------ #
    # Loading and normalization
    # ------------------------------------------------------------------ #

    def _normalize(self, catalog: Catalog, now: datetime) -> bool:
        """Sweep expired verifications and refresh derived fields in memory."""
        changed = False
        ttl = self.settings.freshness_ttl
        for _, offer in catalog.iter_offers():
            changed = sweep_stale(offer, now, ttl) or changed
            changed = apply_price_state(offer, now, ttl) or changed
        return changed

    def _load(self, product_type: str, now: datetime) -> Tuple[Catalog, bool]:
        catalog, changed = self.store.load(product_type)
        return catalog, self._normalize(catalog, now) or changed

    def _locate(self, offer_id: str, now: datetime) -> Optional[_Located]:
        for product_type in self.product_types:
            catalog, changed = self._load(product_type, now)
            found = catalog.find_offer(offer_id)
            if found is not None:
                product, offer = found
                return _Located(product_type, catalog, product, offer, changed)
        return None

    # ------------------------------------------------------------------ #
    # The verification chain
    # ------------------------------------------------------------------ #

    async def _run_chain(self, offer: Offer, product: Product) -> VerifyResult:
        adapter = pick_adapter(self.adapters, offer.source_url)
        if adapter is None:
            return VerifyResult.failure(
                UNSUPPORTED_STORE, "No verification adapter supports this store", method="fallback"
            )

        primary = await adapter.verify(offer, product)
        if primary.ok:
            return primary

        logger.info(f"{adapter.platform} failed for {offer.offer_id} ({primary.code}), trying page fallback")
        secondary = await self.fallback.verify(offer)
        if secondary.ok:
            return secondary
        if secondary.code == PERSONALIZED_PRICE:
            return secondary
        return primary if primary.code else secondary

    def _apply_success(self, offer: Offer, result: VerifyResult, now: datetime) -> None:
        offer.verification_status = "verified"
        offer.verification_method = result.method if result.method in VERIFICATION_METHODS else "api"
        offer.verified_price = result.price
        offer.verified_at = now
        offer.is_active = True
        offer.personalized = False
        offer.last_error_code = None
        offer.last_error_message = None
        if result.matched_product_id and not offer.source_product_id:
            offer.source_product_id = result.matched_product_id
        apply_price_state(offer, now, self.settings.freshness_ttl)

    def _apply_failure(self, offer: Offer, result: VerifyResult, now: datetime) -> None:
        offer.verification_status = "failed"
        offer.verification_method = result.method if result.method in VERIFICATION_METHODS else "fallback"
        offer.is_active = False
        offer.personalized = result.code == PERSONALIZED_PRICE
        offer.last_error_code = result.code or "VERIFY_FAILED"
        offer.last_error_message = result.message or "Price verification failed"
        apply_price_state(offer, now, self.settings.freshness_ttl)

    async def _attempt(
        self,
        product_type: str,
        product: Product,
        offer: Offer,
        trigger: str,
        now: datetime,
        listed_price: Optional[int] = None,
    ) -> _Attempt:
        """Run the chain for one offer, apply the outcome and log it."""
        before_status = offer.verification_status
        before_price = offer.verified_price
        before_state = offer.price_state
        baseline = listed_price or offer.display_price or offer.raw_price

        started = time.perf_counter()
        result = await self._run_chain(offer, product)
        latency_ms = int((time.perf_counter() - started) * 1000)

        attempt = _Attempt(result=result, baseline=baseline, latency_ms=latency_ms)
        if result.ok:
            self._apply_success(offer, result, now)
            if baseline > 0:
                attempt.delta_percent = round((result.price - baseline) / baseline * 100, 2)
                attempt.mismatch = result.price != baseline
            if attempt.mismatch:
                offer.mismatch_count += 1
            offer.last_delta_percent = attempt.delta_percent
        else:
            self._apply_failure(offer, result, now)
        offer.last_verify_latency_ms = latency_ms

        attempt.log_entry = {
            "timestamp": format_timestamp(now),
            "kind": VERIFICATION_KIND,
            "trigger": trigger,
            "offerId": offer.offer_id,
            "productId": product.id,
            "productType": product_type,
            "store": offer.store,
            "rawPrice": offer.raw_price,
            "listedPrice": listed_price,
            "beforeStatus": before_status,
            "beforeVerifiedPrice": before_price,
            "beforePriceState": before_state,
            "success": result.ok,
            "verificationStatus": offer.verification_status,
            "verificationMethod": offer.verification_method,
            "verifiedPrice": offer.verified_price,
            "verifiedAt": format_timestamp(offer.verified_at),
            "priceState": offer.price_state,
            "mismatch": attempt.mismatch,
            "deltaPercent": attempt.delta_percent,
            "errorCode": None if result.ok else offer.last_error_code,
            "errorMessage": None if result.ok else offer.last_error_message,
            "latencyMs": latency_ms,
        }
        return attempt

    def _is_fresh(self, offer: Offer, now: datetime) -> bool:
        return (
            offer.verification_status == "verified"
            and offer.is_active
            and offer.verified_price > 0
            and is_within_ttl(offer.verified_at, now, self.settings.freshness_ttl)
        )

    # ------------------------------------------------------------------ #
    # Single offer
    # ------------------------------------------------------------------ #

    def _base_result(self, located: _Located, ok: bool) -> VerificationResult:
        offer = located.offer
        return VerificationResult(
            ok=ok,
            offer_id=offer.offer_id,
            product_id=located.product.id,
            product_type=located.product_type,
            verification_status=offer.verification_status,
            verification_method=offer.verification_method,
            verified_price=offer.verified_price,
            verified_at=format_timestamp(offer.verified_at),
            price_state=offer.price_state,
            display_price=offer.display_price,
            source_url=offer.source_url,
        )

    async def verify_offer_by_id(
        self,
        offer_id: str,
        trigger: str = "manual",
        force: bool = False,
        listed_price: Optional[int] = None,
        listed_verified_at: Optional[str] = None,
        allow_degraded: Optional[bool] = None,
    ) -> VerificationResult:
        """Verify one offer and decide whether a click on it may redirect.

        Args:
            offer_id: Offer to verify
            trigger: Free-form origin tag recorded in the log (``click``, ``manual``...)
            force: Re-verify even when the current verification is fresh
            listed_price: Price the caller showed the user, if any
            listed_verified_at: When that price was verified, for the log
            allow_degraded: Override of ``ALLOW_UNVERIFIED_REDIRECT``
        """
        now = self.now()
        located = self._locate(offer_id, now)
        if located is None:
            logger.warning(f"Offer not found: {offer_id}")
            return VerificationResult(
                ok=False,
                offer_id=offer_id,
                code=OFFER_NOT_FOUND,
                message=f"No offer with id {offer_id}",
                verification_status="failed",
            )

        offer = located.offer
        listed_matches = listed_price is None or listed_price == offer.verified_price
        if not force and self._is_fresh(offer, now) and listed_matches:
            if located.changed:
                self.store.save_catalog(located.product_type, located.catalog)
            result = self._base_result(located, ok=True)
            result.skipped = True
            result.redirect_url = offer.redirect_target
            result.new_price = offer.verified_price
            result.price_token = self.tokens.issue_price_token(offer)
            return result

        attempt = await self._attempt(
            located.product_type, located.product, offer, trigger, now, listed_price
        )
        self.store.save_catalog(located.product_type, located.catalog)

        entry = dict(attempt.log_entry)
        entry["listedVerifiedAt"] = listed_verified_at
        self.log.append(entry, now)

        result = self._base_result(located, ok=attempt.result.ok)
        result.latency_ms = attempt.latency_ms
        allow = self.settings.allow_unverified_redirect if allow_degraded is None else allow_degraded

        if attempt.result.ok:
            result.redirect_url = offer.redirect_target
            result.old_price = attempt.baseline or None
            result.new_price = offer.verified_price
            result.price_token = self.tokens.issue_price_token(offer)
            if listed_price is not None and listed_price != offer.verified_price:
                result.price_changed = True
                result.hard_mismatch = self._is_hard_mismatch(listed_price, offer.verified_price)
                if self.settings.strict_price_guard:
                    result.redirect_url = None
                    result.requires_confirmation = True
                    result.confirm_token = self.tokens.issue_confirm_token(
                        offer.offer_id, listed_price, offer.verified_price
                    )
        else:
            result.code = offer.last_error_code
            result.message = offer.last_error_message
            if allow and is_http_url(offer.redirect_target):
                result.redirect_url = offer.redirect_target
                result.degraded_redirect = True

        log_verification_event(
            "offer_verified" if result.ok else "offer_verification_failed",
            {
                "offer_id": offer.offer_id,
                "trigger": trigger,
                "code": result.code,
                "price": offer.verified_price,
                "latency_ms": attempt.latency_ms,
            },
        )
        return result

    def _is_hard_mismatch(self, old_price: int, new_price: int) -> bool:
        if old_price <= 0 or new_price <= old_price:
            return False
        return (new_price - old_price) / old_price * 100 >= self.settings.hard_mismatch_percent

    def confirmed_redirect(self, offer_id: str, confirmed_price: int) -> Optional[VerificationResult]:
        """Redirect result for an acknowledged price, if it is still the fresh verified price."""
        now = self.now()
        located = self._locate(offer_id, now)
        if located is None:
            return None
        offer = located.offer
        if offer.price_state != "verified_fresh" or offer.display_price != confirmed_price:
            return None
        result = self._base_result(located, ok=True)
        result.redirect_url = offer.redirect_target
        result.new_price = offer.verified_price
        result.price_token = self.tokens.issue_price_token(offer)
        return result

    # ------------------------------------------------------------------ #
    # Batch
    # ------------------------------------------------------------------ #

    async def verify_catalog_offers(
        self,
        product_type: str,
        force: bool = False,
        limit: Optional[int] = None,
        trigger: str = "scheduled",
    ) -> BatchSummary:
        """Re-verify every offer of one product type that is not fresh.

        ``limit`` bounds the number of offers actually verified in this run.
        """
        now = self.now()
        catalog, changed = self._load(product_type, now)
        summary = BatchSummary(product_type=product_type)
        entries: List[Dict[str, Any]] = []

        for product, offer in catalog.iter_offers():
            summary.total_offers += 1
            if limit is not None and summary.attempted >= limit:
                continue
            if not force and self._is_fresh(offer, now):
                summary.skipped += 1
                continue

            summary.attempted += 1
            attempt = await self._attempt(product_type, product, offer, trigger, now)
            entries.append(attempt.log_entry)
            changed = True
            if attempt.result.ok:
                summary.verified += 1
            else:
                summary.failed += 1

        summary.stale = sum(1 for _, o in catalog.iter_offers() if o.verification_status == "stale")

        if changed:
            self.store.save_catalog(product_type, catalog)
        for entry in entries:
            self.log.append(entry, now)

        logger.info(
            f"Batch {product_type}: {summary.attempted} attempted, {summary.verified} verified, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        log_verification_event("batch_completed", summary.to_dict())
        return summary

    async def verify_all_offers(
        self,
        force: bool = False,
        limit: Optional[int] = None,
        trigger: str = "scheduled",
    ) -> List[BatchSummary]:
        summaries = []
        for product_type in self.product_types:
            summaries.append(await self.verify_catalog_offers(product_type, force, limit, trigger))
        return summaries

    # ------------------------------------------------------------------ #
    # Read side
    # ------------------------------------------------------------------ #

    def _public_offer(self, offer: Offer) -> Dict[str, Any]:
        record = offer.to_record()
        token = self.tokens.issue_price_token(offer)
        url = f"{REDIRECT_PATH}{offer.offer_id}"
        if token:
            url = f"{url}?pt={token}"
        record.update({
            "price": offer.display_price if offer.display_price is not None else offer.raw_price,
            "url": url,
            "priceToken": token,
            "isLowest": False,
        })
        return record

    def prepare_catalog_for_response(
        self,
        product_type: str,
        store_visibility: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Catalog view with display prices, redirect URLs and lowest-price flags.

        ``store_visibility`` is ``"verified"`` (only fresh verified offers,
        products without one are dropped) or ``"all"``; the default follows
        ``VERIFIED_ONLY_MODE``. Nothing is persisted.
        """
        if store_visibility is None:
            verified_only = self.settings.verified_only_mode
        else:
            verified_only = store_visibility != "all"

        catalog, _ = self._load(product_type, self.now())
        products = []

        for product in catalog.products:
            fresh = [o for o in product.offers if o.price_state == "verified_fresh"]
            visible = fresh if verified_only else list(product.offers)
            if verified_only and not visible:
                continue

            visible.sort(key=lambda o: (o.price_state != "verified_fresh", o.display_price or o.raw_price))
            offers = [self._public_offer(o) for o in visible]
            lowest = min((o.display_price for o in fresh), default=0)
            if offers and visible[0].price_state == "verified_fresh":
                offers[0]["isLowest"] = True

            base = product.prices
            original = max(base.original, lowest)
            record = product.to_record()
            record.update({
                "prices": {
                    "current": lowest or base.current,
                    "original": original,
                    "lowest": min(base.lowest or lowest or original, lowest or original),
                    "average": max(base.average, lowest),
                },
                "discount": compute_discount(original, lowest),
                "offers": offers,
            })
            products.append(record)

        view = dict(catalog.extra)
        view.update({
            "productType": product_type,
            "lastSync": catalog.last_sync,
            "products": products,
            "verifiedOnly": verified_only,
        })
        return view

    def catalog_stats(self) -> Dict[str, int]:
        now = self.now()
        stats = {"totalOffers": 0, "verifiedOffers": 0, "failedOffers": 0, "staleOffers": 0, "activeOffers": 0}
        for product_type in self.product_types:
            catalog, _ = self._load(product_type, now)
            for _, offer in catalog.iter_offers():
                stats["totalOffers"] += 1
                stats[f"{offer.verification_status}Offers"] += 1
                if offer.is_active:
                    stats["activeOffers"] += 1
        return stats

    def get_verification_metrics(self, hours: float = 24) -> Dict[str, Any]:
        entries = self.log.read_entries(hours, self.now())
        return compute_metrics(entries, self.catalog_stats(), hours)
