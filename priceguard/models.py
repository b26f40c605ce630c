"""Data models for catalogs, products and offers.

Persisted documents are loosely typed JSON (camelCase keys, written by the
ingestion side). ``Catalog.from_document`` is the one place that coerces them
into typed models; ``to_document`` writes them back.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from priceguard.canonical import (
    URL_QUALITY_RANK,
    build_offer_id,
    canonicalize_url,
    is_http_url,
    to_price,
    url_quality,
)

__all__ = [
    "VERIFICATION_STATUSES",
    "VERIFICATION_METHODS",
    "PRICE_STATES",
    "Offer",
    "ProductPrices",
    "Product",
    "Catalog",
    "parse_timestamp",
    "format_timestamp",
    "dedupe_offers",
]

VERIFICATION_STATUSES = ("verified", "failed", "stale")
VERIFICATION_METHODS = ("api", "browser", "fallback")
PRICE_STATES = ("verified_fresh", "verified_stale", "personalized", "unverified")

# Offer keys owned by the model; everything else is carried in ``extra``
_OFFER_KEYS = {
    "offerId", "store", "sourceUrl", "url", "canonicalUrl", "affiliateUrl",
    "urlQuality", "price", "rawPrice", "verifiedPrice", "verificationStatus",
    "verificationMethod", "verifiedAt", "freshUntil", "priceState",
    "displayPrice", "isActive", "personalized", "lastErrorCode",
    "lastErrorMessage", "mismatchCount", "lastDeltaPercent",
    "lastVerifyLatencyMs", "matchScore", "sourceProductId",
}
_PRODUCT_KEYS = {"id", "name", "model", "brand", "prices", "offers", "stores"}
_CATALOG_KEYS = {"products", "lastSync"}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value else None


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> Optional[int]:
    value = _optional_float(value)
    return int(value) if value is not None else None


def _int_or_zero(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class Offer:
    """One merchant's listing of one product."""

    offer_id: str
    store: str = ""
    source_url: str = ""
    canonical_url: str = ""
    affiliate_url: Optional[str] = None
    url_quality: str = "invalid"

    raw_price: int = 0
    verified_price: int = 0
    verification_status: str = "stale"
    verification_method: str = "fallback"
    verified_at: Optional[datetime] = None
    fresh_until: Optional[datetime] = None

    price_state: str = "unverified"
    display_price: Optional[int] = None
    is_active: bool = False
    personalized: bool = False

    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    mismatch_count: int = 0
    last_delta_percent: Optional[float] = None
    last_verify_latency_ms: Optional[int] = None

    match_score: float = 0.0
    source_product_id: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def redirect_target(self) -> str:
        """Where a click ultimately lands: the affiliate link when we have one."""
        if self.affiliate_url and is_http_url(self.affiliate_url):
            return self.affiliate_url
        return self.source_url

    @classmethod
    def from_record(cls, product_id: str, record: Dict[str, Any]) -> "Offer":
        """Build an offer from a persisted record, repairing legacy shapes."""
        listed_url = str(record.get("url") or "").strip()
        source = str(record.get("sourceUrl") or "").strip()
        if not is_http_url(source):
            source = listed_url if is_http_url(listed_url) else ""

        store = str(record.get("store") or "")
        listed_price = to_price(record.get("price"))
        raw_price = listed_price if listed_price > 0 else to_price(record.get("rawPrice"))

        status = str(record.get("verificationStatus") or "").lower()
        if status not in VERIFICATION_STATUSES:
            status = "stale"
        method = str(record.get("verificationMethod") or "").lower()
        if method not in VERIFICATION_METHODS:
            method = "fallback"

        is_active = record.get("isActive")
        if not isinstance(is_active, bool):
            is_active = status == "verified"

        return cls(
            offer_id=str(record.get("offerId") or build_offer_id(product_id, store, source or listed_url)),
            store=store,
            source_url=source,
            canonical_url=canonicalize_url(source or listed_url),
            affiliate_url=_optional_str(record.get("affiliateUrl")),
            url_quality=url_quality(source),
            raw_price=raw_price,
            verified_price=to_price(record.get("verifiedPrice")),
            verification_status=status,
            verification_method=method,
            verified_at=parse_timestamp(record.get("verifiedAt")),
            fresh_until=parse_timestamp(record.get("freshUntil")),
            price_state=str(record.get("priceState") or "unverified"),
            display_price=to_price(record.get("displayPrice")) or None,
            is_active=is_active,
            personalized=bool(record.get("personalized"))
            or record.get("priceState") == "personalized",
            last_error_code=_optional_str(record.get("lastErrorCode")),
            last_error_message=_optional_str(record.get("lastErrorMessage")),
            mismatch_count=_int_or_zero(record.get("mismatchCount")),
            last_delta_percent=_optional_float(record.get("lastDeltaPercent")),
            last_verify_latency_ms=_optional_int(record.get("lastVerifyLatencyMs")),
            match_score=_optional_float(record.get("matchScore")) or 0.0,
            source_product_id=_optional_str(record.get("sourceProductId") or record.get("_naverProductId")),
            extra={k: v for k, v in record.items() if k not in _OFFER_KEYS},
        )

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update({
            "offerId": self.offer_id,
            "store": self.store,
            "sourceUrl": self.source_url,
            "canonicalUrl": self.canonical_url,
            "affiliateUrl": self.affiliate_url,
            "urlQuality": self.url_quality,
            "price": self.raw_price,
            "rawPrice": self.raw_price,
            "verifiedPrice": self.verified_price,
            "verificationStatus": self.verification_status,
            "verificationMethod": self.verification_method,
            "verifiedAt": format_timestamp(self.verified_at),
            "freshUntil": format_timestamp(self.fresh_until),
            "priceState": self.price_state,
            "displayPrice": self.display_price,
            "isActive": self.is_active,
            "personalized": self.personalized,
            "lastErrorCode": self.last_error_code,
            "lastErrorMessage": self.last_error_message,
            "mismatchCount": self.mismatch_count,
            "lastDeltaPercent": self.last_delta_percent,
            "lastVerifyLatencyMs": self.last_verify_latency_ms,
            "matchScore": self.match_score,
            "sourceProductId": self.source_product_id,
        })
        return record


@dataclass
class ProductPrices:
    current: int = 0
    original: int = 0
    lowest: int = 0
    average: int = 0

    @classmethod
    def from_record(cls, record: Any) -> "ProductPrices":
        record = record if isinstance(record, dict) else {}
        return cls(
            current=to_price(record.get("current")),
            original=to_price(record.get("original")),
            lowest=to_price(record.get("lowest")),
            average=to_price(record.get("average")),
        )

    def to_record(self) -> Dict[str, int]:
        return {
            "current": self.current,
            "original": self.original,
            "lowest": self.lowest,
            "average": self.average,
        }


@dataclass
class Product:
    id: str
    name: str = ""
    model: str = ""
    brand: str = ""
    prices: ProductPrices = field(default_factory=ProductPrices)
    offers: List[Offer] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def find_offer(self, offer_id: str) -> Optional[Offer]:
        for offer in self.offers:
            if offer.offer_id == offer_id:
                return offer
        return None

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update({
            "id": self.id,
            "name": self.name,
            "model": self.model,
            "brand": self.brand,
            "prices": self.prices.to_record(),
            "offers": [offer.to_record() for offer in self.offers],
        })
        return record


def _merge_key(offer: Offer) -> str:
    return f"{offer.store.strip().lower()}::{offer.canonical_url or offer.offer_id}"


def _prefer(current: Offer, candidate: Offer) -> bool:
    """True when ``candidate`` is the better record for the same listing."""
    cur_quality = URL_QUALITY_RANK.get(current.url_quality, 0)
    new_quality = URL_QUALITY_RANK.get(candidate.url_quality, 0)
    if new_quality != cur_quality:
        return new_quality > cur_quality
    if candidate.match_score != current.match_score:
        return candidate.match_score > current.match_score
    cur_price = current.raw_price or float("inf")
    new_price = candidate.raw_price or float("inf")
    return new_price < cur_price


def dedupe_offers(offers: List[Offer]) -> Tuple[List[Offer], bool]:
    """Collapse offers sharing a store and canonical URL.

    The survivor keeps the better URL and the highest match score seen.
    Returns the surviving offers (first-seen order) and whether any merged.
    """
    kept: Dict[str, Offer] = {}
    merged = False
    for offer in offers:
        key = _merge_key(offer)
        previous = kept.get(key)
        if previous is None:
            kept[key] = offer
            continue
        merged = True
        best_score = max(previous.match_score, offer.match_score)
        winner = offer if _prefer(previous, offer) else previous
        winner.match_score = best_score
        kept[key] = winner
    return list(kept.values()), merged


@dataclass
class Catalog:
    """All products of one product type; the unit of load/save."""

    product_type: str
    products: List[Product] = field(default_factory=list)
    last_sync: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def iter_offers(self):
        for product in self.products:
            for offer in product.offers:
                yield product, offer

    def find_offer(self, offer_id: str) -> Optional[Tuple[Product, Offer]]:
        for product, offer in self.iter_offers():
            if offer.offer_id == offer_id:
                return product, offer
        return None

    @classmethod
    def from_document(cls, product_type: str, document: Any) -> Tuple["Catalog", bool]:
        """Migrate a persisted document into a typed catalog.

        Returns ``(catalog, changed)``; ``changed`` is True when writing the
        catalog back would differ from what was read.
        """
        if not isinstance(document, dict):
            return cls(product_type=product_type), True

        changed = False
        raw_products = document.get("products")
        if not isinstance(raw_products, list):
            raw_products, changed = [], True

        products: List[Product] = []
        for raw in raw_products:
            if not isinstance(raw, dict):
                changed = True
                continue
            product_id = str(raw.get("id") or "")
            raw_offers = raw.get("offers")
            if raw_offers is None:
                raw_offers = raw.get("stores")
                changed = True
            if not isinstance(raw_offers, list):
                raw_offers, changed = [], True

            offers = []
            for record in raw_offers:
                if not isinstance(record, dict):
                    changed = True
                    continue
                offer = Offer.from_record(product_id, record)
                if offer.to_record() != record:
                    changed = True
                offers.append(offer)

            offers, merged = dedupe_offers(offers)
            changed = changed or merged

            products.append(Product(
                id=product_id,
                name=str(raw.get("name") or ""),
                model=str(raw.get("model") or ""),
                brand=str(raw.get("brand") or ""),
                prices=ProductPrices.from_record(raw.get("prices")),
                offers=offers,
                extra={k: v for k, v in raw.items() if k not in _PRODUCT_KEYS},
            ))

        catalog = cls(
            product_type=product_type,
            products=products,
            last_sync=_optional_str(document.get("lastSync")),
            extra={k: v for k, v in document.items() if k not in _CATALOG_KEYS},
        )
        return catalog, changed

    def to_document(self) -> Dict[str, Any]:
        document = dict(self.extra)
        document["products"] = [product.to_record() for product in self.products]
        document["lastSync"] = self.last_sync
        return document
