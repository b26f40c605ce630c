"""Shared contract and matching loop for marketplace API adapters."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from priceguard.canonical import canonicalize_url, normalize_text
from priceguard.config import VerificationSettings
from priceguard.http_client import FetchError
from priceguard.jobs import PlatformThrottle
from priceguard.logging_config import get_logger
from priceguard.models import Offer, Product

__all__ = [
    "VerifyResult",
    "MatchContext",
    "PlatformAdapter",
    "SearchFailure",
    "build_queries",
    "title_overlaps",
]

logger = get_logger("adapters")


@dataclass
class VerifyResult:
    """Outcome of one verification source (API adapter or fallback scraper)."""

    ok: bool
    method: str
    price: int = 0
    source: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    matched_product_id: Optional[str] = None

    @classmethod
    def success(cls, price: int, method: str, source: str, matched_product_id: Optional[str] = None) -> "VerifyResult":
        return cls(ok=True, method=method, price=price, source=source, matched_product_id=matched_product_id)

    @classmethod
    def failure(cls, code: str, message: str, method: str) -> "VerifyResult":
        return cls(ok=False, method=method, code=code, message=message)


@dataclass
class MatchContext:
    """What a search candidate is scored against."""

    canonical_url: str
    target_product_id: str
    product_name: str
    store_name: str


class SearchFailure(Exception):
    """A search call that failed; ``code`` is already platform-prefixed."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def build_queries(product: Product, max_tokens: int, max_queries: int = 2) -> List[str]:
    """Search queries from the product model and name, truncated and de-duplicated."""
    queries: List[str] = []
    for candidate in (product.model, product.name):
        text = str(candidate or "").strip()
        if not text:
            continue
        query = " ".join(text.split()[:max_tokens])
        if query not in queries:
            queries.append(query)
    return queries[:max_queries]


def title_overlaps(title: str, product_name: str, prefix_len: int) -> bool:
    """Normalized title contains the first ``prefix_len`` chars of the normalized name."""
    name = normalize_text(product_name)
    if not name:
        return False
    return name[:prefix_len] in normalize_text(title)


class PlatformAdapter:
    """Base class: search the platform API, score candidates, keep the best.

    Subclasses provide the platform name, URL recognition, the search call
    and per-item scoring. The base class owns the query loop, early stop,
    acceptance threshold and price validation.
    """

    platform: str = ""
    query_tokens: int = 7
    search_limit: int = 50

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: VerificationSettings,
        throttle: PlatformThrottle,
    ):
        self.client = client
        self.settings = settings
        self.throttle = throttle

    @property
    def code_prefix(self) -> str:
        return self.platform.upper()

    # Hooks ------------------------------------------------------------ #

    def supports(self, url: str) -> bool:
        raise NotImplementedError

    def has_credentials(self) -> bool:
        raise NotImplementedError

    def extract_product_id(self, url: str) -> str:
        raise NotImplementedError

    async def search(self, query: str) -> List[Dict[str, Any]]:
        """Return raw result items; raise :class:`SearchFailure` on error."""
        raise NotImplementedError

    def score_item(self, item: Dict[str, Any], context: MatchContext) -> int:
        raise NotImplementedError

    def item_price(self, item: Dict[str, Any]) -> int:
        raise NotImplementedError

    def item_product_id(self, item: Dict[str, Any]) -> str:
        return str(item.get("productId") or "")

    # Shared ----------------------------------------------------------- #

    def fetch_failure(self, error: FetchError) -> SearchFailure:
        """Map a transport-level error to a platform-prefixed failure code."""
        if error.kind == "http":
            return SearchFailure(f"{self.code_prefix}_HTTP_{error.status}", error.message)
        if error.kind == "timeout":
            return SearchFailure(f"{self.code_prefix}_TIMEOUT", error.message)
        return SearchFailure(f"{self.code_prefix}_FETCH_ERROR", error.message)

    def _failure(self, suffix: str, message: str) -> VerifyResult:
        return VerifyResult.failure(f"{self.code_prefix}_{suffix}", message, method="api")

    async def verify(self, offer: Offer, product: Product) -> VerifyResult:
        """Find the live price of ``offer`` through the platform search API."""
        if not self.supports(offer.source_url):
            return VerifyResult.failure(
                f"NOT_{self.code_prefix}_OFFER", f"Not a {self.platform} offer", method="api"
            )
        if not self.has_credentials():
            return self._failure("API_KEY_MISSING", f"{self.platform} API credentials are not configured")

        context = MatchContext(
            canonical_url=canonicalize_url(offer.source_url),
            target_product_id=offer.source_product_id or self.extract_product_id(offer.source_url),
            product_name=product.name,
            store_name=offer.store,
        )

        best: Optional[Tuple[int, Dict[str, Any]]] = None
        last_failure: Optional[SearchFailure] = None

        for query in build_queries(product, self.query_tokens):
            try:
                items = await self.search(query)
            except SearchFailure as e:
                logger.warning(f"{self.platform} search failed for '{query}': {e.code}")
                last_failure = e
                continue

            for item in items:
                if not isinstance(item, dict):
                    continue
                score = self.score_item(item, context)
                if best is None or score > best[0]:
                    best = (score, item)

            if best is not None and best[0] >= self.settings.certain_match_score:
                break

        if best is None or best[0] < self.settings.min_match_score:
            if last_failure is not None:
                return VerifyResult.failure(last_failure.code, last_failure.message, method="api")
            return self._failure("MATCH_NOT_FOUND", f"No confident {self.platform} match for {offer.offer_id}")

        score, item = best
        price = self.item_price(item)
        if price <= 0:
            return self._failure("PRICE_MISSING", f"{self.platform} match has no price")

        logger.debug(f"{self.platform} matched {offer.offer_id} (score {score}) at {price}")
        return VerifyResult.success(
            price=price,
            method="api",
            source=f"{self.platform}_api",
            matched_product_id=self.item_product_id(item) or None,
        )