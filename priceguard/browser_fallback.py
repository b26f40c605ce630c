"""Last-resort price check by fetching the merchant page itself.

Structured data is read with BeautifulSoup (Open Graph / product meta tags,
``itemprop=price``, JSON-LD offers); embedded JSON state and visible
``...원`` amounts are matched with bounded regexes.
"""

import json
import re
from typing import Any, Iterable, List, Optional, Set

import httpx
from bs4 import BeautifulSoup

from priceguard.adapters.base import VerifyResult
from priceguard.canonical import is_http_url, to_price
from priceguard.config import VerificationSettings
from priceguard.http_client import FetchError, fetch_html
from priceguard.logging_config import get_logger
from priceguard.models import Offer

__all__ = [
    "BrowserFallbackScraper",
    "PRICE_PATTERNS",
    "PERSONALIZATION_MARKERS",
    "extract_price_candidates",
    "pick_best_candidate",
    "detect_personalization",
]

logger = get_logger("browser")

PRICE_META_PROPERTIES = ("og:price:amount", "product:price:amount", "product:sale_price:amount")

PRICE_PATTERNS = [
    re.compile(r"""["']salePrice["']\s*[:=]\s*["']?([\d,]{4,})["']?""", re.IGNORECASE),
    re.compile(r"""["']discountedSalePrice["']\s*[:=]\s*["']?([\d,]{4,})["']?""", re.IGNORECASE),
    re.compile(r"""["']mobileLowPrice["']\s*[:=]\s*["']?([\d,]{4,})["']?""", re.IGNORECASE),
    re.compile(r"""["']lowPrice["']\s*[:=]\s*["']?([\d,]{4,})["']?""", re.IGNORECASE),
    re.compile(r"""["']price["']\s*[:=]\s*["']?([\d,]{4,})["']?""", re.IGNORECASE),
    re.compile(r">\s*([\d,]{4,})\s*원\s*<"),
]

PERSONALIZATION_MARKERS = (
    "회원가",
    "회원 전용",
    "회원전용가",
    "쿠폰적용가",
    "쿠폰 적용가",
    "로그인 후",
    "로그인하고",
    "멤버십 가격",
    "member price",
    "members only price",
    "coupon price",
    "login to see price",
    "sign in to see",
)


def _json_ld_prices(soup: BeautifulSoup) -> Iterable[Any]:
    """Yield ``price``/``lowPrice`` values from JSON-LD Product/Offer blocks."""
    for tag in soup.find_all("script", type=lambda t: t and "ld+json" in t):
        try:
            data = json.loads(tag.string or "{}")
        except ValueError:
            continue

        stack = data if isinstance(data, list) else [data]
        while stack:
            node = stack.pop()
            if isinstance(node, list):
                stack.extend(node)
                continue
            if not isinstance(node, dict):
                continue
            if node.get("@type") in ("Offer", "AggregateOffer"):
                yield node.get("price")
                yield node.get("lowPrice")
            for key in ("offers", "@graph"):
                if key in node:
                    stack.append(node[key])


def extract_price_candidates(html: str, max_matches: int = 80) -> List[int]:
    """All distinct positive price candidates on the page, ascending."""
    candidates: Set[int] = set()

    def add(value: Any) -> None:
        price = to_price(value)
        if price > 0:
            candidates.add(price)

    soup = BeautifulSoup(html, "html.parser")

    for prop in PRICE_META_PROPERTIES:
        for tag in soup.find_all("meta", attrs={"property": prop})[:max_matches]:
            add(tag.get("content"))

    for tag in soup.find_all(attrs={"itemprop": "price"})[:max_matches]:
        add(tag.get("content") or tag.get_text(strip=True))

    for count, value in enumerate(_json_ld_prices(soup)):
        if count >= max_matches:
            break
        add(value)

    for pattern in PRICE_PATTERNS:
        for count, match in enumerate(pattern.finditer(html)):
            if count >= max_matches:
                break
            add(match.group(1))

    return sorted(candidates)


def pick_best_candidate(
    candidates: List[int],
    raw_price: int,
    ratio_min: float = 0.4,
    ratio_max: float = 2.5,
) -> int:
    """Candidate closest to ``raw_price`` inside the ratio band, else the smallest.

    Returns 0 when there are no candidates.
    """
    if not candidates:
        return 0
    if raw_price <= 0:
        return min(candidates)

    in_band = [c for c in candidates if ratio_min <= c / raw_price <= ratio_max]
    if not in_band:
        return min(candidates)
    return min(in_band, key=lambda c: (abs(c - raw_price), c))


def detect_personalization(html: str) -> Optional[str]:
    """The first personalization marker found in the page text, if any."""
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True).lower()
    for marker in PERSONALIZATION_MARKERS:
        if marker in text:
            return marker
    return None


class BrowserFallbackScraper:
    """Fetch an offer's source page and read the price out of the HTML."""

    method = "browser"

    def __init__(self, client: httpx.AsyncClient, settings: VerificationSettings):
        self.client = client
        self.settings = settings

    def _failure(self, code: str, message: str) -> VerifyResult:
        return VerifyResult.failure(code, message, method=self.method)

    async def verify(self, offer: Offer) -> VerifyResult:
        url = offer.source_url
        if not is_http_url(url):
            return self._failure("INVALID_SOURCE_URL", "Offer has no usable source URL")

        try:
            html = await fetch_html(self.client, url, timeout=self.settings.verification_timeout)
        except FetchError as e:
            if e.kind == "http":
                return self._failure(f"BROWSER_HTTP_{e.status}", e.message)
            if e.kind == "timeout":
                return self._failure("BROWSER_TIMEOUT", e.message)
            return self._failure("BROWSER_FETCH_ERROR", e.message)

        candidates = extract_price_candidates(html, self.settings.max_matches_per_pattern)
        price = pick_best_candidate(
            candidates,
            offer.raw_price,
            self.settings.price_ratio_min,
            self.settings.price_ratio_max,
        )

        if price <= 0:
            marker = detect_personalization(html)
            if marker:
                logger.info(f"Personalized price on {url} ('{marker}')")
                return self._failure("PERSONALIZED_PRICE", f"Price depends on the shopper ('{marker}')")
            return self._failure("PRICE_NOT_FOUND", f"No price found on {url}")

        logger.debug(f"Picked {price} from {len(candidates)} candidates on {url}")
        return VerifyResult.success(price=price, method=self.method, source="browser_parser")
