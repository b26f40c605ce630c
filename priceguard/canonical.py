"""URL canonicalization and marketplace classification.

Canonical URLs collapse the same listing reached through different tracking
links into one key. Nothing in this module raises on bad input.
"""

import hashlib
import math
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

from priceguard.config import TRACKING_PARAMS

__all__ = [
    "canonicalize_url",
    "sanitize_url",
    "is_http_url",
    "get_hostname",
    "is_naver_url",
    "is_coupang_url",
    "extract_naver_product_id",
    "extract_coupang_product_id",
    "is_search_like_url",
    "url_quality",
    "build_offer_id",
    "normalize_text",
    "to_price",
    "URL_QUALITY_RANK",
]

HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

NAVER_PRODUCT_ID_PATTERNS = [
    re.compile(r"/products/(\d{5,})", re.IGNORECASE),
    re.compile(r"/catalog/(\d{5,})", re.IGNORECASE),
    re.compile(r"[?&]nvMid=(\d{5,})", re.IGNORECASE),
    re.compile(r"[?&]productId=(\d{5,})", re.IGNORECASE),
]

COUPANG_PRODUCT_ID_PATTERNS = [
    re.compile(r"/vp/products/(\d{5,})", re.IGNORECASE),
    re.compile(r"/products/(\d{5,})", re.IGNORECASE),
    re.compile(r"[?&]productId=(\d{5,})", re.IGNORECASE),
]

# Query keys that mark a search/listing page rather than a product page
SEARCH_QUERY_KEYS = frozenset({"q", "query", "keyword", "k", "search", "sort", "page"})

URL_QUALITY_RANK = {"pdp": 2, "search": 1, "invalid": 0}


def sanitize_url(url: Optional[str]) -> str:
    """Strip whitespace and control characters."""
    if not url:
        return ""
    url = str(url).strip()
    return re.sub(r"[\x00-\x1f\x7f-\x9f]", "", url)


def is_http_url(value: Optional[str]) -> bool:
    return bool(HTTP_URL_RE.match(sanitize_url(value)))


def get_hostname(value: Optional[str]) -> str:
    """Lowercase hostname, or "" when the URL does not parse."""
    try:
        return (urlsplit(sanitize_url(value)).hostname or "").lower()
    except ValueError:
        return ""


def _is_tracking_param(key: str) -> bool:
    key = key.lower()
    return key in TRACKING_PARAMS or key.startswith("utm_")


def _fallback_canonical(raw: str) -> str:
    stripped = re.sub(r"^https?://", "", raw, flags=re.IGNORECASE)
    return stripped.rstrip("/").lower()


def canonicalize_url(value: Optional[str]) -> str:
    """Normalize a merchant URL to ``host + path + ?sorted-query``.

    The host loses a leading ``www.``, the path loses trailing slashes, and
    tracking parameters (``utm_*``, ``lptag``, ``traceid``, ``requestid``,
    ``subid``) are dropped. Anything that does not parse as an absolute URL
    gets a best-effort strip instead.

    >>> canonicalize_url("https://www.Shop.com/Item/1/?utm_source=x&b=2&a=1")
    'shop.com/item/1?a=1&b=2'
    """
    raw = sanitize_url(value)
    if not raw:
        return ""

    try:
        parts = urlsplit(raw)
        host = parts.hostname
        if not parts.scheme or not host:
            return _fallback_canonical(raw)
        # Accessing .port validates it and raises ValueError if malformed
        parts.port
    except ValueError:
        return _fallback_canonical(raw)

    host = re.sub(r"^www\.", "", host.lower())
    path = parts.path.rstrip("/").lower()

    params = sorted(
        (k.lower(), v.lower()) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    )
    query = urlencode(params)
    return f"{host}{path}?{query}" if query else f"{host}{path}"


def _host_matches(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith("." + suffix)


def is_naver_url(value: Optional[str]) -> bool:
    return _host_matches(get_hostname(value), "naver.com")


def is_coupang_url(value: Optional[str]) -> bool:
    return _host_matches(get_hostname(value), "coupang.com")


def _first_match(patterns, value: Optional[str]) -> str:
    raw = sanitize_url(value)
    for pattern in patterns:
        matched = pattern.search(raw)
        if matched:
            return matched.group(1)
    return ""


def extract_naver_product_id(value: Optional[str]) -> str:
    return _first_match(NAVER_PRODUCT_ID_PATTERNS, value)


def extract_coupang_product_id(value: Optional[str]) -> str:
    return _first_match(COUPANG_PRODUCT_ID_PATTERNS, value)


def is_search_like_url(value: Optional[str]) -> bool:
    """True for marketplace search/listing pages (not a single product)."""
    if not is_http_url(value):
        return False
    try:
        parts = urlsplit(sanitize_url(value))
    except ValueError:
        return False

    host = re.sub(r"^www\.", "", (parts.hostname or "").lower())
    path = parts.path.lower()
    keys = {k.lower() for k, _ in parse_qsl(parts.query, keep_blank_values=True)}

    if keys & SEARCH_QUERY_KEYS:
        return True
    if "search.shopping.naver.com" in host and "/search/" in path:
        return True
    if _host_matches(host, "coupang.com") and path.startswith("/np/search"):
        return True
    return "/search" in path


def url_quality(value: Optional[str]) -> str:
    """Classify a URL as 'pdp' (product page), 'search' or 'invalid'."""
    if not is_http_url(value):
        return "invalid"
    return "search" if is_search_like_url(value) else "pdp"


def build_offer_id(product_id: Optional[str], store_name: Optional[str], source_url: Optional[str]) -> str:
    """Deterministic offer id from (product, store, canonical URL)."""
    seed = f"{product_id or ''}|{store_name or ''}|{canonicalize_url(source_url or '')}"
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:18]
    return f"offer_{digest}"


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, drop HTML tags, keep only ASCII alphanumerics and Hangul."""
    text = re.sub(r"<[^>]*>", "", str(value or "").lower())
    return re.sub(r"[^a-z0-9가-힣]", "", text)


def to_price(value) -> int:
    """Coerce a price-ish value (number, "1,590,000원", "1050000.00") to a non-negative int."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(round(value))) if math.isfinite(value) else 0
    text = str(value).replace(",", "").strip()
    matched = re.search(r"\d+(?:\.\d+)?", text)
    if not matched:
        return 0
    number = float(matched.group(0))
    return max(0, int(round(number))) if math.isfinite(number) else 0
