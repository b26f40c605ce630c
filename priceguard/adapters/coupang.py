"""Coupang Partners product search adapter.

Requests are signed with Coupang's CEA scheme: an HMAC-SHA256 over
``signed-date + METHOD + path + query`` keyed by the secret key.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from priceguard.adapters.base import MatchContext, PlatformAdapter, SearchFailure, title_overlaps
from priceguard.canonical import (
    canonicalize_url,
    extract_coupang_product_id,
    is_coupang_url,
    to_price,
)
from priceguard.http_client import FetchError, fetch_json

__all__ = [
    "CoupangPartnersAdapter",
    "COUPANG_API_HOST",
    "COUPANG_SEARCH_PATH",
    "signed_date",
    "build_authorization",
]

COUPANG_API_HOST = "https://api-gateway.coupang.com"
COUPANG_SEARCH_PATH = "/v2/providers/affiliate_open_api/apis/openapi/v1/products/search"


def signed_date(now: Optional[datetime] = None) -> str:
    """Coupang signed-date format ``YYMMDDTHHMMSSZ`` in UTC."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime("%y%m%dT%H%M%SZ")


def build_authorization(
    access_key: str,
    secret_key: str,
    method: str,
    path: str,
    query: str = "",
    now: Optional[datetime] = None,
) -> str:
    """The ``Authorization`` header value for one Coupang Partners request."""
    date = signed_date(now)
    message = f"{date}{method.upper()}{path}{query.lstrip('?')}"
    signature = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return (
        f"CEA algorithm=HmacSHA256, access-key={access_key}, "
        f"signed-date={date}, signature={signature}"
    )


class CoupangPartnersAdapter(PlatformAdapter):
    """Matches an offer against Coupang Partners search results (``productPrice``)."""

    platform = "coupang"
    query_tokens = 6

    def supports(self, url: str) -> bool:
        return is_coupang_url(url)

    def has_credentials(self) -> bool:
        return bool(self.settings.coupang_access_key and self.settings.coupang_secret_key)

    def extract_product_id(self, url: str) -> str:
        return extract_coupang_product_id(url)

    async def search(self, query: str) -> List[Dict[str, Any]]:
        await self.throttle.wait(self.platform)
        limit = max(1, min(self.search_limit, 50))
        querystring = f"keyword={quote(query, safe='')}&limit={limit}"
        authorization = build_authorization(
            self.settings.coupang_access_key or "",
            self.settings.coupang_secret_key or "",
            "GET",
            COUPANG_SEARCH_PATH,
            querystring,
        )
        headers = {
            "Authorization": authorization,
            "Content-Type": "application/json;charset=UTF-8",
        }
        url = f"{COUPANG_API_HOST}{COUPANG_SEARCH_PATH}?{querystring}"
        try:
            data = await fetch_json(self.client, url, headers=headers, timeout=self.settings.verification_timeout)
        except FetchError as e:
            raise self.fetch_failure(e) from e

        if not isinstance(data, dict):
            raise SearchFailure("COUPANG_FETCH_ERROR", "Unexpected response shape")
        payload = data.get("data")
        items = payload.get("productData") if isinstance(payload, dict) else None
        return items if isinstance(items, list) else []

    def score_item(self, item: Dict[str, Any], context: MatchContext) -> int:
        score = 0
        item_id = str(item.get("productId") or "")
        if context.target_product_id and item_id == context.target_product_id:
            score += 150
        if context.canonical_url and canonicalize_url(item.get("productUrl") or "") == context.canonical_url:
            score += 120
        if title_overlaps(item.get("productName") or "", context.product_name, 16):
            score += 35
        if self.item_price(item) > 0:
            score += 10
        return score

    def item_price(self, item: Dict[str, Any]) -> int:
        return to_price(item.get("productPrice"))
