"""Naver Shopping search API adapter."""

from typing import Any, Dict, List
from urllib.parse import urlencode

from priceguard.adapters.base import MatchContext, PlatformAdapter, title_overlaps
from priceguard.canonical import (
    canonicalize_url,
    extract_naver_product_id,
    is_naver_url,
    normalize_text,
    to_price,
)
from priceguard.http_client import FetchError, fetch_json

__all__ = ["NaverShoppingAdapter", "NAVER_SEARCH_URL"]

NAVER_SEARCH_URL = "https://openapi.naver.com/v1/search/shop.json"


class NaverShoppingAdapter(PlatformAdapter):
    """Matches an offer against Naver Shopping search results (``lprice``)."""

    platform = "naver"
    query_tokens = 7

    def supports(self, url: str) -> bool:
        return is_naver_url(url)

    def has_credentials(self) -> bool:
        return bool(self.settings.naver_client_id and self.settings.naver_client_secret)

    def extract_product_id(self, url: str) -> str:
        return extract_naver_product_id(url)

    async def search(self, query: str) -> List[Dict[str, Any]]:
        await self.throttle.wait(self.platform)
        url = f"{NAVER_SEARCH_URL}?{urlencode({'query': query, 'display': self.search_limit, 'sort': 'sim'})}"
        headers = {
            "X-Naver-Client-Id": self.settings.naver_client_id or "",
            "X-Naver-Client-Secret": self.settings.naver_client_secret or "",
        }
        try:
            data = await fetch_json(self.client, url, headers=headers, timeout=self.settings.verification_timeout)
        except FetchError as e:
            raise self.fetch_failure(e) from e

        items = data.get("items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    def score_item(self, item: Dict[str, Any], context: MatchContext) -> int:
        score = 0
        item_id = str(item.get("productId") or "")
        if context.target_product_id and item_id == context.target_product_id:
            score += 140
        if context.canonical_url and canonicalize_url(item.get("link") or "") == context.canonical_url:
            score += 120
        if title_overlaps(item.get("title") or "", context.product_name, 18):
            score += 35

        store = normalize_text(context.store_name)
        mall = normalize_text(item.get("mallName") or "")
        if store and mall and (store in mall or mall in store):
            score += 25

        if self.item_price(item) > 0:
            score += 10
        return score

    def item_price(self, item: Dict[str, Any]) -> int:
        return to_price(item.get("lprice"))
