"""Shared fixtures: fixed clock, temp store, sample catalogs, fake marketplace HTTP."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import httpx
import pytest

from priceguard.canonical import build_offer_id
from priceguard.catalog_store import CatalogStore
from priceguard.config import VerificationSettings
from priceguard.models import Catalog

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

NAVER_URL = "https://smartstore.naver.com/lgstore/products/8812345678"
COUPANG_URL = "https://www.coupang.com/vp/products/7712345678?itemId=2001&vendorItemId=3001"
ELEVENST_URL = "https://www.11st.co.kr/products/5551234567"

PRODUCT_ID = "lap-1"
PRODUCT_NAME = "LG 그램 16 16Z90S-GA5CK"
PRODUCT_MODEL = "16Z90S-GA5CK"

NAVER_OFFER_ID = build_offer_id(PRODUCT_ID, "LG전자 공식스토어", NAVER_URL)
COUPANG_OFFER_ID = build_offer_id(PRODUCT_ID, "쿠팡", COUPANG_URL)
ELEVENST_OFFER_ID = build_offer_id(PRODUCT_ID, "11번가", ELEVENST_URL)


class FakeClock:
    """Callable clock returning a settable aware datetime."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeWeb:
    """MockTransport handler routing requests by host; records every request."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], Any]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, host: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[host] = handler

    def hosts(self) -> List[str]:
        return [r.url.host for r in self.requests]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def naver_item(price: Any = "950000", **overrides) -> Dict[str, Any]:
    item = {
        "productId": "8812345678",
        "link": NAVER_URL,
        "title": "<b>LG 그램</b> 16 16Z90S-GA5CK 인텔 울트라5",
        "mallName": "LG전자 공식스토어",
        "lprice": price,
    }
    item.update(overrides)
    return item


def naver_response(*items: Dict[str, Any]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"total": len(items), "items": list(items)})
    return handler


def html_response(html: str, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=html, headers={"content-type": "text/html; charset=utf-8"})
    return handler


def offer_record(store: str, url: str, price: int, **overrides) -> Dict[str, Any]:
    record = {"store": store, "sourceUrl": url, "price": price}
    record.update(overrides)
    return record


def laptop_document(*offers: Dict[str, Any]) -> Dict[str, Any]:
    if not offers:
        offers = (
            offer_record("LG전자 공식스토어", NAVER_URL, 1000000, sourceProductId="8812345678"),
            offer_record("쿠팡", COUPANG_URL, 1050000),
            offer_record("11번가", ELEVENST_URL, 990000),
        )
    return {
        "products": [{
            "id": PRODUCT_ID,
            "name": PRODUCT_NAME,
            "model": PRODUCT_MODEL,
            "brand": "LG",
            "prices": {"current": 990000, "original": 1890000, "lowest": 990000, "average": 1010000},
            "offers": list(offers),
        }],
        "lastSync": "2026-03-01T06:00:00.000Z",
    }


def verified_fields(price: int, verified_at: datetime, method: str = "api") -> Dict[str, Any]:
    return {
        "verificationStatus": "verified",
        "verificationMethod": method,
        "verifiedPrice": price,
        "verifiedAt": verified_at.isoformat().replace("+00:00", "Z"),
        "isActive": True,
    }


def run(coro):
    return asyncio.run(coro)


def make_settings(tmp_path, **overrides) -> VerificationSettings:
    values = dict(
        verification_timeout=2.0,
        platform_min_intervals={"naver": 0.0, "coupang": 0.0},
        freshness_ttl=6 * 3600,
        listing_token_ttl=900,
        confirm_token_ttl=60,
        click_verify_timeout=3.0,
        token_secret="test-secret",
        catalog_db_path=str(tmp_path / "catalog.db"),
        log_path=str(tmp_path / "logs" / "verification.jsonl"),
        naver_client_id="naver-id",
        naver_client_secret="naver-secret",
        coupang_access_key="coupang-access",
        coupang_secret_key="coupang-secret",
    )
    values.update(overrides)
    return VerificationSettings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def store(settings):
    return CatalogStore(settings.catalog_db_path)


@pytest.fixture
def seeded_store(store):
    """Store holding the sample laptop catalog (three unverified offers)."""
    catalog, _ = Catalog.from_document("laptop", laptop_document())
    store.save_catalog("laptop", catalog)
    return store


@pytest.fixture
def web():
    return FakeWeb()
