"""Tests for price extraction from merchant pages."""

import httpx
import pytest

from priceguard.browser_fallback import (
    BrowserFallbackScraper,
    detect_personalization,
    extract_price_candidates,
    pick_best_candidate,
)
from priceguard.models import Offer
from priceguard.tests.conftest import ELEVENST_URL, html_response, make_settings, run

ITEMPROP_PAGE = """
<html><head><title>LG 그램</title></head>
<body>
  <div class="price"><span itemprop="price" content="1050000">1,050,000원</span></div>
</body></html>
"""

JSON_LD_PAGE = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "Product", "name": "gram",
 "offers": {"@type": "AggregateOffer", "lowPrice": "989000", "highPrice": "1290000"}}
</script>
</head><body></body></html>
"""

STATE_PAGE = """
<html><body>
<script>window.__STATE__ = {"product": {"salePrice": 1120000, "discountedSalePrice": "1,080,000", "price": 15}};</script>
<meta property="product:price:amount" content="1080000">
</body></html>
"""

PERSONALIZED_PAGE = """
<html><body><div class="benefit">회원가 로그인 후 확인하세요</div></body></html>
"""


def offer(url=ELEVENST_URL, raw_price=1000000):
    return Offer(offer_id="offer_x", store="11번가", source_url=url, raw_price=raw_price)


async def scrape(web, settings, target):
    async with httpx.AsyncClient(transport=web.transport()) as client:
        return await BrowserFallbackScraper(client, settings).verify(target)


class TestExtractCandidates:
    """Test candidate extraction from structured data and patterns."""

    def test_itemprop_and_won_suffix(self):
        """Test reading itemprop prices and won-suffixed amounts."""
        assert extract_price_candidates(ITEMPROP_PAGE) == [1050000]

    def test_json_ld_offers(self):
        """Test reading prices from JSON-LD offers."""
        assert 989000 in extract_price_candidates(JSON_LD_PAGE)

    def test_embedded_state_and_meta(self):
        """Test reading embedded state keys and meta tags."""
        candidates = extract_price_candidates(STATE_PAGE)
        assert 1120000 in candidates
        assert 1080000 in candidates
        assert 15 not in candidates

    def test_bounded_per_pattern(self):
        """Test that each pattern contributes a bounded number of matches."""
        html = "".join(f'<i>"salePrice": {1000000 + i}</i>' for i in range(200))
        assert len(extract_price_candidates(html, max_matches=80)) == 80

    def test_no_candidates(self):
        """Test a page without any price."""
        assert extract_price_candidates("<html><body>품절</body></html>") == []


class TestPickBestCandidate:
    """Test candidate selection against the ingestion price."""

    def test_closest_within_band(self):
        """Test picking the candidate closest to the listed price."""
        assert pick_best_candidate([3000, 980000, 1080000, 9900000], 1000000) == 980000

    def test_smallest_when_nothing_in_band(self):
        """Test falling back to the smallest candidate outside the band."""
        assert pick_best_candidate([5000, 9000], 1000000) == 5000

    def test_no_raw_price(self):
        """Test picking the smallest candidate without a listed price."""
        assert pick_best_candidate([1200000, 990000], 0) == 990000

    def test_empty(self):
        """Test that no candidates give zero."""
        assert pick_best_candidate([], 1000000) == 0

    def test_band_is_configurable(self):
        """Test that the ratio band can be narrowed."""
        assert pick_best_candidate([500000, 990000], 1000000, ratio_min=0.99, ratio_max=1.01) == 990000


class TestPersonalization:
    """Test personalization marker detection."""

    @pytest.mark.parametrize("html", [
        "<p>쿠폰적용가 별도</p>",
        "<p>Member price available</p>",
        "<span>회원 전용 특가</span>",
    ])
    def test_markers(self, html):
        """Test that membership and coupon markers are detected."""
        assert detect_personalization(html) is not None

    def test_plain_page(self):
        """Test that a plain product page is not personalized."""
        assert detect_personalization("<p>무료배송</p>") is None


class TestScraperVerify:
    """Test the scraper's verify contract."""

    def test_success(self, tmp_path, web):
        """Test a successful page verification."""
        web.on("www.11st.co.kr", html_response(ITEMPROP_PAGE))
        result = run(scrape(web, make_settings(tmp_path), offer()))

        assert result.ok is True
        assert result.price == 1050000
        assert result.method == "browser"
        assert "Mozilla/5.0" in web.requests[0].headers["User-Agent"]

    def test_personalized(self, tmp_path, web):
        """Test that a members-only price is reported as personalized."""
        web.on("www.11st.co.kr", html_response(PERSONALIZED_PAGE))
        result = run(scrape(web, make_settings(tmp_path), offer()))
        assert result.ok is False
        assert result.code == "PERSONALIZED_PRICE"

    def test_price_not_found(self, tmp_path, web):
        """Test a page with no usable price."""
        web.on("www.11st.co.kr", html_response("<html><body>품절</body></html>"))
        result = run(scrape(web, make_settings(tmp_path), offer()))
        assert result.code == "PRICE_NOT_FOUND"

    def test_http_status(self, tmp_path, web):
        """Test that an HTTP error status is reported with its code."""
        web.on("www.11st.co.kr", html_response("gone", status=404))
        result = run(scrape(web, make_settings(tmp_path), offer()))
        assert result.code == "BROWSER_HTTP_404"
        assert result.method == "browser"

    def test_invalid_source(self, tmp_path, web):
        """Test refusing a non-http source URL."""
        result = run(scrape(web, make_settings(tmp_path), offer(url="")))
        assert result.code == "INVALID_SOURCE_URL"
        assert web.requests == []
