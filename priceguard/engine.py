"""Process-level wiring: one engine instance owns the client, queue and services.

Usage:
    async with PriceIntegrityEngine.from_env() as engine:
        result = await engine.handle_click("offer_abc", price_token=token)
        if result.redirect_url:
            ...
"""

import asyncio
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from priceguard.adapters import CoupangPartnersAdapter, NaverShoppingAdapter, PlatformAdapter
from priceguard.browser_fallback import BrowserFallbackScraper
from priceguard.catalog_store import CatalogStore
from priceguard.config import VerificationSettings
from priceguard.http_client import create_client
from priceguard.jobs import PlatformThrottle, VerificationQueue
from priceguard.logging_config import get_logger, log_verification_event
from priceguard.models import format_timestamp
from priceguard.orchestrator import BatchSummary, OfferVerificationService, VerificationResult
from priceguard.tokens import TokenError, TokenService
from priceguard.verification_log import CLICK_KIND, VerificationLog

__all__ = ["PriceIntegrityEngine", "VERIFY_TIMEOUT"]

logger = get_logger("engine")

VERIFY_TIMEOUT = "VERIFY_TIMEOUT"


def _consume_outcome(future: asyncio.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error(f"Background click verification failed: {future.exception()!r}")


class PriceIntegrityEngine:
    """Builds every component once and serializes catalog writes through one queue.

    Args:
        settings: Engine settings
        store: Catalog store (default: SQLite at ``settings.catalog_db_path``)
        transport: httpx transport for the shared client (tests pass a MockTransport)
        clock: Returns the current aware UTC datetime
        throttle: Per-platform request spacing
    """

    def __init__(
        self,
        settings: VerificationSettings,
        store: Optional[CatalogStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        throttle: Optional[PlatformThrottle] = None,
    ):
        self.settings = settings
        self.store = store or CatalogStore(settings.catalog_db_path)
        self.client = create_client(transport)
        self.throttle = throttle or PlatformThrottle(settings.platform_min_intervals)
        self.adapters: List[PlatformAdapter] = [
            NaverShoppingAdapter(self.client, settings, self.throttle),
            CoupangPartnersAdapter(self.client, settings, self.throttle),
        ]
        self.fallback = BrowserFallbackScraper(self.client, settings)
        self.tokens = TokenService(
            secret=settings.token_secret,
            price_ttl=settings.listing_token_ttl,
            confirm_ttl=settings.confirm_token_ttl,
            clock=clock,
        )
        self.log = VerificationLog(settings.log_path, settings.log_max_bytes)
        self.queue = VerificationQueue()
        self.service = OfferVerificationService(
            store=self.store,
            adapters=self.adapters,
            fallback=self.fallback,
            tokens=self.tokens,
            log=self.log,
            settings=settings,
            clock=clock,
        )

    @classmethod
    def from_env(cls) -> "PriceIntegrityEngine":
        return cls(VerificationSettings.from_env())

    async def start(self) -> None:
        self.queue.start()

    async def close(self) -> None:
        """Drain queued jobs, then release the HTTP client."""
        await self.queue.close()
        await self.client.aclose()

    async def __aenter__(self) -> "PriceIntegrityEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Queued operations
    # ------------------------------------------------------------------ #

    async def verify_offer_by_id(self, offer_id: str, **options: Any) -> VerificationResult:
        return await self.queue.submit(lambda: self.service.verify_offer_by_id(offer_id, **options))

    async def verify_catalog_offers(self, product_type: str, **options: Any) -> BatchSummary:
        return await self.queue.submit(lambda: self.service.verify_catalog_offers(product_type, **options))

    async def verify_all_offers(self, **options: Any) -> List[BatchSummary]:
        return await self.queue.submit(lambda: self.service.verify_all_offers(**options))

    # ------------------------------------------------------------------ #
    # Read side
    # ------------------------------------------------------------------ #

    def prepare_catalog_for_response(
        self, product_type: str, store_visibility: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.service.prepare_catalog_for_response(product_type, store_visibility)

    def get_verification_metrics(self, hours: float = 24) -> Dict[str, Any]:
        return self.service.get_verification_metrics(hours)

    # ------------------------------------------------------------------ #
    # Click-time flow
    # ------------------------------------------------------------------ #

    async def handle_click(
        self,
        offer_id: str,
        price_token: Optional[str] = None,
        confirm_token: Optional[str] = None,
    ) -> VerificationResult:
        """Decide whether a click on ``offer_id`` may go through to the merchant.

        A valid confirm token whose price is still the fresh verified price
        redirects at once. Otherwise the offer is re-verified on the queue,
        waiting at most ``click_verify_timeout``; the verification itself
        keeps running if the wait times out.
        """
        started = time.perf_counter()
        token_error: Optional[str] = None
        listed_price: Optional[int] = None
        result: Optional[VerificationResult] = None

        if confirm_token:
            try:
                payload = self.tokens.verify_confirm_token(confirm_token, offer_id)
            except TokenError as e:
                token_error = e.code
            else:
                listed_price = int(payload["newPrice"])
                result = self.service.confirmed_redirect(offer_id, listed_price)
        elif price_token:
            try:
                payload = self.tokens.verify_price_token(price_token, offer_id)
            except TokenError as e:
                token_error = e.code
            else:
                listed_price = int(payload["listedPrice"])

        if token_error:
            logger.warning(f"Rejected token for {offer_id}: {token_error}")

        if result is None:
            future = self.queue.submit(lambda: self.service.verify_offer_by_id(
                offer_id,
                trigger="click",
                force=self.settings.click_time_verify,
                listed_price=listed_price,
            ))
            try:
                result = await asyncio.wait_for(asyncio.shield(future), self.settings.click_verify_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Click verification timed out for {offer_id}")
                # The job still runs to completion in the queue
                future.add_done_callback(_consume_outcome)
                result = VerificationResult(
                    ok=False,
                    offer_id=offer_id,
                    code=VERIFY_TIMEOUT,
                    message=f"Verification did not finish within {self.settings.click_verify_timeout:.1f}s",
                    timed_out=True,
                )

        result = replace(result, token_error=token_error)
        latency_ms = int((time.perf_counter() - started) * 1000)
        self._log_click(result, listed_price, confirm_token is not None, latency_ms)
        return result

    def _log_click(
        self,
        result: VerificationResult,
        listed_price: Optional[int],
        confirmed: bool,
        latency_ms: int,
    ) -> None:
        now = self.service.now()
        entry = {
            "timestamp": format_timestamp(now),
            "kind": CLICK_KIND,
            "trigger": "click",
            "offerId": result.offer_id,
            "productType": result.product_type,
            "listedPrice": listed_price,
            "success": result.ok,
            "code": result.code,
            "skipped": result.skipped,
            "mismatch": result.price_changed,
            "hardMismatch": result.hard_mismatch,
            "blocked": result.blocked,
            "degradedRedirect": result.degraded_redirect,
            "requiresConfirmation": result.requires_confirmation,
            "confirmed": confirmed,
            "timeout": result.timed_out,
            "tokenError": result.token_error,
            "latencyMs": latency_ms,
        }
        self.log.append(entry, now)
        log_verification_event("click_decision", {
            "offer_id": result.offer_id,
            "blocked": result.blocked,
            "code": result.code,
            "latency_ms": latency_ms,
        })
