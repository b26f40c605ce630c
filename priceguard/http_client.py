"""Outbound HTTP for adapters and the fallback scraper.

Every call runs on a shared ``httpx.AsyncClient`` under a hard timeout.
Failures are normalized to :class:`FetchError`; nothing here retries,
a failed call waits for the next scheduled or triggered verification.
"""

import asyncio
import random
from typing import Any, Dict, Optional

import httpx

from priceguard.logging_config import get_logger

__all__ = [
    "FetchError",
    "USER_AGENTS",
    "browser_headers",
    "create_client",
    "fetch_json",
    "fetch_html",
]

logger = get_logger("http")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
]


class FetchError(Exception):
    """An outbound call that did not produce a usable response.

    ``kind`` is one of ``timeout``, ``http``, ``transport`` or ``decode``;
    ``status`` is set for ``http``.
    """

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status


def browser_headers() -> Dict[str, str]:
    """A realistic desktop browser header set with a rotating User-Agent."""
    return {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
        "Accept-Encoding": "gzip, deflate",
    }


def create_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Client shared by all outbound calls of one engine instance."""
    return httpx.AsyncClient(follow_redirects=True, transport=transport)


async def _get(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]],
    timeout: float,
) -> httpx.Response:
    try:
        response = await asyncio.wait_for(
            client.get(url, headers=headers, timeout=timeout),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise FetchError("timeout", f"Timeout after {timeout:.1f}s: {url}") from e
    except httpx.HTTPError as e:
        raise FetchError("transport", f"{type(e).__name__}: {e}") from e

    if not response.is_success:
        raise FetchError("http", f"HTTP {response.status_code} for {url}", status=response.status_code)
    return response


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 6.5,
) -> Any:
    """GET ``url`` and decode the JSON body."""
    response = await _get(client, url, headers, timeout)
    try:
        return response.json()
    except ValueError as e:
        raise FetchError("decode", f"Invalid JSON from {url}: {e}") from e


async def fetch_html(
    client: httpx.AsyncClient,
    url: str,
    timeout: float = 6.5,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """GET ``url`` with browser-like headers and return the body text."""
    merged = browser_headers()
    if headers:
        merged.update(headers)
    response = await _get(client, url, merged, timeout)
    logger.debug(f"Fetched {len(response.text)} chars from {url}")
    return response.text
