"""Marketplace API adapters."""

from typing import List, Optional

from priceguard.adapters.base import PlatformAdapter, VerifyResult
from priceguard.adapters.coupang import CoupangPartnersAdapter
from priceguard.adapters.naver import NaverShoppingAdapter

__all__ = [
    "PlatformAdapter",
    "VerifyResult",
    "NaverShoppingAdapter",
    "CoupangPartnersAdapter",
    "pick_adapter",
]


def pick_adapter(adapters: List[PlatformAdapter], url: str) -> Optional[PlatformAdapter]:
    """First adapter that recognizes ``url``, or None for unsupported stores."""
    for adapter in adapters:
        if adapter.supports(url):
            return adapter
    return None
