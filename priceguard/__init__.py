"""Offer price verification and freshness engine."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from priceguard.canonical import build_offer_id, canonicalize_url
from priceguard.catalog_store import CatalogError, CatalogStore
from priceguard.config import PRODUCT_TYPES, VerificationSettings
from priceguard.engine import PriceIntegrityEngine
from priceguard.freshness import compute_display_price, compute_price_state
from priceguard.models import Catalog, Offer, Product
from priceguard.orchestrator import BatchSummary, OfferVerificationService, VerificationResult
from priceguard.tokens import TokenError, TokenService

__all__ = [
    # Version
    "__version__",
    # Config
    "PRODUCT_TYPES",
    "VerificationSettings",
    # Models
    "Catalog",
    "Offer",
    "Product",
    # Core
    "PriceIntegrityEngine",
    "OfferVerificationService",
    "VerificationResult",
    "BatchSummary",
    "CatalogStore",
    "CatalogError",
    "TokenService",
    "TokenError",
    "canonicalize_url",
    "build_offer_id",
    "compute_price_state",
    "compute_display_price",
]
