"""Configuration and constants for offer price verification."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

__all__ = [
    "PRODUCT_TYPES",
    "CATALOG_DB_PATH",
    "VERIFICATION_LOG_PATH",
    "VERIFICATION_LOG_MAX_BYTES",
    "VERIFICATION_TIMEOUT_MS",
    "NAVER_VERIFY_MIN_INTERVAL_MS",
    "COUPANG_VERIFY_MIN_INTERVAL_MS",
    "VERIFICATION_STALE_MINUTES",
    "LISTING_PRICE_TOKEN_TTL_SECONDS",
    "CONFIRM_TOKEN_TTL_SECONDS",
    "TRACKING_PARAMS",
    "VerificationSettings",
    "env_bool",
    "env_int",
]

_PROJECT_ROOT = Path(__file__).parent.parent


def env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer from the environment, clamped to ``minimum``."""
    raw = os.getenv(name, "")
    try:
        value = int(raw) if raw.strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    """Anything but an explicit "false"/"0"/"no" counts as true when set."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


# Catalog document types held by the store
PRODUCT_TYPES: Tuple[str, ...] = ("laptop", "monitor", "desktop")

# Storage paths
CATALOG_DB_PATH = os.getenv("CATALOG_DB_PATH", str(_PROJECT_ROOT / "data" / "catalog.db"))
VERIFICATION_LOG_PATH = os.getenv(
    "VERIFICATION_LOG_PATH", str(_PROJECT_ROOT / "logs" / "verification.jsonl")
)
VERIFICATION_LOG_MAX_BYTES = env_int("VERIFICATION_LOG_MAX_BYTES", 10 * 1024 * 1024, minimum=1024)

# Outbound call limits
VERIFICATION_TIMEOUT_MS = env_int("VERIFICATION_TIMEOUT_MS", 6500, minimum=1500)
NAVER_VERIFY_MIN_INTERVAL_MS = env_int("NAVER_VERIFY_MIN_INTERVAL_MS", 120, minimum=100)
COUPANG_VERIFY_MIN_INTERVAL_MS = env_int("COUPANG_VERIFY_MIN_INTERVAL_MS", 120, minimum=80)

# Freshness and token lifetimes
VERIFICATION_STALE_MINUTES = env_int("VERIFICATION_STALE_MINUTES", 360, minimum=1)
LISTING_PRICE_TOKEN_TTL_SECONDS = env_int("LISTING_PRICE_TOKEN_TTL_SECONDS", 900, minimum=30)
CONFIRM_TOKEN_TTL_SECONDS = 60

# Query parameters that never identify an offer
TRACKING_PARAMS = frozenset({
    "lptag",
    "traceid",
    "requestid",
    "subid",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
})


@dataclass(frozen=True)
class VerificationSettings:
    """Everything the engine reads from the environment.

    Tests build this directly; production code uses :meth:`from_env`.
    Durations are stored in seconds.
    """

    verification_timeout: float = VERIFICATION_TIMEOUT_MS / 1000
    platform_min_intervals: Dict[str, float] = field(default_factory=lambda: {
        "naver": NAVER_VERIFY_MIN_INTERVAL_MS / 1000,
        "coupang": COUPANG_VERIFY_MIN_INTERVAL_MS / 1000,
    })
    freshness_ttl: float = VERIFICATION_STALE_MINUTES * 60
    listing_token_ttl: float = LISTING_PRICE_TOKEN_TTL_SECONDS
    confirm_token_ttl: float = CONFIRM_TOKEN_TTL_SECONDS
    strict_price_guard: bool = True
    allow_unverified_redirect: bool = False
    click_verify_timeout: float = VERIFICATION_TIMEOUT_MS / 1000 + 1.0
    click_time_verify: bool = True
    verified_only_mode: bool = True
    token_secret: Optional[str] = None

    catalog_db_path: str = CATALOG_DB_PATH
    log_path: str = VERIFICATION_LOG_PATH
    log_max_bytes: int = VERIFICATION_LOG_MAX_BYTES

    naver_client_id: Optional[str] = None
    naver_client_secret: Optional[str] = None
    coupang_access_key: Optional[str] = None
    coupang_secret_key: Optional[str] = None

    # Empirically tuned matching thresholds
    min_match_score: int = 70
    certain_match_score: int = 120
    price_ratio_min: float = 0.4
    price_ratio_max: float = 2.5
    max_matches_per_pattern: int = 80
    hard_mismatch_percent: float = 1.0

    def __post_init__(self) -> None:
        # A listing token must never outlive the verification it vouches for
        if self.listing_token_ttl >= self.freshness_ttl:
            object.__setattr__(self, "listing_token_ttl", max(1.0, self.freshness_ttl / 2))

    @classmethod
    def from_env(cls) -> "VerificationSettings":
        timeout_ms = env_int("VERIFICATION_TIMEOUT_MS", 6500, minimum=1500)
        return cls(
            verification_timeout=timeout_ms / 1000,
            platform_min_intervals={
                "naver": env_int("NAVER_VERIFY_MIN_INTERVAL_MS", 120, minimum=100) / 1000,
                "coupang": env_int("COUPANG_VERIFY_MIN_INTERVAL_MS", 120, minimum=80) / 1000,
            },
            freshness_ttl=env_int("VERIFICATION_STALE_MINUTES", 360, minimum=1) * 60,
            listing_token_ttl=env_int("LISTING_PRICE_TOKEN_TTL_SECONDS", 900, minimum=30),
            confirm_token_ttl=env_int("CONFIRM_TOKEN_TTL_SECONDS", CONFIRM_TOKEN_TTL_SECONDS, minimum=10),
            strict_price_guard=env_bool("STRICT_PRICE_GUARD", True),
            allow_unverified_redirect=env_bool("ALLOW_UNVERIFIED_REDIRECT", False),
            click_verify_timeout=env_int("CLICK_VERIFY_TIMEOUT_MS", timeout_ms + 1000, minimum=1000) / 1000,
            click_time_verify=env_bool("CLICK_TIME_VERIFY", True),
            verified_only_mode=env_bool("VERIFIED_ONLY_MODE", True),
            token_secret=os.getenv("PRICE_TOKEN_SECRET") or None,
            catalog_db_path=os.getenv("CATALOG_DB_PATH", CATALOG_DB_PATH),
            log_path=os.getenv("VERIFICATION_LOG_PATH", VERIFICATION_LOG_PATH),
            log_max_bytes=env_int("VERIFICATION_LOG_MAX_BYTES", 10 * 1024 * 1024, minimum=1024),
            naver_client_id=(os.getenv("NAVER_CLIENT_ID") or "").strip() or None,
            naver_client_secret=(os.getenv("NAVER_CLIENT_SECRET") or "").strip() or None,
            coupang_access_key=(os.getenv("COUPANG_ACCESS_KEY") or "").strip() or None,
            coupang_secret_key=(os.getenv("COUPANG_SECRET_KEY") or "").strip() or None,
            min_match_score=env_int("ADAPTER_MIN_MATCH_SCORE", 70),
            certain_match_score=env_int("ADAPTER_CERTAIN_MATCH_SCORE", 120),
            price_ratio_min=env_float("PRICE_RATIO_MIN", 0.4),
            price_ratio_max=env_float("PRICE_RATIO_MAX", 2.5),
            max_matches_per_pattern=env_int("SCRAPER_MAX_MATCHES_PER_PATTERN", 80, minimum=1),
            hard_mismatch_percent=env_float("HARD_MISMATCH_PERCENT", 1.0),
        )
