"""Append-only verification log (NDJSON) and the metrics read back from it.

Two record kinds share the file: ``verification`` (one per attempt that
reached the verification chain) and ``click`` (one per click-time decision).
"""

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from priceguard.logging_config import get_logger
from priceguard.models import parse_timestamp

__all__ = [
    "VerificationLog",
    "compute_metrics",
    "rotated_path",
    "VERIFICATION_KIND",
    "CLICK_KIND",
]

logger = get_logger("verification_log")

VERIFICATION_KIND = "verification"
CLICK_KIND = "click"


def rotated_path(path: Path, now: datetime) -> Path:
    """``<base>.<YYYY-MM-DD><ext>``, with ``-<epoch ms>`` appended if taken."""
    dated = path.with_name(f"{path.stem}.{now.strftime('%Y-%m-%d')}{path.suffix}")
    if not dated.exists():
        return dated
    millis = int(now.timestamp() * 1000)
    return path.with_name(f"{path.stem}.{now.strftime('%Y-%m-%d')}-{millis}{path.suffix}")


class VerificationLog:
    """Writer and reader for the verification NDJSON file.

    Args:
        path: Active log file
        max_bytes: Size past which the file is rotated before the next append
    """

    def __init__(self, path: str, max_bytes: int = 10 * 1024 * 1024):
        self.path = Path(path)
        self.max_bytes = max_bytes

    def _rotate_if_needed(self, now: datetime) -> None:
        if not self.path.exists() or self.path.stat().st_size <= self.max_bytes:
            return
        target = rotated_path(self.path, now)
        os.replace(self.path, target)
        logger.info(f"Rotated verification log to {target.name}")

    def append(self, entry: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        """Append one record. Write failures are logged, never raised."""
        now = now or datetime.now(timezone.utc)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed(now)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            return True
        except OSError as e:
            logger.error(f"Failed to write verification log: {e}")
            return False

    def read_entries(self, hours: float = 24, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Records of the active file newer than ``hours`` ago; bad lines are skipped."""
        if not self.path.exists():
            return []
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=max(1.0, hours))

        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(entry, dict):
                    continue
                timestamp = parse_timestamp(entry.get("timestamp"))
                if timestamp is None or timestamp < since:
                    continue
                entries.append(entry)
        return entries


def _rate(part: int, whole: int) -> float:
    return part / whole if whole > 0 else 0.0


def compute_metrics(
    entries: List[Dict[str, Any]],
    catalog_stats: Dict[str, int],
    hours: float = 24,
) -> Dict[str, Any]:
    """Rolling-window rates over log records plus current catalog counts.

    Click rates are per click decision; the success rate is per
    verification attempt; the stale rate comes from the catalog itself.
    """
    verifications = [e for e in entries if e.get("kind", VERIFICATION_KIND) == VERIFICATION_KIND]
    clicks = [e for e in entries if e.get("kind") == CLICK_KIND]

    verification_success = sum(1 for e in verifications if e.get("success"))
    click_mismatch = sum(1 for e in clicks if e.get("mismatch"))
    click_hard_mismatch = sum(1 for e in clicks if e.get("hardMismatch"))
    click_blocked = sum(1 for e in clicks if e.get("blocked"))
    click_timeout = sum(1 for e in clicks if e.get("timeout"))

    total_offers = catalog_stats.get("totalOffers", 0)
    stale_offers = catalog_stats.get("staleOffers", 0)

    totals: Dict[str, Any] = {
        "verificationAttempts": len(verifications),
        "verificationSuccess": verification_success,
        "clickAttempts": len(clicks),
        "clickMismatch": click_mismatch,
        "clickHardMismatch": click_hard_mismatch,
        "clickBlocked": click_blocked,
        "clickTimeout": click_timeout,
    }
    totals.update(catalog_stats)

    return {
        "windowHours": hours,
        "price_mismatch_rate": _rate(click_mismatch, len(clicks)),
        "hard_mismatch_rate": _rate(click_hard_mismatch, len(clicks)),
        "verification_success_rate": _rate(verification_success, len(verifications)),
        "stale_offer_rate": _rate(stale_offers, total_offers),
        "redirect_block_rate": _rate(click_blocked, len(clicks)),
        "click_verify_timeout_rate": _rate(click_timeout, len(clicks)),
        "totals": totals,
    }
