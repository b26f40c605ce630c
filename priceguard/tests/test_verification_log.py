"""Tests for the append-only verification log and metrics."""

import json
from datetime import timedelta

import pytest

from priceguard.tests.conftest import FIXED_NOW
from priceguard.verification_log import VerificationLog, compute_metrics, rotated_path


def stamp(delta_hours=0.0):
    return (FIXED_NOW - timedelta(hours=delta_hours)).isoformat().replace("+00:00", "Z")


class TestVerificationLog:
    """Test append, windowed reads and rotation."""

    def test_append_and_read_window(self, tmp_path):
        """Test appending records and reading the time window."""
        log = VerificationLog(str(tmp_path / "logs" / "verification.jsonl"))
        log.append({"timestamp": stamp(30), "kind": "verification", "success": True}, FIXED_NOW)
        log.append({"timestamp": stamp(2), "kind": "verification", "success": False}, FIXED_NOW)
        log.append({"timestamp": stamp(0), "kind": "click", "blocked": True}, FIXED_NOW)

        entries = log.read_entries(hours=24, now=FIXED_NOW)
        assert [e["kind"] for e in entries] == ["verification", "click"]

    def test_malformed_lines_skipped(self, tmp_path):
        """Test that malformed lines are skipped."""
        path = tmp_path / "verification.jsonl"
        path.write_text(
            "not json\n"
            + json.dumps({"timestamp": stamp(1), "success": True}) + "\n"
            + "[1, 2]\n"
            + json.dumps({"timestamp": "yesterday", "success": True}) + "\n"
            + "\n",
            encoding="utf-8",
        )
        entries = VerificationLog(str(path)).read_entries(hours=24, now=FIXED_NOW)
        assert len(entries) == 1

    def test_missing_file(self, tmp_path):
        """Test reading a log that does not exist."""
        assert VerificationLog(str(tmp_path / "none.jsonl")).read_entries(now=FIXED_NOW) == []

    def test_rotates_when_too_large(self, tmp_path):
        """Test rotating the file once it grows too large."""
        path = tmp_path / "verification.jsonl"
        log = VerificationLog(str(path), max_bytes=200)
        for i in range(5):
            log.append({"timestamp": stamp(), "n": i, "padding": "x" * 60}, FIXED_NOW)

        rotated = tmp_path / "verification.2026-03-01.jsonl"
        assert rotated.exists()
        assert path.exists()
        assert path.stat().st_size <= 200 + 100

    def test_rotated_path_avoids_collision(self, tmp_path):
        """Test a unique rotated name when the dated one exists."""
        path = tmp_path / "verification.jsonl"
        first = rotated_path(path, FIXED_NOW)
        assert first.name == "verification.2026-03-01.jsonl"

        first.write_text("", encoding="utf-8")
        second = rotated_path(path, FIXED_NOW)
        assert second.name == f"verification.2026-03-01-{int(FIXED_NOW.timestamp() * 1000)}.jsonl"

    def test_write_failure_is_not_raised(self, tmp_path):
        """Test that a failed write returns False instead of raising."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        log = VerificationLog(str(blocker / "verification.jsonl"))
        assert log.append({"timestamp": stamp()}, FIXED_NOW) is False


class TestComputeMetrics:
    """Test rolling-window rates."""

    def test_rates(self):
        """Test every rate from a mixed set of records."""
        entries = [
            {"kind": "verification", "success": True},
            {"kind": "verification", "success": True},
            {"kind": "verification", "success": False},
            {"success": True},
            {"kind": "click", "mismatch": True, "hardMismatch": True, "blocked": True},
            {"kind": "click", "mismatch": True, "blocked": False},
            {"kind": "click", "timeout": True, "blocked": True},
            {"kind": "click"},
        ]
        stats = {"totalOffers": 10, "staleOffers": 3, "verifiedOffers": 5}

        metrics = compute_metrics(entries, stats, hours=6)

        assert metrics["windowHours"] == 6
        assert metrics["verification_success_rate"] == pytest.approx(0.75)
        assert metrics["price_mismatch_rate"] == pytest.approx(0.5)
        assert metrics["hard_mismatch_rate"] == pytest.approx(0.25)
        assert metrics["redirect_block_rate"] == pytest.approx(0.5)
        assert metrics["click_verify_timeout_rate"] == pytest.approx(0.25)
        assert metrics["stale_offer_rate"] == pytest.approx(0.3)
        assert metrics["totals"]["clickAttempts"] == 4
        assert metrics["totals"]["verifiedOffers"] == 5

    def test_empty_window(self):
        """Test that an empty window gives zero rates."""
        metrics = compute_metrics([], {"totalOffers": 0, "staleOffers": 0})
        for key in (
            "price_mismatch_rate",
            "hard_mismatch_rate",
            "verification_success_rate",
            "stale_offer_rate",
            "redirect_block_rate",
            "click_verify_timeout_rate",
        ):
            assert metrics[key] == 0.0
