"""Tests for the SQLite catalog store."""

import json

import pytest

from priceguard.catalog_store import CatalogError, import_catalog_file
from priceguard.models import Catalog
from priceguard.tests.conftest import NAVER_OFFER_ID, laptop_document


class TestCatalogStore:
    """Test whole-document load/save."""

    def test_empty_type_loads_empty_catalog(self, store):
        """Test that a type with no stored document loads empty."""
        catalog, changed = store.load("monitor")
        assert catalog.products == []
        assert changed is False

    def test_round_trip(self, store):
        """Test saving and loading a catalog."""
        catalog, _ = Catalog.from_document("laptop", laptop_document())
        store.save_catalog("laptop", catalog)

        loaded, changed = store.load("laptop")
        assert changed is False
        assert loaded.to_document() == catalog.to_document()
        assert loaded.find_offer(NAVER_OFFER_ID) is not None

    def test_save_replaces_document(self, store):
        """Test that saving replaces the whole document."""
        catalog, _ = Catalog.from_document("laptop", laptop_document())
        store.save_catalog("laptop", catalog)
        catalog.products = []
        store.save_catalog("laptop", catalog)

        assert store.load_catalog("laptop").products == []

    def test_unknown_type(self, store):
        """Test that unknown product types are rejected."""
        with pytest.raises(CatalogError):
            store.load("tablet")
        with pytest.raises(CatalogError):
            store.save_catalog("tablet", Catalog(product_type="tablet"))

    def test_stats(self, seeded_store):
        """Test per-type product, offer and status counts."""
        stats = seeded_store.stats()
        assert stats["laptop"]["products"] == 1
        assert stats["laptop"]["offers"] == 3
        assert stats["laptop"]["statuses"] == {"stale": 3}
        assert stats["desktop"]["offers"] == 0


class TestImportCatalogFile:
    """Test seeding the store from JSON files."""

    def test_imports_legacy_document(self, store, tmp_path):
        """Test importing a document that uses the legacy stores key."""
        document = laptop_document()
        document["products"][0]["stores"] = document["products"][0].pop("offers")
        path = tmp_path / "laptop.json"
        path.write_text(json.dumps(document, ensure_ascii=False), encoding="utf-8")

        catalog = import_catalog_file(store, str(path), "laptop")

        assert len(catalog.products[0].offers) == 3
        assert store.load_catalog("laptop").find_offer(NAVER_OFFER_ID) is not None

    def test_unreadable_file(self, store, tmp_path):
        """Test that an invalid JSON file raises CatalogError."""
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CatalogError):
            import_catalog_file(store, str(path), "laptop")

    def test_missing_file(self, store, tmp_path):
        """Test that a missing file raises CatalogError."""
        with pytest.raises(CatalogError):
            import_catalog_file(store, str(tmp_path / "nope.json"), "laptop")
