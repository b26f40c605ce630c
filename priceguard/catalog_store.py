"""SQLite-backed whole-document catalog store.

One row per product type holding the full catalog JSON. Reads and writes
are whole-document; concurrency control is the single-writer job queue.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Optional, Tuple

from priceguard.config import CATALOG_DB_PATH, PRODUCT_TYPES
from priceguard.logging_config import get_logger
from priceguard.models import Catalog

__all__ = [
    "CatalogError",
    "CatalogStore",
    "get_connection",
    "init_db",
    "import_catalog_file",
]

logger = get_logger("catalog")


class CatalogError(Exception):
    """Raised for unknown product types or unreadable catalog documents."""


@contextmanager
def get_connection(db_path: str = CATALOG_DB_PATH) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database connections."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = CATALOG_DB_PATH) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS catalogs (
                product_type TEXT PRIMARY KEY,
                document TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()


class CatalogStore:
    """``load`` / ``save`` of catalog documents keyed by product type.

    Args:
        db_path: SQLite file path
        product_types: Accepted product types
    """

    def __init__(self, db_path: str = CATALOG_DB_PATH, product_types: Tuple[str, ...] = PRODUCT_TYPES):
        self.db_path = db_path
        self.product_types = tuple(product_types)
        init_db(db_path)

    def _check_type(self, product_type: str) -> None:
        if product_type not in self.product_types:
            raise CatalogError(f"Unknown product type: {product_type}")

    def load_document(self, product_type: str) -> Optional[Dict[str, Any]]:
        """Raw stored document, or None if nothing was saved yet."""
        self._check_type(product_type)
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT document FROM catalogs WHERE product_type = ?", (product_type,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["document"])
        except ValueError as e:
            raise CatalogError(f"Stored {product_type} catalog is not valid JSON: {e}") from e

    def load(self, product_type: str) -> Tuple[Catalog, bool]:
        """Typed, migrated catalog plus whether migration changed anything."""
        document = self.load_document(product_type)
        if document is None:
            return Catalog(product_type=product_type), False
        return Catalog.from_document(product_type, document)

    def load_catalog(self, product_type: str) -> Catalog:
        catalog, _ = self.load(product_type)
        return catalog

    def save_catalog(self, product_type: str, catalog: Catalog) -> None:
        """Replace the whole stored document for ``product_type``."""
        self._check_type(product_type)
        document = json.dumps(catalog.to_document(), ensure_ascii=False)
        now = datetime.now(timezone.utc).isoformat()
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO catalogs (product_type, document, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(product_type) DO UPDATE SET
                    document = excluded.document,
                    updated_at = excluded.updated_at
            """, (product_type, document, now))
            conn.commit()
        logger.debug(f"Saved {product_type} catalog ({len(catalog.products)} products)")

    def stats(self) -> Dict[str, Any]:
        """Per-type product/offer counts for the CLI."""
        result: Dict[str, Any] = {}
        for product_type in self.product_types:
            catalog = self.load_catalog(product_type)
            offers = [offer for _, offer in catalog.iter_offers()]
            statuses: Dict[str, int] = {}
            for offer in offers:
                statuses[offer.verification_status] = statuses.get(offer.verification_status, 0) + 1
            result[product_type] = {
                "products": len(catalog.products),
                "offers": len(offers),
                "statuses": statuses,
            }
        return result


def import_catalog_file(store: CatalogStore, path: str, product_type: str) -> Catalog:
    """Seed ``product_type`` from a JSON catalog document on disk.

    The document is migrated on the way in, so legacy shapes are accepted.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        raise CatalogError(f"Cannot read catalog file {path}: {e}") from e

    catalog, _ = Catalog.from_document(product_type, document)
    store.save_catalog(product_type, catalog)
    logger.info(f"Imported {len(catalog.products)} {product_type} products from {path}")
    return catalog
