"""Command-line interface for the price verification engine."""

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, List, Optional

from dotenv import load_dotenv

from priceguard.catalog_store import CatalogError, CatalogStore, import_catalog_file
from priceguard.config import PRODUCT_TYPES, VerificationSettings
from priceguard.engine import PriceIntegrityEngine
from priceguard.logging_config import setup_logging

__all__ = ["main", "parse_args", "show_stats"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Offer price verification: live price checks, freshness and metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Verify one offer now
  priceguard --verify-offer offer_3f2a9c0d1e7b6a5c4d

  # Re-verify stale laptop offers, at most 20
  priceguard --verify-batch --type laptop --limit 20

  # Seed the store from an exported catalog
  priceguard --import-catalog data/laptop.json --type laptop

  # Rates over the last 6 hours
  priceguard --metrics --hours 6
        """,
    )

    # Verification
    parser.add_argument(
        "--verify-offer",
        metavar="OFFER_ID",
        help="Verify a single offer (always forced)",
    )
    parser.add_argument(
        "--verify-batch",
        action="store_true",
        help="Verify every offer that is not fresh (all types unless --type)",
    )
    parser.add_argument(
        "--type",
        choices=list(PRODUCT_TYPES),
        help="Product type for --verify-batch / --import-catalog",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-verify fresh offers too (with --verify-batch)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum offers to verify per product type (with --verify-batch)",
    )

    # Read side
    parser.add_argument(
        "--show",
        metavar="TYPE",
        choices=list(PRODUCT_TYPES),
        help="Print the catalog view for a product type",
    )
    parser.add_argument(
        "--all-stores",
        action="store_true",
        help="Include unverified offers in --show",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print rolling-window verification metrics",
    )
    parser.add_argument(
        "--hours",
        type=float,
        default=24,
        help="Metrics window in hours (default: 24)",
    )

    # Store
    parser.add_argument(
        "--import-catalog",
        metavar="PATH",
        help="Load a JSON catalog document into the store (requires --type)",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show store statistics and exit",
    )
    parser.add_argument(
        "--db",
        help="SQLite catalog path (default: CATALOG_DB_PATH)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging on the console",
    )

    return parser.parse_args(argv)


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def show_stats(store: CatalogStore) -> None:
    """Display store statistics."""
    print(f"\n{'='*50}")
    print(f"Catalog store: {store.db_path}")
    print(f"{'='*50}")

    for product_type, stats in store.stats().items():
        print(f"\n{product_type}: {stats['products']} products, {stats['offers']} offers")
        for status, count in sorted(stats["statuses"].items()):
            print(f"  {status}: {count}")
    print()


async def _run(args: argparse.Namespace, settings: VerificationSettings) -> int:
    async with PriceIntegrityEngine(settings) as engine:
        if args.verify_offer:
            result = await engine.verify_offer_by_id(args.verify_offer, trigger="manual", force=True)
            _print_json(result.to_dict())
            return 0 if result.ok else 1

        if args.verify_batch:
            options = {"force": args.force, "limit": args.limit, "trigger": "manual"}
            if args.type:
                summaries = [await engine.verify_catalog_offers(args.type, **options)]
            else:
                summaries = await engine.verify_all_offers(**options)
            _print_json([s.to_dict() for s in summaries])
            return 0

        if args.show:
            visibility = "all" if args.all_stores else "verified"
            _print_json(engine.prepare_catalog_for_response(args.show, visibility))
            return 0

        if args.metrics:
            _print_json(engine.get_verification_metrics(args.hours))
            return 0
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    load_dotenv()
    args = parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    settings = VerificationSettings.from_env()
    if args.db:
        settings = replace(settings, catalog_db_path=args.db)

    try:
        if args.stats:
            show_stats(CatalogStore(settings.catalog_db_path))
            return 0

        if args.import_catalog:
            if not args.type:
                print("--import-catalog requires --type")
                return 2
            catalog = import_catalog_file(CatalogStore(settings.catalog_db_path), args.import_catalog, args.type)
            print(f"Imported {len(catalog.products)} {args.type} products")
            return 0

        if not (args.verify_offer or args.verify_batch or args.show or args.metrics):
            print("Nothing to do. See --help.")
            return 2

        return asyncio.run(_run(args, settings))
    except CatalogError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
