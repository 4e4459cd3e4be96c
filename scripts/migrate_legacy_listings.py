"""
Legacy Listings → Listings (schema v2) Migration Script.

Migrates all rows from the legacy `resources` table into `listings`.
Field mapping lives in marketplace/services/listing_migration.py.

Usage:
    APP_ENV=development python scripts/migrate_legacy_listings.py [--dry-run]
    # or
    flask --app wsgi migrate-legacy-listings [--dry-run]

Idempotency:
    Rows whose id already exists in `listings` are skipped, making the script
    safe to re-run after a partial failure.
"""

from __future__ import annotations

import argparse
import logging
import sys

# Allow running directly: `python scripts/migrate_legacy_listings.py`
if __name__ == "__main__" and __package__ is None:
    import os

    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace import create_app
from marketplace.services.listing_migration import LEGACY_TABLE, migrate_legacy_listings

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--dry-run", action="store_true", help="Roll back instead of committing.")
    parser.add_argument("--table", default=LEGACY_TABLE, help="Legacy table name.")
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        stats = migrate_legacy_listings(dry_run=args.dry_run, table=args.table)

    logger.info("Migration summary: %s", stats)
    return 1 if stats["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
