#!/usr/bin/env python3
"""Seed the system deal types into the configured database.

Alembic's initial migration already inserts these rows; this script is for
development databases built with init_db() instead of migrations.

Usage:
    python scripts/seed_deal_types.py
    python scripts/seed_deal_types.py --create-tables
    python scripts/seed_deal_types.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio

import structlog

from src.dealflow.core.database import close_db, get_session, init_db
from src.dealflow.core.logging import configure_structlog
from src.dealflow.deals.seeds import SYSTEM_DEAL_TYPES, seed_deal_types

logger = structlog.get_logger(__name__)


async def seed(create_tables: bool = False, dry_run: bool = False) -> int:
    """Insert missing system deal types.

    Args:
        create_tables: Run init_db() first (development databases only).
        dry_run: Only log what would be seeded.

    Returns:
        Number of deal types inserted.
    """
    if dry_run:
        for row in SYSTEM_DEAL_TYPES:
            logger.info(
                "seed.dry_run",
                type_code=row["type_code"],
                stages=len(row["pipeline_stages"]),
                milestones=len(row["default_milestones"]),
            )
        return 0

    try:
        if create_tables:
            await init_db()
        return await seed_deal_types(get_session)
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed system deal types")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables from the models before seeding",
    )
    parser.add_argument("--dry-run", action="store_true", help="Log without writing")
    args = parser.parse_args()

    configure_structlog()
    inserted = asyncio.run(seed(create_tables=args.create_tables, dry_run=args.dry_run))
    logger.info("seed.complete", inserted=inserted)


if __name__ == "__main__":
    main()
