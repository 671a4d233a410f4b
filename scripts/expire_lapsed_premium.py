#!/usr/bin/env python3
"""
Clear premium for users whose subscription expiry has passed.

Cancelled subscriptions keep premium until their expiry; when the provider's
EXPIRATION webhook is lost, this sweep converges the ledger. Schedule it
(e.g. hourly via cron) or call POST /admin/billing/expire-lapsed.

Usage:
    python scripts/expire_lapsed_premium.py [--db-path PATH] [--dry-run]
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mosaic.storage.database import UserDatabase, to_epoch_ms

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_sweep(db_path: str, dry_run: bool) -> int:
    """
    Run the lapsed-premium sweep.

    Returns:
        int: Number of users downgraded (or that would be, in dry-run mode)
    """
    db = UserDatabase(db_path=db_path)
    await db.initialize()

    try:
        if dry_run:
            rows = (
                db._get_connection()
                .execute(
                    "SELECT user_id FROM users WHERE is_premium = 1 "
                    "AND premium_expires_at IS NOT NULL AND premium_expires_at <= ?",
                    (to_epoch_ms(datetime.now(UTC)),),
                )
                .fetchall()
            )
            for row in rows:
                logger.info(f"  would expire: {row['user_id']}")
            return len(rows)

        user_ids = await db.expire_lapsed_premium()
        for user_id in user_ids:
            logger.info(f"  expired: {user_id}")
        return len(user_ids)
    finally:
        db.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Clear premium for lapsed subscriptions")
    parser.add_argument(
        "--db-path",
        default="./data/mosaic.db",
        help="Path to SQLite database file (default: ./data/mosaic.db)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List affected users without changing the ledger",
    )

    args = parser.parse_args()

    try:
        count = asyncio.run(run_sweep(args.db_path, args.dry_run))
    except Exception as e:
        logger.error(f"Sweep failed: {e}", exc_info=True)
        sys.exit(1)

    verb = "would be" if args.dry_run else "were"
    logger.info(f"✓ {count} users {verb} downgraded")


if __name__ == "__main__":
    main()
