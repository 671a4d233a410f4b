#!/usr/bin/env python3
"""
Database initialization script for the user ledger.

Creates the SQLite database with users, processed_events,
appstore_notifications and audit_log tables.

Usage:
    python scripts/init_user_db.py [--db-path PATH] [--create-demo]

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mosaic.storage.database import UserDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = ("users", "processed_events", "appstore_notifications", "audit_log")


async def init_database(db_path: str) -> bool:
    """
    Initialize ledger database schema.

    Args:
        db_path: Path to SQLite database file

    Returns:
        bool: True if initialization succeeded
    """
    try:
        logger.info(f"Initializing ledger database at {db_path}")

        db = UserDatabase(db_path=db_path)
        await db.initialize()

        conn = db._get_connection()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }

        missing = set(EXPECTED_TABLES) - tables
        if missing:
            logger.error(f"Missing tables: {missing}")
            return False

        logger.info(f"✓ Found tables: {', '.join(sorted(tables))}")

        for table in EXPECTED_TABLES:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            logger.info(f"  {table}: {count} rows")

        db.close()
        logger.info("✓ Database initialization complete")
        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False


async def create_demo_user(db_path: str, starter_credits: int) -> bool:
    """
    Create a demo user for local webhook testing (optional).

    Args:
        db_path: Path to SQLite database file
        starter_credits: Listen credits granted at signup

    Returns:
        bool: True if creation succeeded
    """
    try:
        from mosaic.models.user import UserCreate

        db = UserDatabase(db_path=db_path)
        await db.initialize()

        user = await db.create_user(
            UserCreate(email="demo@example.com", name="Demo Parent", billing_app_user_id="demo-app-user"),
            starter_credits=starter_credits,
        )

        if user:
            logger.info(f"✓ Demo user created: {user.user_id} (app user id: demo-app-user)")
        else:
            logger.warning("Demo user already exists - skipping")

        db.close()
        return True

    except Exception as e:
        logger.error(f"Demo user creation failed: {e}", exc_info=True)
        return False


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Initialize user ledger database schema")
    parser.add_argument(
        "--db-path",
        default="./data/mosaic.db",
        help="Path to SQLite database file (default: ./data/mosaic.db)",
    )
    parser.add_argument(
        "--create-demo",
        action="store_true",
        help="Create a demo user for local webhook testing",
    )
    parser.add_argument(
        "--starter-credits",
        type=int,
        default=30,
        help="Listen credits for the demo user (default: 30)",
    )

    args = parser.parse_args()

    if not asyncio.run(init_database(args.db_path)):
        logger.error("❌ Database initialization failed")
        sys.exit(1)

    if args.create_demo and not asyncio.run(create_demo_user(args.db_path, args.starter_credits)):
        logger.error("❌ Demo user creation failed")
        sys.exit(1)

    logger.info("")
    logger.info("=== Database Ready ===")
    logger.info(f"Database path: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
