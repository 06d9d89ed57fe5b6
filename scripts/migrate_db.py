#!/usr/bin/env python3
"""
Database Migration — Create tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report status only (no changes)
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn) -> list[str]:
    from sqlalchemy import text

    if conn.dialect.name == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    from database.models import Base
    from database.session import create_engine_for, init_db
    from utils.log_setup import configure_logging

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    engine = create_engine_for(settings.database.url)

    try:
        if check_only:
            print(f"Database: {engine.dialect.name}")
            print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")
            async with engine.connect() as conn:
                existing = await _existing_tables(conn)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = sorted(set(Base.metadata.tables.keys()) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        await init_db(engine)
        async with engine.connect() as conn:
            tables = await _existing_tables(conn)
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete.")
        return 0
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
