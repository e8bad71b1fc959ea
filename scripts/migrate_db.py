#!/usr/bin/env python3
"""
Database Migration — Create pipeline tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, change nothing

Uses database.url from settings (RECOPILOT_CONFIG) unless --url is given.
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


_LIST_TABLES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text

    async with engine.connect() as conn:
        result = await conn.execute(text(_LIST_TABLES.get(engine.dialect.name, _LIST_TABLES["sqlite"])))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, url: str = None) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, configure_engine

    engine = configure_engine(url)
    defined = set(Base.metadata.tables.keys())

    print(f"Database: {engine.dialect.name}")
    print(f"URL: {str(engine.url).split('@')[-1]}")

    try:
        if check_only:
            existing = set(await _existing_tables(engine))
            missing = sorted(defined - existing)
            print(f"Tables defined: {', '.join(sorted(defined))}")
            print(f"Tables existing: {', '.join(sorted(existing & defined)) or '(none)'}")
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        created = sorted(defined & set(await _existing_tables(engine)))
        print(f"Tables created/verified: {', '.join(created)}")
        print("Migration complete.")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Create RecoPilot database tables")
    parser.add_argument("--check", action="store_true", help="Report missing tables without changing anything")
    parser.add_argument("--url", default=None, help="Database URL (overrides settings)")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
