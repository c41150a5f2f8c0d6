#!/usr/bin/env python3
"""
Database Migration — Create the dispatcher tables (contacts, conversations,
messages, dispatch_events) from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./dispatch.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


_LIST_TABLES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text

    query = _LIST_TABLES.get(engine.dialect.name, _LIST_TABLES["sqlite"])
    async with engine.connect() as conn:
        result = await conn.execute(text(query))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, db_url: str = None) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine

    engine = get_engine(db_url)
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1]}")
    print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

    try:
        if check_only:
            existing = await _existing_tables(engine)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = set(Base.metadata.tables.keys()) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        tables = await _existing_tables(engine)
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete.")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Dispatcher database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, db_url=args.url)))


if __name__ == "__main__":
    main()
