#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Another config (e.g. the production database):
    python scripts/migrate_db.py --config /etc/fanout/settings.yaml

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text


async def _existing_tables(conn, dialect: str) -> list[str]:
    # Database-specific table listing
    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(config_path: str = None, check_only: bool = False) -> bool:
    from config.settings import load_settings
    from database.session import create_engine_for, create_tables
    from database.models import Base

    settings = load_settings(config_path)
    engine = create_engine_for(settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    try:
        if check_only:
            print(f"Database: {dialect}")
            print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
            print(f"Tables defined: {', '.join(sorted(defined))}")

            async with engine.connect() as conn:
                existing = await _existing_tables(conn, dialect)
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return False
            print("All tables exist. ✓")
            return True

        print("Running database migration...")
        await create_tables(engine)

        # Verify
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")
        print("Migration complete. ✓")
        return True
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    ok = asyncio.run(run_migration(args.config, check_only=args.check))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
