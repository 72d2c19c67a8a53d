#!/usr/bin/env python3
"""
Create (or check) the pipeline tables on the configured database.

    python scripts/migrate_db.py                         # settings.yaml / $PIPELINE_CONFIG
    python scripts/migrate_db.py --config prod.yaml
    python scripts/migrate_db.py --url postgresql://u:p@db/pipeline
    python scripts/migrate_db.py --check                 # exit 1 if tables are missing

Only additive: existing tables are left untouched.
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect  # noqa: E402

from config.settings import load_settings  # noqa: E402
from database.models import Base  # noqa: E402
from database.session import create_session_factory, create_tables  # noqa: E402


async def _present_tables(engine) -> set[str]:
    async with engine.connect() as conn:
        return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))


async def migrate(db_url: str, check_only: bool = False) -> int:
    factory = create_session_factory(db_url)
    engine = factory.kw["bind"]
    wanted = set(Base.metadata.tables)
    print(f"{engine.dialect.name}: {engine.url.render_as_string(hide_password=True)}")

    try:
        missing = wanted - await _present_tables(engine)
        if check_only:
            if missing:
                print(f"missing: {', '.join(sorted(missing))}")
                return 1
            print(f"ok: all {len(wanted)} pipeline tables present")
            return 0

        await create_tables(factory)
        still_missing = wanted - await _present_tables(engine)
        if still_missing:
            print(f"failed to create: {', '.join(sorted(still_missing))}")
            return 1
        print(f"created {len(missing)} table(s); {len(wanted)} present")
        return 0
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Conversation pipeline schema migration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--url", default=None, help="Database URL (overrides settings)")
    parser.add_argument("--check", action="store_true", help="Report missing tables only")
    args = parser.parse_args()

    db_url = args.url or load_settings(args.config).database.url
    sys.exit(asyncio.run(migrate(db_url, check_only=args.check)))


if __name__ == "__main__":
    main()
