"""Initialize the database schema for the candidate pipeline.

Creates the pgvector extension and all tables. Run this before starting the
API server or a worker. Pass ``--drop`` to recreate the schema from scratch.
"""

import argparse
import asyncio
import sys

from sqlalchemy import text

from talentpool.config import settings
from talentpool.db import engine
from talentpool.models import Base


async def init_database(drop: bool = False) -> None:
    """Create the vector extension (PostgreSQL only) and every table."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            print("pgvector extension ready")

        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("Created tables")

    await engine.dispose()
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    try:
        asyncio.run(init_database(drop=args.drop))
    except Exception as e:
        print(f"Database initialization failed: {e}", file=sys.stderr)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
