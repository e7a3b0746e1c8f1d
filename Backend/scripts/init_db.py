#!/usr/bin/env python3
"""
Create the scheduling schema and, optionally, the demo data.

Safe to run multiple times (idempotent).

Usage:
    export DATABASE_URL="postgresql+asyncpg://localhost:5432/slotkeeper"
    python3 Backend/scripts/init_db.py [--seed]
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add Backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.db import AsyncSessionLocal, Base, engine
from app.seed import seed_initial_data


async def init_db(seed: bool) -> None:
    print(f"🔧 Initializing database at {engine.url.render_as_string(hide_password=True)}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("✅ Schema ready:")
        for table in Base.metadata.sorted_tables:
            print(f"   - {table.name}")

        if seed:
            async with AsyncSessionLocal() as session:
                await seed_initial_data(session)
            print("🌱 Demo businesses and services seeded")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--seed", action="store_true", help="also create demo businesses")
    args = parser.parse_args()
    asyncio.run(init_db(args.seed))
