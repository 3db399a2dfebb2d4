"""
Database Migration: Create Reconciliation Tables

Creates the bank transaction, document, ledger entry, match, exception,
event and threshold tables with their indexes. Existing tables are left
untouched.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

from database.connection import Base, get_engine
import database.reconciliation_models  # noqa: F401  registers tables on Base.metadata


async def create_tables():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    engine = get_engine()
    async with engine.begin() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        await conn.run_sync(Base.metadata.create_all)

    for name in Base.metadata.tables:
        if name in existing:
            print(f"  ✓ {name} (already exists)")
        else:
            print(f"  ✓ {name} created")

    await engine.dispose()
    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
