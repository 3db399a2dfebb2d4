"""
Shared fixtures for reconciliation tests.

Each test gets its own SQLite database file (aiosqlite) with the
reconciliation tables created from the ORM metadata.
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from config import Settings
from database.connection import Base
from database.reconciliation_models import BankTransactionDB, DocumentDB, LedgerEntryDB


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    """SQLite serializes writers, so batches run with a single worker."""
    return Settings(
        ENVIRONMENT="test",
        RECON_MAX_WORKERS=1,
        RECON_BATCH_LIMIT=100,
        NOTIFICATION_SERVICE_URL="",
    )


@pytest.fixture
def tenant_id():
    return str(uuid.uuid4())


class Seeder:
    """Inserts source records for one tenant, each in its own committed session."""

    def __init__(self, session_factory, tenant_id: str):
        self.session_factory = session_factory
        self.tenant_id = tenant_id

    async def _add(self, row):
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def transaction(
        self,
        amount: str,
        on_date: date,
        description: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> str:
        return await self._add(BankTransactionDB(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            account_id=account_id,
            date=on_date,
            amount=Decimal(amount),
            description=description,
            reconciled=False,
        ))

    async def document(
        self,
        amount: str,
        on_date: date,
        vendor: Optional[str] = None,
        description: Optional[str] = None,
        confidence: Optional[float] = 0.95,
        status: str = "extracted",
    ) -> str:
        return await self._add(DocumentDB(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            status=status,
            total_amount=Decimal(amount),
            document_date=on_date,
            vendor=vendor,
            description=description,
            confidence_score=confidence,
            reconciled=False,
        ))

    async def ledger_entry(self, amount: str, on_date: date, description: Optional[str] = None) -> str:
        return await self._add(LedgerEntryDB(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            amount=Decimal(amount),
            transaction_date=on_date,
            description=description,
            reconciled=False,
        ))

    async def get(self, model, row_id: str):
        async with self.session_factory() as session:
            return await session.get(model, row_id)


@pytest.fixture
def seed(session_factory, tenant_id):
    return Seeder(session_factory, tenant_id)
