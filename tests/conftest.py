"""
FundLedger - Test Configuration

Pytest fixtures and configuration.
"""

import os

# Point the application at SQLite before any app module builds its engine
os.environ["DATABASE_URL_ASYNC"] = "sqlite+aiosqlite://"
os.environ["APP_ENV"] = "testing"

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_async_session
from app.models.bank_reconciliation import (
    BankAccount,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    StatementStatus,
)
from app.models.ledger import JournalEntry, JournalEntryLine, JournalEntryStatus
from app.services.bank_reconciliation_service import BankReconciliationService
from app.services.transaction_import_service import classify
from main import app


# In-memory database shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def gl_account_id():
    """Ledger cash account the test bank account is linked to."""
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest_asyncio.fixture
async def bank_account(db_session: AsyncSession, gl_account_id) -> BankAccount:
    """Create a test bank account."""
    account = BankAccount(
        id=uuid4(),
        bank_name="First Fund Bank",
        account_name="Operating Account",
        account_number="0012345678",
        currency="USD",
        gl_account_id=gl_account_id,
    )
    db_session.add(account)
    await db_session.commit()
    return account


@pytest_asyncio.fixture
async def other_bank_account(db_session: AsyncSession) -> BankAccount:
    """A second bank account on a different ledger account."""
    account = BankAccount(
        id=uuid4(),
        bank_name="Second Fund Bank",
        account_name="Payroll Account",
        account_number="0098765432",
        currency="USD",
        gl_account_id=uuid4(),
    )
    db_session.add(account)
    await db_session.commit()
    return account


@pytest_asyncio.fixture
async def statement(db_session: AsyncSession, bank_account: BankAccount) -> BankStatement:
    """Create an uploaded March 2024 statement."""
    stmt = BankStatement(
        id=uuid4(),
        bank_account_id=bank_account.id,
        statement_date=date(2024, 3, 31),
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
        opening_balance=Decimal("1000.00"),
        closing_balance=Decimal("1150.00"),
        status=StatementStatus.UPLOADED,
    )
    db_session.add(stmt)
    await db_session.commit()
    return stmt


@pytest.fixture
def make_bank_transaction(db_session: AsyncSession):
    """Factory for statement transactions."""

    async def _make(
        statement_id,
        transaction_date: date,
        amount: str,
        description: str = "Bank transaction",
        status: BankTransactionStatus = BankTransactionStatus.UNMATCHED,
    ) -> BankStatementTransaction:
        value = Decimal(amount)
        transaction = BankStatementTransaction(
            id=uuid4(),
            statement_id=statement_id,
            transaction_date=transaction_date,
            description=description,
            amount=value,
            transaction_type=classify(value),
            status=status,
        )
        db_session.add(transaction)
        await db_session.commit()
        return transaction

    return _make


@pytest.fixture
def make_ledger_line(db_session: AsyncSession, gl_account_id):
    """Factory for journal lines, each in its own journal entry."""

    async def _make(
        entry_date: date,
        debit: str = "0.00",
        credit: str = "0.00",
        description: str = None,
        entry_description: str = "Journal entry",
        account_id=None,
        status: JournalEntryStatus = JournalEntryStatus.POSTED,
    ) -> JournalEntryLine:
        entry = JournalEntry(
            id=uuid4(),
            entry_date=entry_date,
            description=entry_description,
            status=status,
        )
        line = JournalEntryLine(
            id=uuid4(),
            journal_entry_id=entry.id,
            account_id=account_id or gl_account_id,
            description=description,
            debit_amount=Decimal(debit),
            credit_amount=Decimal(credit),
        )
        db_session.add_all([entry, line])
        await db_session.commit()
        return line

    return _make


@pytest.fixture
def make_reconciliation(db_session: AsyncSession, bank_account: BankAccount):
    """Factory for reconciliations on the test bank account."""
    default_account_id = bank_account.id

    async def _make(
        statement_id=None,
        book_balance: str = "1150.00",
        statement_balance: str = "1150.00",
        bank_account_id=None,
        **kwargs,
    ):
        service = BankReconciliationService(db_session)
        return await service.create_reconciliation(
            bank_account_id=bank_account_id or default_account_id,
            bank_statement_id=statement_id,
            reconciliation_date=kwargs.pop("reconciliation_date", date(2024, 3, 31)),
            start_balance=Decimal(kwargs.pop("start_balance", "1000.00")),
            end_balance=Decimal(kwargs.pop("end_balance", "1150.00")),
            book_balance=Decimal(book_balance),
            statement_balance=Decimal(statement_balance),
            **kwargs,
        )

    return _make
