"""
FundLedger - Query Filter Utilities

Typed filter and pagination parameter objects. Each filter maps its
optional fields to SQLAlchemy predicates one-to-one, so list queries are
always composed from bound expressions rather than assembled SQL text.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import date
from functools import wraps
from typing import Any, Callable, Generic, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from app.models.bank_reconciliation import (
    BankReconciliation,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    BankTransactionType,
    ReconciliationStatus,
    StatementStatus,
)
from app.utils.error_handling import InvalidDateRangeException

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =========================================================================
# QUERY TIMING DECORATOR
# =========================================================================

def log_query_time(func: Callable) -> Callable:
    """
    Decorator to log query execution time.
    Useful for identifying slow list queries.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.time()
        result = await func(*args, **kwargs)
        elapsed_time = (time.time() - start_time) * 1000  # Convert to ms

        if elapsed_time > 100:  # Log queries taking more than 100ms
            logger.warning(
                f"Slow query detected: {func.__name__} took {elapsed_time:.2f}ms"
            )
        else:
            logger.debug(f"Query {func.__name__} completed in {elapsed_time:.2f}ms")

        return result
    return wrapper


# =========================================================================
# PAGINATION
# =========================================================================

@dataclass
class Pagination:
    """Page request (1-indexed)."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def apply(self, query: Select) -> Select:
        return query.offset(self.offset).limit(self.page_size)


@dataclass
class Page(Generic[T]):
    """One page of results plus totals."""

    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


@log_query_time
async def paginate(db: AsyncSession, query: Select, pagination: Pagination) -> Page:
    """Run ``query`` for one page and count the full result set."""
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(count_query)).scalar_one()

    result = await db.execute(pagination.apply(query))
    return Page(
        items=list(result.scalars().all()),
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


# =========================================================================
# FILTER PARAMETER OBJECTS
# =========================================================================

def _check_range(start_date: Optional[date], end_date: Optional[date]) -> None:
    if start_date and end_date and start_date > end_date:
        raise InvalidDateRangeException(start_date, end_date)


@dataclass
class StatementFilter:
    """Filters for listing bank statements."""

    bank_account_id: Optional[uuid.UUID] = None
    status: Optional[StatementStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        _check_range(self.start_date, self.end_date)

    def conditions(self) -> List[Any]:
        conditions = []
        if self.bank_account_id is not None:
            conditions.append(BankStatement.bank_account_id == self.bank_account_id)
        if self.status is not None:
            conditions.append(BankStatement.status == self.status)
        if self.start_date is not None:
            conditions.append(BankStatement.statement_date >= self.start_date)
        if self.end_date is not None:
            conditions.append(BankStatement.statement_date <= self.end_date)
        return conditions

    def apply(self, query: Select) -> Select:
        return query.where(*self.conditions())


@dataclass
class TransactionFilter:
    """Filters for listing the transactions of one statement."""

    statement_id: uuid.UUID
    status: Optional[BankTransactionStatus] = None
    transaction_type: Optional[BankTransactionType] = None

    def conditions(self) -> List[Any]:
        conditions = [BankStatementTransaction.statement_id == self.statement_id]
        if self.status is not None:
            conditions.append(BankStatementTransaction.status == self.status)
        if self.transaction_type is not None:
            conditions.append(BankStatementTransaction.transaction_type == self.transaction_type)
        return conditions

    def apply(self, query: Select) -> Select:
        return query.where(*self.conditions())


@dataclass
class ReconciliationFilter:
    """Filters for listing reconciliations."""

    bank_account_id: Optional[uuid.UUID] = None
    status: Optional[ReconciliationStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        _check_range(self.start_date, self.end_date)

    def conditions(self) -> List[Any]:
        conditions = []
        if self.bank_account_id is not None:
            conditions.append(BankReconciliation.bank_account_id == self.bank_account_id)
        if self.status is not None:
            conditions.append(BankReconciliation.status == self.status)
        if self.start_date is not None:
            conditions.append(BankReconciliation.reconciliation_date >= self.start_date)
        if self.end_date is not None:
            conditions.append(BankReconciliation.reconciliation_date <= self.end_date)
        return conditions

    def apply(self, query: Select) -> Select:
        return query.where(*self.conditions())


@dataclass
class DateWindow:
    """Inclusive date window used by the unmatched-items query."""

    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        _check_range(self.start_date, self.end_date)

    def conditions(self, column) -> List[Any]:
        conditions = []
        if self.start_date is not None:
            conditions.append(column >= self.start_date)
        if self.end_date is not None:
            conditions.append(column <= self.end_date)
        return conditions
