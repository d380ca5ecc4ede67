"""
FundLedger - Bank Statement Service

Statement store operations: statement CRUD, the two-phase statement delete,
and listing/editing of statement transactions.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import transactional
from app.models.bank_reconciliation import (
    BankReconciliation,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    ReconciliationItem,
    StatementImport,
    StatementStatus,
)
from app.services.bank_account_service import BankAccountService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    InvalidDateRangeException,
    InvalidStatusException,
    NotFoundException,
    StatementNotFoundException,
)
from app.utils.query_filters import (
    Page,
    Pagination,
    StatementFilter,
    TransactionFilter,
    paginate,
)

logger = logging.getLogger(__name__)


# Statuses an operator may set directly; RECONCILED belongs to completion
OPERATOR_STATEMENT_STATUSES = (StatementStatus.UPLOADED, StatementStatus.PROCESSED)
OPERATOR_TRANSACTION_STATUSES = (BankTransactionStatus.UNMATCHED, BankTransactionStatus.IGNORED)

STATEMENT_UPDATE_FIELDS = {
    "statement_date", "period_start", "period_end", "opening_balance",
    "closing_balance", "status", "file_name", "file_path", "import_method", "notes",
}
TRANSACTION_UPDATE_FIELDS = {
    "description", "reference", "check_number", "transaction_type", "status",
}


class StatementService:
    """Service for bank statements and their transactions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # STATEMENT OPERATIONS
    # ===========================================

    async def create_statement(
        self,
        bank_account_id: uuid.UUID,
        statement_date: date,
        period_start: date,
        period_end: date,
        opening_balance: Decimal,
        closing_balance: Decimal,
        file_name: Optional[str] = None,
        file_path: Optional[str] = None,
        import_method: str = "manual",
        notes: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> BankStatement:
        """Record an uploaded statement. Status starts as UPLOADED."""
        if period_start > period_end:
            raise InvalidDateRangeException(period_start, period_end)

        await BankAccountService(self.db).require_bank_account(bank_account_id)

        statement = BankStatement(
            bank_account_id=bank_account_id,
            statement_date=statement_date,
            period_start=period_start,
            period_end=period_end,
            opening_balance=opening_balance,
            closing_balance=closing_balance,
            status=StatementStatus.UPLOADED,
            file_name=file_name,
            file_path=file_path,
            import_method=import_method,
            notes=notes,
            created_by_id=created_by_id,
        )
        async with transactional(self.db):
            self.db.add(statement)

        logger.info(f"Created bank statement {statement.id} for account {bank_account_id}")
        return statement

    async def get_statement(self, statement_id: uuid.UUID) -> Optional[BankStatement]:
        result = await self.db.execute(
            select(BankStatement).where(BankStatement.id == statement_id)
        )
        return result.scalar_one_or_none()

    async def require_statement(
        self,
        statement_id: uuid.UUID,
        for_update: bool = False,
    ) -> BankStatement:
        """Load a statement or raise NotFound, optionally locking the row."""
        query = select(BankStatement).where(BankStatement.id == statement_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        statement = (await self.db.execute(query)).scalar_one_or_none()
        if statement is None:
            raise StatementNotFoundException(statement_id)
        return statement

    async def list_statements(
        self,
        filters: StatementFilter,
        pagination: Pagination,
    ) -> Page:
        query = filters.apply(select(BankStatement)).order_by(
            BankStatement.statement_date.desc(),
            BankStatement.id,
        )
        return await paginate(self.db, query, pagination)

    async def count_transactions(self, statement_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(BankStatementTransaction.id)).where(
                BankStatementTransaction.statement_id == statement_id
            )
        )
        return result.scalar_one()

    async def update_statement(
        self,
        statement_id: uuid.UUID,
        updates: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> BankStatement:
        """
        Partially update a statement.

        Reconciled statements are terminal. The status can only be moved
        between UPLOADED and PROCESSED here.
        """
        async with transactional(self.db):
            statement = await self.require_statement(statement_id, for_update=True)
            if statement.status == StatementStatus.RECONCILED:
                raise ConflictException(
                    "Cannot modify a reconciled statement",
                    resource_type="Bank statement",
                    code=ErrorCode.CANNOT_MODIFY,
                    details={"current_status": statement.status.value},
                )

            new_status = updates.get("status")
            if new_status is not None and new_status not in OPERATOR_STATEMENT_STATUSES:
                raise InvalidStatusException(
                    getattr(new_status, "value", new_status),
                    [s.value for s in OPERATOR_STATEMENT_STATUSES],
                )

            for key, value in updates.items():
                if key in STATEMENT_UPDATE_FIELDS and value is not None:
                    setattr(statement, key, value)

            if statement.period_start > statement.period_end:
                raise InvalidDateRangeException(statement.period_start, statement.period_end)

            statement.updated_by_id = updated_by_id

        return statement

    async def delete_statement(self, statement_id: uuid.UUID) -> None:
        """
        Delete a statement and its transactions.

        Phase one locks the statement and validates that nothing references
        it; phase two removes transactions, import records and the statement.
        Both phases run in one unit of work.
        """
        async with transactional(self.db):
            statement = await self.require_statement(statement_id, for_update=True)

            if statement.status == StatementStatus.RECONCILED:
                raise ConflictException(
                    "Cannot delete a reconciled statement",
                    resource_type="Bank statement",
                    code=ErrorCode.CANNOT_DELETE,
                    details={"current_status": statement.status.value},
                )

            reconciliation_count = (await self.db.execute(
                select(func.count(BankReconciliation.id)).where(
                    BankReconciliation.bank_statement_id == statement_id
                )
            )).scalar_one()
            if reconciliation_count:
                raise ConflictException(
                    "Cannot delete statement used in reconciliation",
                    resource_type="Bank statement",
                    code=ErrorCode.CANNOT_DELETE,
                    details={"reconciliation_count": reconciliation_count},
                )

            matched_count = (await self.db.execute(
                select(func.count(ReconciliationItem.id))
                .join(
                    BankStatementTransaction,
                    ReconciliationItem.bank_transaction_id == BankStatementTransaction.id,
                )
                .where(BankStatementTransaction.statement_id == statement_id)
            )).scalar_one()
            if matched_count:
                raise ConflictException(
                    "Cannot delete statement with matched transactions",
                    resource_type="Bank statement",
                    code=ErrorCode.CANNOT_DELETE,
                    details={"matched_items": matched_count},
                )

            await self.db.execute(
                delete(BankStatementTransaction).where(
                    BankStatementTransaction.statement_id == statement_id
                )
            )
            await self.db.execute(
                delete(StatementImport).where(StatementImport.statement_id == statement_id)
            )
            await self.db.delete(statement)

        logger.info(f"Deleted bank statement {statement_id}")

    # ===========================================
    # TRANSACTION OPERATIONS
    # ===========================================

    async def list_transactions(
        self,
        filters: TransactionFilter,
        pagination: Pagination,
    ) -> Page:
        await self.require_statement(filters.statement_id)
        query = filters.apply(select(BankStatementTransaction)).order_by(
            BankStatementTransaction.transaction_date,
            BankStatementTransaction.id,
        )
        return await paginate(self.db, query, pagination)

    async def get_transaction(
        self,
        transaction_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[BankStatementTransaction]:
        query = select(BankStatementTransaction).where(
            BankStatementTransaction.id == transaction_id
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return (await self.db.execute(query)).scalar_one_or_none()

    async def update_transaction(
        self,
        transaction_id: uuid.UUID,
        updates: Dict[str, Any],
    ) -> BankStatementTransaction:
        """
        Update descriptive fields or the ignore flag of one transaction.

        The MATCHED status is owned by matching, so matched lines are locked
        against edits and no caller may set MATCHED directly.
        """
        async with transactional(self.db):
            transaction = await self.get_transaction(transaction_id, for_update=True)
            if transaction is None:
                raise NotFoundException("Bank transaction", transaction_id)

            statement = await self.require_statement(transaction.statement_id)
            if statement.status == StatementStatus.RECONCILED:
                raise ConflictException(
                    "Cannot modify a transaction on a reconciled statement",
                    resource_type="Bank transaction",
                    code=ErrorCode.CANNOT_MODIFY,
                )
            if transaction.status == BankTransactionStatus.MATCHED:
                raise ConflictException(
                    "Cannot modify a matched transaction; unmatch it first",
                    resource_type="Bank transaction",
                    code=ErrorCode.CANNOT_MODIFY,
                    details={"current_status": transaction.status.value},
                )

            new_status = updates.get("status")
            if new_status is not None and new_status not in OPERATOR_TRANSACTION_STATUSES:
                raise InvalidStatusException(
                    getattr(new_status, "value", new_status),
                    [s.value for s in OPERATOR_TRANSACTION_STATUSES],
                )

            for key, value in updates.items():
                if key in TRANSACTION_UPDATE_FIELDS and value is not None:
                    setattr(transaction, key, value)

        return transaction


def get_statement_service(db: AsyncSession) -> StatementService:
    """Factory function for StatementService."""
    return StatementService(db)
