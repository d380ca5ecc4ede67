"""
FundLedger - Bank Reconciliation Service

Reconciliation controller. Owns the reconciliation lifecycle:
- Creation with initial book and statement balances
- Balance refinement and the stored difference
- The completion gate (difference within tolerance)
- Approval
- The unmatched-items query used for manual triage

Completion is the only path that marks a statement RECONCILED.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.database import transactional
from app.models.base import utcnow
from app.models.bank_reconciliation import (
    BankReconciliation,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    ReconciliationAdjustment,
    ReconciliationItem,
    ReconciliationStatus,
    StatementStatus,
)
from app.models.ledger import JournalEntryLine
from app.services.bank_account_service import BankAccountService
from app.services.ledger_reader import LedgerLine, LedgerLineReader
from app.services.statement_service import StatementService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    InvalidDateRangeException,
    InvalidStatusTransitionException,
    ReconciliationNotBalancedException,
    ReconciliationNotFoundException,
    ValidationException,
)
from app.utils.query_filters import DateWindow, Page, Pagination, ReconciliationFilter, paginate

logger = logging.getLogger(__name__)


# InProgress -> Completed -> Approved; Approved is terminal
RECONCILIATION_TRANSITIONS = {
    ReconciliationStatus.IN_PROGRESS: {ReconciliationStatus.COMPLETED},
    ReconciliationStatus.COMPLETED: {ReconciliationStatus.APPROVED},
    ReconciliationStatus.APPROVED: set(),
}

# Fields that are frozen once the reconciliation leaves IN_PROGRESS
BALANCE_FIELDS = (
    "reconciliation_date", "period_start", "period_end", "start_balance",
    "end_balance", "book_balance", "statement_balance",
)


@dataclass
class UnmatchedItems:
    """Open items on both sides for one bank account."""
    bank_transactions: List[BankStatementTransaction] = field(default_factory=list)
    ledger_lines: List[LedgerLine] = field(default_factory=list)


@dataclass
class ReconciliationDetail:
    reconciliation: BankReconciliation
    items: List[ReconciliationItem]
    adjustments: List[ReconciliationAdjustment]


class BankReconciliationService:
    """Service for reconciliation lifecycle operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.accounts = BankAccountService(db)
        self.statements = StatementService(db)
        self.ledger = LedgerLineReader(db)

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def get_reconciliation(self, reconciliation_id: uuid.UUID) -> Optional[BankReconciliation]:
        result = await self.db.execute(
            select(BankReconciliation).where(BankReconciliation.id == reconciliation_id)
        )
        return result.scalar_one_or_none()

    async def require_reconciliation(
        self,
        reconciliation_id: uuid.UUID,
        lock: Optional[str] = None,
    ) -> BankReconciliation:
        """
        Load a reconciliation or raise NotFound.

        ``lock`` is ``"share"`` for operations that only need the status to
        stay put (matching, adjustments) or ``"update"`` for status changes.
        """
        query = select(BankReconciliation).where(BankReconciliation.id == reconciliation_id)
        if lock == "share":
            query = query.with_for_update(read=True)
        elif lock == "update":
            query = query.with_for_update()
        if lock:
            query = query.execution_options(populate_existing=True)

        reconciliation = (await self.db.execute(query)).scalar_one_or_none()
        if reconciliation is None:
            raise ReconciliationNotFoundException(reconciliation_id)
        return reconciliation

    @staticmethod
    def ensure_in_progress(reconciliation: BankReconciliation, action: str) -> None:
        if reconciliation.status != ReconciliationStatus.IN_PROGRESS:
            raise ConflictException(
                f"Cannot {action}: reconciliation is {reconciliation.status.value}",
                resource_type="Reconciliation",
                code=ErrorCode.CANNOT_MODIFY,
                details={"current_status": reconciliation.status.value},
            )

    async def list_reconciliations(
        self,
        filters: ReconciliationFilter,
        pagination: Pagination,
    ) -> Page:
        query = filters.apply(select(BankReconciliation)).order_by(
            BankReconciliation.reconciliation_date.desc(),
            BankReconciliation.id,
        )
        return await paginate(self.db, query, pagination)

    async def get_items(self, reconciliation_id: uuid.UUID) -> List[ReconciliationItem]:
        """Matched items with their bank and ledger sides loaded."""
        result = await self.db.execute(
            select(ReconciliationItem)
            .where(ReconciliationItem.reconciliation_id == reconciliation_id)
            .options(
                selectinload(ReconciliationItem.bank_transaction),
                selectinload(ReconciliationItem.ledger_line).selectinload(JournalEntryLine.journal_entry),
            )
            .order_by(ReconciliationItem.created_at, ReconciliationItem.id)
        )
        return list(result.scalars().all())

    async def get_adjustments(self, reconciliation_id: uuid.UUID) -> List[ReconciliationAdjustment]:
        result = await self.db.execute(
            select(ReconciliationAdjustment)
            .where(ReconciliationAdjustment.reconciliation_id == reconciliation_id)
            .order_by(ReconciliationAdjustment.adjustment_date, ReconciliationAdjustment.created_at)
        )
        return list(result.scalars().all())

    async def get_reconciliation_detail(self, reconciliation_id: uuid.UUID) -> ReconciliationDetail:
        reconciliation = await self.require_reconciliation(reconciliation_id)
        return ReconciliationDetail(
            reconciliation=reconciliation,
            items=await self.get_items(reconciliation_id),
            adjustments=await self.get_adjustments(reconciliation_id),
        )

    # ===========================================
    # LIFECYCLE
    # ===========================================

    async def create_reconciliation(
        self,
        bank_account_id: uuid.UUID,
        reconciliation_date: date,
        start_balance: Decimal,
        end_balance: Decimal,
        book_balance: Decimal,
        statement_balance: Decimal,
        bank_statement_id: Optional[uuid.UUID] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        notes: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> BankReconciliation:
        """
        Open a reconciliation. The difference is computed once here as
        statement_balance - book_balance.
        """
        if period_start and period_end and period_start > period_end:
            raise InvalidDateRangeException(period_start, period_end)

        single_open = settings.single_open_reconciliation_per_account

        async with transactional(self.db):
            # Locking the account serializes concurrent creates for it
            await self.accounts.require_bank_account(bank_account_id, for_update=single_open)

            if single_open:
                open_id = (await self.db.execute(
                    select(BankReconciliation.id).where(
                        BankReconciliation.bank_account_id == bank_account_id,
                        BankReconciliation.status == ReconciliationStatus.IN_PROGRESS,
                    ).limit(1)
                )).scalar_one_or_none()
                if open_id is not None:
                    raise ConflictException(
                        "Bank account already has a reconciliation in progress",
                        resource_type="Reconciliation",
                        details={"open_reconciliation_id": str(open_id)},
                    )

            if bank_statement_id is not None:
                statement = await self.statements.require_statement(bank_statement_id, for_update=True)
                if statement.bank_account_id != bank_account_id:
                    raise ValidationException(
                        "Statement belongs to a different bank account",
                        field="bank_statement_id",
                    )
                if statement.status == StatementStatus.RECONCILED:
                    raise ConflictException(
                        "Statement is already reconciled",
                        resource_type="Bank statement",
                        details={"current_status": statement.status.value},
                    )
                period_start = period_start or statement.period_start
                period_end = period_end or statement.period_end

            reconciliation = BankReconciliation(
                bank_account_id=bank_account_id,
                bank_statement_id=bank_statement_id,
                reconciliation_date=reconciliation_date,
                period_start=period_start,
                period_end=period_end,
                start_balance=start_balance,
                end_balance=end_balance,
                book_balance=book_balance,
                statement_balance=statement_balance,
                difference=statement_balance - book_balance,
                status=ReconciliationStatus.IN_PROGRESS,
                notes=notes,
                created_by_id=created_by_id,
            )
            self.db.add(reconciliation)

        logger.info(
            f"Opened reconciliation {reconciliation.id} for account {bank_account_id} "
            f"with difference {reconciliation.difference}"
        )
        return reconciliation

    async def update_reconciliation(
        self,
        reconciliation_id: uuid.UUID,
        updates: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
    ) -> BankReconciliation:
        """
        Partially update a reconciliation.

        The difference is recomputed only when book_balance and
        statement_balance are both supplied. A status change follows the
        state machine; moving to COMPLETED runs the completion gate.
        """
        async with transactional(self.db):
            reconciliation = await self.require_reconciliation(reconciliation_id, lock="update")

            changing = [
                name for name in BALANCE_FIELDS
                if updates.get(name) is not None
            ]
            if changing and reconciliation.status != ReconciliationStatus.IN_PROGRESS:
                raise ConflictException(
                    f"Cannot change {', '.join(changing)} on a {reconciliation.status.value} reconciliation",
                    resource_type="Reconciliation",
                    code=ErrorCode.CANNOT_MODIFY,
                    details={"current_status": reconciliation.status.value},
                )

            for name in changing:
                setattr(reconciliation, name, updates[name])

            book_balance = updates.get("book_balance")
            statement_balance = updates.get("statement_balance")
            if book_balance is not None and statement_balance is not None:
                reconciliation.difference = statement_balance - book_balance

            if (
                reconciliation.period_start and reconciliation.period_end
                and reconciliation.period_start > reconciliation.period_end
            ):
                raise InvalidDateRangeException(reconciliation.period_start, reconciliation.period_end)

            if "notes" in updates and updates["notes"] is not None:
                reconciliation.notes = updates["notes"]

            reconciliation.updated_by_id = user_id

            target = updates.get("status")
            if target is not None and target != reconciliation.status:
                if target not in RECONCILIATION_TRANSITIONS[reconciliation.status]:
                    raise InvalidStatusTransitionException("Reconciliation", reconciliation.status, target)
                if target == ReconciliationStatus.COMPLETED:
                    await self._complete_locked(reconciliation, user_id)
                elif target == ReconciliationStatus.APPROVED:
                    self._approve_locked(reconciliation, user_id)

        return reconciliation

    async def complete_reconciliation(
        self,
        reconciliation_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> BankReconciliation:
        """
        Complete a balanced reconciliation.

        The reconciliation status, the bank account snapshot and the linked
        statement's status are committed together or not at all.
        """
        async with transactional(self.db):
            reconciliation = await self.require_reconciliation(reconciliation_id, lock="update")
            if reconciliation.status != ReconciliationStatus.IN_PROGRESS:
                raise InvalidStatusTransitionException(
                    "Reconciliation", reconciliation.status, ReconciliationStatus.COMPLETED,
                )
            await self._complete_locked(reconciliation, user_id)
        return reconciliation

    async def approve_reconciliation(
        self,
        reconciliation_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> BankReconciliation:
        async with transactional(self.db):
            reconciliation = await self.require_reconciliation(reconciliation_id, lock="update")
            if reconciliation.status != ReconciliationStatus.COMPLETED:
                raise InvalidStatusTransitionException(
                    "Reconciliation", reconciliation.status, ReconciliationStatus.APPROVED,
                )
            self._approve_locked(reconciliation, user_id)
        return reconciliation

    async def _complete_locked(
        self,
        reconciliation: BankReconciliation,
        user_id: Optional[uuid.UUID],
    ) -> None:
        tolerance = settings.reconciliation_tolerance
        if abs(reconciliation.difference) > tolerance:
            logger.warning(
                f"Reconciliation {reconciliation.id} not completed: "
                f"difference {reconciliation.difference} exceeds {tolerance}"
            )
            raise ReconciliationNotBalancedException(reconciliation.difference, tolerance)

        reconciliation.status = ReconciliationStatus.COMPLETED
        reconciliation.completed_at = utcnow()
        reconciliation.completed_by_id = user_id

        await self.accounts.record_reconciliation(
            reconciliation.bank_account_id,
            reconciliation.reconciliation_date,
            reconciliation.end_balance,
            reconciliation.id,
        )

        if reconciliation.bank_statement_id is not None:
            statement = await self.statements.require_statement(
                reconciliation.bank_statement_id, for_update=True,
            )
            statement.status = StatementStatus.RECONCILED

        await self.db.flush()
        logger.info(f"Completed reconciliation {reconciliation.id}")

    def _approve_locked(
        self,
        reconciliation: BankReconciliation,
        user_id: Optional[uuid.UUID],
    ) -> None:
        reconciliation.status = ReconciliationStatus.APPROVED
        reconciliation.approved_at = utcnow()
        reconciliation.approved_by_id = user_id
        logger.info(f"Approved reconciliation {reconciliation.id} by {user_id}")

    # ===========================================
    # UNMATCHED ITEMS
    # ===========================================

    async def get_unmatched_items(
        self,
        bank_account_id: uuid.UUID,
        window: DateWindow,
    ) -> UnmatchedItems:
        """Unmatched bank lines and unconsumed ledger lines for one account."""
        account = await self.accounts.require_bank_account(bank_account_id)

        result = await self.db.execute(
            select(BankStatementTransaction)
            .join(BankStatement, BankStatementTransaction.statement_id == BankStatement.id)
            .where(
                BankStatement.bank_account_id == bank_account_id,
                BankStatementTransaction.status == BankTransactionStatus.UNMATCHED,
                *window.conditions(BankStatementTransaction.transaction_date),
            )
            .order_by(BankStatementTransaction.transaction_date, BankStatementTransaction.id)
        )
        items = UnmatchedItems(bank_transactions=list(result.scalars().all()))

        if account.gl_account_id is not None:
            items.ledger_lines = await self.ledger.find_candidate_lines(
                account.gl_account_id, window.start_date, window.end_date,
            )
        return items

    async def count_unmatched_bank_transactions(self, statement_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(BankStatementTransaction.id)).where(
                BankStatementTransaction.statement_id == statement_id,
                BankStatementTransaction.status == BankTransactionStatus.UNMATCHED,
            )
        )
        return result.scalar_one()


def get_bank_reconciliation_service(db: AsyncSession) -> BankReconciliationService:
    """Factory function for BankReconciliationService."""
    return BankReconciliationService(db)
