"""
FundLedger - Transaction Matching Engine

Pairs bank statement lines with ledger lines for a reconciliation.

Auto-match is deliberately conservative: a bank line is matched only when
exactly one ledger line satisfies every active criterion. Zero or several
candidates leave the line unmatched for an operator. Manual match and
unmatch are operator-directed and each runs as one unit of work.

Locking: the reconciliation row is share-locked so it cannot be completed
mid-operation, and every bank line is row-locked before it is evaluated
and re-checked under the lock before an item is written.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import transactional
from app.models.bank_reconciliation import (
    BankReconciliation,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    MatchType,
    ReconciliationItem,
    ReconciliationItemStatus,
)
from app.services.bank_account_service import BankAccountService
from app.services.bank_reconciliation_service import BankReconciliationService
from app.services.ledger_reader import LedgerLine, LedgerLineReader
from app.utils.error_handling import (
    AlreadyMatchedException,
    ConflictException,
    ErrorCode,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)


@dataclass
class MatchingConfig:
    """Configuration for one auto-match pass."""

    date_tolerance_days: int = 3
    description_match: bool = False
    amount_tolerance: Decimal = Decimal("0.01")

    @classmethod
    def from_request(
        cls,
        date_tolerance_days: Optional[int] = None,
        description_match: bool = False,
    ) -> "MatchingConfig":
        tolerance = (
            settings.auto_match_date_tolerance_days
            if date_tolerance_days is None else date_tolerance_days
        )
        if tolerance < 0 or tolerance > settings.auto_match_max_tolerance_days:
            raise ValidationException(
                f"date_tolerance_days must be between 0 and {settings.auto_match_max_tolerance_days}",
                field="date_tolerance_days",
            )
        return cls(
            date_tolerance_days=tolerance,
            description_match=description_match,
            amount_tolerance=settings.amount_match_tolerance,
        )


@dataclass
class MatchedPair:
    """One match created by an auto-match pass."""

    item_id: UUID
    bank_transaction_id: UUID
    ledger_line_id: UUID
    amount: Decimal


@dataclass
class AutoMatchOutcome:
    """Result of an auto-match pass."""

    reconciliation_id: UUID
    matches: List[MatchedPair] = field(default_factory=list)
    examined: int = 0
    ambiguous: int = 0
    no_candidate: int = 0

    @property
    def matches_created(self) -> int:
        return len(self.matches)


def descriptions_overlap(bank_description: Optional[str], ledger_description: Optional[str]) -> bool:
    """Case-insensitive containment in either direction. Empty text never overlaps."""
    bank_text = (bank_description or "").strip().lower()
    ledger_text = (ledger_description or "").strip().lower()
    if not bank_text or not ledger_text:
        return False
    return bank_text in ledger_text or ledger_text in bank_text


def is_candidate(
    transaction: BankStatementTransaction,
    line: LedgerLine,
    config: MatchingConfig,
) -> bool:
    """
    A ledger line is a candidate for a bank line when the matching side
    agrees on amount, the dates are within tolerance and, if enabled, the
    descriptions overlap.
    """
    bank_amount = abs(transaction.amount)
    # Money in is booked as a debit to cash, money out as a credit
    ledger_amount = line.debit_amount if transaction.amount > 0 else line.credit_amount
    if ledger_amount <= 0 or abs(ledger_amount - bank_amount) > config.amount_tolerance:
        return False

    if abs((transaction.transaction_date - line.entry_date).days) > config.date_tolerance_days:
        return False

    if config.description_match and not descriptions_overlap(transaction.description, line.description):
        return False

    return True


class MatchingEngine:
    """
    Matching engine for bank reconciliation.

    Supports:
    1. Auto-match: exactly-one-candidate rule on amount, date and optional description
    2. Manual match: operator pairs a bank line and/or a ledger line
    3. Unmatch: removes an item and releases its bank line
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.reconciliations = BankReconciliationService(db)
        self.accounts = BankAccountService(db)
        self.ledger = LedgerLineReader(db)

    # ===========================================
    # AUTO MATCH
    # ===========================================

    async def auto_match(
        self,
        reconciliation_id: UUID,
        config: Optional[MatchingConfig] = None,
        user_id: Optional[UUID] = None,
    ) -> AutoMatchOutcome:
        """
        Run one auto-match pass over the reconciliation's statement.

        All matches of the pass are committed together; any failure rolls
        back the whole pass.
        """
        config = config or MatchingConfig.from_request()
        outcome = AutoMatchOutcome(reconciliation_id=reconciliation_id)

        async with transactional(self.db):
            reconciliation = await self.reconciliations.require_reconciliation(
                reconciliation_id, lock="share",
            )
            self.reconciliations.ensure_in_progress(reconciliation, "auto-match")

            if reconciliation.bank_statement_id is None:
                logger.info(f"Reconciliation {reconciliation_id} has no statement; nothing to auto-match")
                return outcome

            account = await self.accounts.require_bank_account(reconciliation.bank_account_id)

            transactions = await self._lock_unmatched_transactions(reconciliation.bank_statement_id)
            outcome.examined = len(transactions)
            if not transactions or account.gl_account_id is None:
                return outcome

            date_from, date_to = self._candidate_window(reconciliation, transactions, config)
            lines = await self.ledger.find_candidate_lines(account.gl_account_id, date_from, date_to)

            claimed: Set[UUID] = set()
            created: List[Tuple[ReconciliationItem, LedgerLine]] = []

            for transaction in transactions:
                if transaction.amount == 0:
                    outcome.no_candidate += 1
                    continue

                candidates = [
                    line for line in lines
                    if line.id not in claimed and is_candidate(transaction, line, config)
                ]
                if len(candidates) > 1:
                    outcome.ambiguous += 1
                    continue
                if not candidates:
                    outcome.no_candidate += 1
                    continue

                # Re-check under the row lock right before writing
                current = await self._lock_transaction(transaction.id)
                if current is None or current.status != BankTransactionStatus.UNMATCHED:
                    continue

                line = candidates[0]
                item = ReconciliationItem(
                    reconciliation_id=reconciliation_id,
                    bank_transaction_id=current.id,
                    ledger_line_id=line.id,
                    match_type=MatchType.AUTO,
                    status=ReconciliationItemStatus.MATCHED,
                    amount=abs(current.amount),
                    created_by_id=user_id,
                )
                self.db.add(item)
                current.status = BankTransactionStatus.MATCHED
                claimed.add(line.id)
                created.append((item, line))

            await self.db.flush()
            outcome.matches = [
                MatchedPair(
                    item_id=item.id,
                    bank_transaction_id=item.bank_transaction_id,
                    ledger_line_id=line.id,
                    amount=item.amount,
                )
                for item, line in created
            ]

        logger.info(
            f"Auto-match on reconciliation {reconciliation_id}: "
            f"{outcome.matches_created} matched, {outcome.ambiguous} ambiguous, "
            f"{outcome.no_candidate} without candidate"
        )
        return outcome

    def _candidate_window(
        self,
        reconciliation: BankReconciliation,
        transactions: List[BankStatementTransaction],
        config: MatchingConfig,
    ) -> Tuple[date, date]:
        """Reconciliation period widened to cover every open bank line, plus tolerance."""
        dates = [t.transaction_date for t in transactions]
        start = min([reconciliation.period_start or reconciliation.reconciliation_date] + dates)
        end = max([reconciliation.period_end or reconciliation.reconciliation_date] + dates)
        tolerance = timedelta(days=config.date_tolerance_days)
        return start - tolerance, end + tolerance

    async def _lock_unmatched_transactions(self, statement_id: UUID) -> List[BankStatementTransaction]:
        result = await self.db.execute(
            select(BankStatementTransaction)
            .where(
                BankStatementTransaction.statement_id == statement_id,
                BankStatementTransaction.status == BankTransactionStatus.UNMATCHED,
            )
            .order_by(BankStatementTransaction.transaction_date, BankStatementTransaction.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _lock_transaction(self, transaction_id: UUID) -> Optional[BankStatementTransaction]:
        result = await self.db.execute(
            select(BankStatementTransaction)
            .where(BankStatementTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ===========================================
    # MANUAL MATCH
    # ===========================================

    async def manual_match(
        self,
        reconciliation_id: UUID,
        bank_transaction_id: Optional[UUID] = None,
        ledger_line_id: Optional[UUID] = None,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> ReconciliationItem:
        """
        Record an operator-directed match.

        The amount comes from the bank line when given, otherwise from the
        nonzero side of the ledger line.
        """
        if bank_transaction_id is None and ledger_line_id is None:
            raise ValidationException(
                "Either bank_transaction_id or ledger_line_id is required",
                field="bank_transaction_id",
            )

        async with transactional(self.db):
            reconciliation = await self.reconciliations.require_reconciliation(
                reconciliation_id, lock="share",
            )
            self.reconciliations.ensure_in_progress(reconciliation, "match")
            account = await self.accounts.require_bank_account(reconciliation.bank_account_id)

            transaction = None
            amount: Optional[Decimal] = None

            if bank_transaction_id is not None:
                transaction = await self._lock_transaction(bank_transaction_id)
                if transaction is None:
                    raise NotFoundException("Bank transaction", bank_transaction_id)

                statement_account_id = (await self.db.execute(
                    select(BankStatement.bank_account_id).where(
                        BankStatement.id == transaction.statement_id
                    )
                )).scalar_one()
                if statement_account_id != reconciliation.bank_account_id:
                    raise ValidationException(
                        "Bank transaction belongs to a different bank account",
                        field="bank_transaction_id",
                    )
                if transaction.status == BankTransactionStatus.MATCHED:
                    raise AlreadyMatchedException("Bank transaction", bank_transaction_id)
                if transaction.status == BankTransactionStatus.IGNORED:
                    raise ConflictException(
                        "Cannot match an ignored bank transaction",
                        resource_type="Bank transaction",
                        code=ErrorCode.CANNOT_MODIFY,
                        details={"current_status": transaction.status.value},
                    )
                amount = abs(transaction.amount)

            if ledger_line_id is not None:
                line = await self.ledger.get_line(ledger_line_id)
                if line is None:
                    raise NotFoundException("Ledger line", ledger_line_id)
                if account.gl_account_id is not None and line.account_id != account.gl_account_id:
                    raise ValidationException(
                        "Ledger line is not on the bank account's ledger account",
                        field="ledger_line_id",
                    )
                if await self.ledger.is_consumed(ledger_line_id):
                    raise AlreadyMatchedException("Ledger line", ledger_line_id)
                if amount is None:
                    amount = line.amount

            item = ReconciliationItem(
                reconciliation_id=reconciliation_id,
                bank_transaction_id=bank_transaction_id,
                ledger_line_id=ledger_line_id,
                match_type=MatchType.MANUAL,
                status=ReconciliationItemStatus.MATCHED,
                amount=amount,
                notes=notes,
                created_by_id=user_id,
            )
            self.db.add(item)
            if transaction is not None:
                transaction.status = BankTransactionStatus.MATCHED
            await self.db.flush()

        logger.info(
            f"Manual match {item.id} on reconciliation {reconciliation_id}: "
            f"bank={bank_transaction_id} ledger={ledger_line_id} amount={amount}"
        )
        return item

    # ===========================================
    # UNMATCH
    # ===========================================

    async def unmatch(self, item_id: UUID) -> None:
        """
        Delete a reconciliation item and release its bank line.

        Locks are taken in the same order as matching: reconciliation, then
        bank line, then the item itself.
        """
        async with transactional(self.db):
            located = (await self.db.execute(
                select(
                    ReconciliationItem.reconciliation_id,
                    ReconciliationItem.bank_transaction_id,
                ).where(ReconciliationItem.id == item_id)
            )).one_or_none()
            if located is None:
                raise NotFoundException("Reconciliation item", item_id)
            reconciliation_id, bank_transaction_id = located

            reconciliation = await self.reconciliations.require_reconciliation(
                reconciliation_id, lock="share",
            )
            self.reconciliations.ensure_in_progress(reconciliation, "unmatch")

            transaction = None
            if bank_transaction_id is not None:
                transaction = await self._lock_transaction(bank_transaction_id)

            item = (await self.db.execute(
                select(ReconciliationItem)
                .where(ReconciliationItem.id == item_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if item is None:
                raise NotFoundException("Reconciliation item", item_id)

            if transaction is not None:
                transaction.status = BankTransactionStatus.UNMATCHED
            await self.db.delete(item)

        logger.info(f"Unmatched item {item_id} on reconciliation {reconciliation_id}")


def get_matching_engine(db: AsyncSession) -> MatchingEngine:
    """Factory function for MatchingEngine."""
    return MatchingEngine(db)
