"""
FundLedger - Ledger Line Reader

Read-only view over posted journal lines. Used by matching to find
candidate lines on a bank account's ledger cash account. Nothing here
writes to or locks ledger tables.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.bank_reconciliation import ReconciliationItem
from app.models.ledger import JournalEntry, JournalEntryLine, JournalEntryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerLine:
    """Snapshot of one journal line with its entry date and description."""

    id: uuid.UUID
    journal_entry_id: uuid.UUID
    account_id: uuid.UUID
    entry_date: date
    reference: Optional[str]
    description: Optional[str]
    debit_amount: Decimal
    credit_amount: Decimal

    @property
    def amount(self) -> Decimal:
        """The nonzero side of the line."""
        return self.debit_amount if self.debit_amount > 0 else self.credit_amount


def _consumed():
    return exists().where(ReconciliationItem.ledger_line_id == JournalEntryLine.id)


class LedgerLineReader:
    """Read-only queries against the general ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _base_query(self):
        return (
            select(
                JournalEntryLine.id,
                JournalEntryLine.journal_entry_id,
                JournalEntryLine.account_id,
                JournalEntry.entry_date,
                JournalEntry.reference,
                func.coalesce(JournalEntryLine.description, JournalEntry.description).label("description"),
                JournalEntryLine.debit_amount,
                JournalEntryLine.credit_amount,
            )
            .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        )

    def _candidate_query(
        self,
        account_id: uuid.UUID,
        date_from: Optional[date],
        date_to: Optional[date],
    ):
        query = self._base_query().where(
            JournalEntryLine.account_id == account_id,
            JournalEntry.status == JournalEntryStatus.POSTED,
            ~_consumed(),
        )
        if date_from is not None:
            query = query.where(JournalEntry.entry_date >= date_from)
        if date_to is not None:
            query = query.where(JournalEntry.entry_date <= date_to)
        return query

    @staticmethod
    def _to_line(row) -> LedgerLine:
        return LedgerLine(
            id=row.id,
            journal_entry_id=row.journal_entry_id,
            account_id=row.account_id,
            entry_date=row.entry_date,
            reference=row.reference,
            description=row.description,
            debit_amount=row.debit_amount or Decimal("0.00"),
            credit_amount=row.credit_amount or Decimal("0.00"),
        )

    async def find_candidate_lines(
        self,
        account_id: uuid.UUID,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[LedgerLine]:
        """
        Posted lines on ``account_id`` dated within the inclusive window that
        no reconciliation item references yet.
        """
        query = self._candidate_query(account_id, date_from, date_to).order_by(
            JournalEntry.entry_date, JournalEntryLine.id,
        )
        result = await self.db.execute(query)
        lines = [self._to_line(row) for row in result.all()]
        logger.debug(
            f"Found {len(lines)} candidate ledger lines on account {account_id} "
            f"between {date_from} and {date_to}"
        )
        return lines

    async def count_candidate_lines(
        self,
        account_id: uuid.UUID,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> int:
        subquery = self._candidate_query(account_id, date_from, date_to).subquery()
        result = await self.db.execute(select(func.count()).select_from(subquery))
        return result.scalar_one()

    async def get_line(self, line_id: uuid.UUID) -> Optional[LedgerLine]:
        result = await self.db.execute(
            self._base_query().where(JournalEntryLine.id == line_id)
        )
        row = result.one_or_none()
        return self._to_line(row) if row is not None else None

    async def is_consumed(self, line_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(exists().where(ReconciliationItem.ledger_line_id == line_id))
        )
        return bool(result.scalar())


def get_ledger_line_reader(db: AsyncSession) -> LedgerLineReader:
    """Factory function for LedgerLineReader."""
    return LedgerLineReader(db)
