"""
FundLedger - Reconciliation Report Service

Read-only assembly of a reconciliation report: matched items with both
sides, adjustments and summary counts for audit and export.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.bank_reconciliation import (
    AdjustmentStatus,
    BankAccount,
    BankReconciliation,
    BankStatement,
    ReconciliationAdjustment,
    ReconciliationItem,
)
from app.services.bank_reconciliation_service import BankReconciliationService

logger = logging.getLogger(__name__)


@dataclass
class ReportSummary:
    total_matched_items: int = 0
    matched_bank_transactions: int = 0
    matched_ledger_lines: int = 0
    matched_amount_total: Decimal = Decimal("0.00")
    total_adjustments: int = 0
    approved_adjustments: int = 0
    pending_adjustments: int = 0
    adjustments_amount_total: Decimal = Decimal("0.00")
    unmatched_bank_transactions: int = 0
    unmatched_ledger_lines: int = 0
    difference: Decimal = Decimal("0.00")
    is_balanced: bool = False


@dataclass
class ReconciliationReport:
    reconciliation: BankReconciliation
    bank_account: BankAccount
    statement: Optional[BankStatement]
    items: List[ReconciliationItem] = field(default_factory=list)
    adjustments: List[ReconciliationAdjustment] = field(default_factory=list)
    summary: ReportSummary = field(default_factory=ReportSummary)


class ReconciliationReportService:
    """Builds reconciliation reports. Never mutates."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.reconciliations = BankReconciliationService(db)

    async def build_report(self, reconciliation_id: uuid.UUID) -> ReconciliationReport:
        detail = await self.reconciliations.get_reconciliation_detail(reconciliation_id)
        reconciliation = detail.reconciliation

        account = await self.reconciliations.accounts.require_bank_account(reconciliation.bank_account_id)
        statement = None
        if reconciliation.bank_statement_id is not None:
            statement = await self.reconciliations.statements.get_statement(reconciliation.bank_statement_id)

        summary = ReportSummary(
            total_matched_items=len(detail.items),
            matched_bank_transactions=sum(1 for i in detail.items if i.bank_transaction_id),
            matched_ledger_lines=sum(1 for i in detail.items if i.ledger_line_id),
            matched_amount_total=sum((i.amount for i in detail.items), Decimal("0.00")),
            total_adjustments=len(detail.adjustments),
            approved_adjustments=sum(
                1 for a in detail.adjustments if a.status == AdjustmentStatus.APPROVED
            ),
            pending_adjustments=sum(
                1 for a in detail.adjustments if a.status == AdjustmentStatus.PENDING
            ),
            adjustments_amount_total=sum((a.amount for a in detail.adjustments), Decimal("0.00")),
            difference=reconciliation.difference,
            is_balanced=reconciliation.is_balanced,
        )

        if statement is not None:
            summary.unmatched_bank_transactions = (
                await self.reconciliations.count_unmatched_bank_transactions(statement.id)
            )

        if account.gl_account_id is not None:
            tolerance = timedelta(days=settings.auto_match_date_tolerance_days)
            start = reconciliation.period_start or reconciliation.reconciliation_date
            end = reconciliation.period_end or reconciliation.reconciliation_date
            summary.unmatched_ledger_lines = await self.reconciliations.ledger.count_candidate_lines(
                account.gl_account_id, start - tolerance, end + tolerance,
            )

        logger.debug(f"Built report for reconciliation {reconciliation_id}")
        return ReconciliationReport(
            reconciliation=reconciliation,
            bank_account=account,
            statement=statement,
            items=detail.items,
            adjustments=detail.adjustments,
            summary=summary,
        )


def get_reconciliation_report_service(db: AsyncSession) -> ReconciliationReportService:
    """Factory function for ReconciliationReportService."""
    return ReconciliationReportService(db)
