"""
FundLedger - Services Package

Business logic services.
"""

from app.services.bank_account_service import BankAccountService
from app.services.statement_service import StatementService
from app.services.transaction_import_service import TransactionImportService
from app.services.ledger_reader import LedgerLineReader
from app.services.bank_reconciliation_service import BankReconciliationService
from app.services.matching_engine import MatchingEngine
from app.services.adjustment_service import AdjustmentService
from app.services.reconciliation_report_service import ReconciliationReportService

__all__ = [
    "BankAccountService",
    "StatementService",
    "TransactionImportService",
    "LedgerLineReader",
    "BankReconciliationService",
    "MatchingEngine",
    "AdjustmentService",
    "ReconciliationReportService",
]
