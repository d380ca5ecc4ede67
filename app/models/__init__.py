"""
FundLedger - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin, AuditMixin
from app.models.ledger import JournalEntry, JournalEntryLine, JournalEntryStatus
from app.models.bank_reconciliation import (
    AdjustmentStatus,
    BankAccount,
    BankReconciliation,
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    BankTransactionType,
    ImportSource,
    ImportStatus,
    MatchType,
    ReconciliationAdjustment,
    ReconciliationItem,
    ReconciliationItemStatus,
    ReconciliationStatus,
    StatementImport,
    StatementStatus,
)

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    # Ledger (read-only)
    "JournalEntry",
    "JournalEntryLine",
    "JournalEntryStatus",
    # Bank Reconciliation
    "AdjustmentStatus",
    "BankAccount",
    "BankReconciliation",
    "BankStatement",
    "BankStatementTransaction",
    "BankTransactionStatus",
    "BankTransactionType",
    "ImportSource",
    "ImportStatus",
    "MatchType",
    "ReconciliationAdjustment",
    "ReconciliationItem",
    "ReconciliationItemStatus",
    "ReconciliationStatus",
    "StatementImport",
    "StatementStatus",
]
