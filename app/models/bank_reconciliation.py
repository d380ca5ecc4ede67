"""
FundLedger - Bank Reconciliation Model

Models backing the bank reconciliation engine:
- Bank accounts and their last-reconciliation snapshot
- Uploaded bank statements and their transactions
- Import job records for statement transaction feeds
- Reconciliations, matched items and balancing adjustments
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, Numeric,
    String, Text, Enum as SQLEnum, JSON, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel, AuditMixin

if TYPE_CHECKING:
    from app.models.ledger import JournalEntryLine


# =============================================================================
# ENUMS
# =============================================================================

class StatementStatus(str, Enum):
    """Bank statement lifecycle."""
    UPLOADED = "uploaded"
    PROCESSED = "processed"
    RECONCILED = "reconciled"


class BankTransactionType(str, Enum):
    """Classification of a statement line."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    OTHER = "other"


class BankTransactionStatus(str, Enum):
    """Match state of a statement line."""
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    IGNORED = "ignored"


class ReconciliationStatus(str, Enum):
    """Reconciliation workflow status."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"


class MatchType(str, Enum):
    """How a reconciliation item was created."""
    AUTO = "auto"
    MANUAL = "manual"


class ReconciliationItemStatus(str, Enum):
    MATCHED = "matched"


class AdjustmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class ImportStatus(str, Enum):
    """Statement import job status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportSource(str, Enum):
    JSON = "json"
    CSV = "csv"


# ===========================================
# BANK ACCOUNT
# ===========================================

class BankAccount(BaseModel, AuditMixin):
    """
    Bank account tracked by the reconciliation engine.

    ``gl_account_id`` links the account to its cash account in the ledger;
    the last-reconciliation snapshot is written when a reconciliation
    completes.
    """

    __tablename__ = "bank_accounts"

    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    gl_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Linked ledger cash account",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Last reconciliation snapshot
    last_reconciliation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    last_reconciliation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    reconciled_balance: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=True,
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("bank_name", "account_number", name="uq_bank_account_number"),
    )

    def __repr__(self) -> str:
        return f"<BankAccount({self.bank_name} - {self.account_number})>"


# ===========================================
# BANK STATEMENT
# ===========================================

class BankStatement(BaseModel, AuditMixin):
    """Bank-issued statement for one account and period."""

    __tablename__ = "bank_statements"

    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    closing_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )

    status: Mapped[StatementStatus] = mapped_column(
        SQLEnum(StatementStatus),
        default=StatementStatus.UPLOADED,
        nullable=False,
    )

    # Source file reference (storage is handled elsewhere)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    import_method: Mapped[str] = mapped_column(String(50), default="manual", nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_bank_statements_account_date", "bank_account_id", "statement_date"),
    )

    def __repr__(self) -> str:
        return f"<BankStatement(id={self.id}, date={self.statement_date}, status={self.status})>"


# ===========================================
# BANK STATEMENT TRANSACTION
# ===========================================

class BankStatementTransaction(BaseModel):
    """
    One line of a bank statement.

    Amount is signed: positive is money in, negative is money out. Status is
    owned by the matcher: a line is MATCHED exactly while one reconciliation
    item references it.
    """

    __tablename__ = "bank_statement_transactions"

    statement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_statements.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    running_balance: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=True,
        comment="Balance after this line as declared by the bank",
    )
    transaction_type: Mapped[BankTransactionType] = mapped_column(
        SQLEnum(BankTransactionType),
        nullable=False,
    )
    check_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[BankTransactionStatus] = mapped_column(
        SQLEnum(BankTransactionStatus),
        default=BankTransactionStatus.UNMATCHED,
        nullable=False,
    )

    # Raw row as received by the importer
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_bank_txn_statement_status", "statement_id", "status"),
        Index("ix_bank_txn_date", "transaction_date"),
    )

    def __repr__(self) -> str:
        return f"<BankStatementTransaction({self.transaction_date}, {self.amount}, {self.status})>"


# ===========================================
# STATEMENT IMPORT JOB
# ===========================================

class StatementImport(BaseModel):
    """
    Persisted record of one transaction import run.

    Written before the import unit starts and finalized afterwards, so the
    outcome of every import survives restarts and can be looked up by id.
    """

    __tablename__ = "statement_imports"

    statement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_statements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[ImportSource] = mapped_column(
        SQLEnum(ImportSource),
        default=ImportSource.JSON,
        nullable=False,
    )
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[ImportStatus] = mapped_column(
        SQLEnum(ImportStatus),
        default=ImportStatus.PENDING,
        nullable=False,
    )
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    imported_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_errors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    imported_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<StatementImport(id={self.id}, status={self.status})>"


# ===========================================
# BANK RECONCILIATION
# ===========================================

class BankReconciliation(BaseModel, AuditMixin):
    """
    Reconciliation of one bank account for a period.

    ``difference`` is statement_balance - book_balance. It is stored, and
    only recomputed when both balances are updated together.
    """

    __tablename__ = "bank_reconciliations"

    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    bank_statement_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_statements.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    # Reconciliation Period
    reconciliation_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Prior and target bank balances
    start_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    end_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )

    book_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    statement_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    difference: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        default=Decimal("0.00"),
        nullable=False,
        comment="statement_balance - book_balance",
    )

    status: Mapped[ReconciliationStatus] = mapped_column(
        SQLEnum(ReconciliationStatus),
        default=ReconciliationStatus.IN_PROGRESS,
        nullable=False,
    )

    # Completion and approval
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_bank_reconciliations_account_status", "bank_account_id", "status"),
    )

    @property
    def is_balanced(self) -> bool:
        """Difference is within one cent of zero."""
        return abs(self.difference) < Decimal("0.01")

    def __repr__(self) -> str:
        return f"<BankReconciliation(id={self.id}, date={self.reconciliation_date}, status={self.status})>"


# ===========================================
# RECONCILIATION ITEM (MATCH)
# ===========================================

class ReconciliationItem(BaseModel):
    """
    Asserted correspondence between a bank line and a ledger line.

    A bank line and a ledger line can each be referenced by at most one item.
    Unmatching deletes the row.
    """

    __tablename__ = "reconciliation_items"

    reconciliation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    bank_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_statement_transactions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    ledger_line_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("journal_entry_lines.id", ondelete="RESTRICT"),
        nullable=True,
    )

    match_type: Mapped[MatchType] = mapped_column(
        SQLEnum(MatchType),
        nullable=False,
    )
    status: Mapped[ReconciliationItemStatus] = mapped_column(
        SQLEnum(ReconciliationItemStatus),
        default=ReconciliationItemStatus.MATCHED,
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
        comment="Absolute matched amount",
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    # Relationships (load explicitly with selectinload)
    bank_transaction: Mapped[Optional["BankStatementTransaction"]] = relationship(
        "BankStatementTransaction",
    )
    ledger_line: Mapped[Optional["JournalEntryLine"]] = relationship(
        "JournalEntryLine",
    )

    __table_args__ = (
        UniqueConstraint("bank_transaction_id", name="uq_reconciliation_items_bank_transaction"),
        UniqueConstraint("ledger_line_id", name="uq_reconciliation_items_ledger_line"),
        CheckConstraint(
            "bank_transaction_id IS NOT NULL OR ledger_line_id IS NOT NULL",
            name="has_side",
        ),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationItem(id={self.id}, type={self.match_type}, amount={self.amount})>"


# ===========================================
# RECONCILIATION ADJUSTMENT
# ===========================================

class ReconciliationAdjustment(BaseModel, AuditMixin):
    """
    Operator-entered balancing entry such as a bank fee, interest or a
    timing difference.
    """

    __tablename__ = "reconciliation_adjustments"

    reconciliation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    adjustment_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    adjustment_type: Mapped[str] = mapped_column(
        String(100), nullable=False,
        comment="Free-form classification, e.g. Bank Fee, Interest",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        nullable=False,
    )
    status: Mapped[AdjustmentStatus] = mapped_column(
        SQLEnum(AdjustmentStatus),
        default=AdjustmentStatus.PENDING,
        nullable=False,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ReconciliationAdjustment({self.adjustment_type}, {self.amount}, {self.status})>"
