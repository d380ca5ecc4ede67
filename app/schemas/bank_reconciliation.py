"""
FundLedger - Bank Reconciliation Schemas

Pydantic schemas for bank reconciliation API requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, model_validator

from app.models.bank_reconciliation import (
    AdjustmentStatus,
    BankTransactionStatus,
    BankTransactionType,
    ImportSource,
    ImportStatus,
    MatchType,
    ReconciliationItemStatus,
    ReconciliationStatus,
    StatementStatus,
)

T = TypeVar("T")


def _check_period(start: Optional[date], end: Optional[date], label: str = "period") -> None:
    if start and end and start > end:
        raise ValueError(f"{label}_start must not be after {label}_end")


# ===========================================
# BANK ACCOUNT SCHEMAS
# ===========================================

class BankAccountCreate(BaseModel):
    """Schema for registering a bank account."""
    bank_name: str = Field(..., min_length=1, max_length=100)
    account_name: str = Field(..., min_length=1, max_length=200)
    account_number: str = Field(..., min_length=1, max_length=50)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    gl_account_id: Optional[UUID] = Field(None, description="Linked ledger cash account")
    notes: Optional[str] = None


class BankAccountResponse(BaseModel):
    """Bank account with its last reconciliation snapshot."""
    id: UUID
    bank_name: str
    account_name: str
    account_number: str
    currency: str
    gl_account_id: Optional[UUID] = None
    is_active: bool
    last_reconciliation_id: Optional[UUID] = None
    last_reconciliation_date: Optional[date] = None
    reconciled_balance: Optional[Decimal] = None

    class Config:
        from_attributes = True


# ===========================================
# STATEMENT SCHEMAS
# ===========================================

class BankStatementCreate(BaseModel):
    """Schema for recording an uploaded statement."""
    bank_account_id: UUID
    statement_date: date
    period_start: date
    period_end: date
    opening_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    closing_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    file_name: Optional[str] = Field(None, max_length=255)
    file_path: Optional[str] = Field(None, max_length=500)
    import_method: str = Field(default="manual", max_length=50)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_period(self):
        _check_period(self.period_start, self.period_end)
        return self


class BankStatementUpdate(BaseModel):
    """Partial statement update."""
    statement_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    opening_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    closing_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    status: Optional[StatementStatus] = None
    file_name: Optional[str] = Field(None, max_length=255)
    file_path: Optional[str] = Field(None, max_length=500)
    import_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None


class BankStatementResponse(BaseModel):
    id: UUID
    bank_account_id: UUID
    statement_date: date
    period_start: date
    period_end: date
    opening_balance: Decimal
    closing_balance: Decimal
    status: StatementStatus
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    import_method: str
    notes: Optional[str] = None
    created_by_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    transaction_count: Optional[int] = None

    class Config:
        from_attributes = True


# ===========================================
# TRANSACTION SCHEMAS
# ===========================================

class BankTransactionResponse(BaseModel):
    id: UUID
    statement_id: UUID
    transaction_date: date
    description: str
    reference: Optional[str] = None
    amount: Decimal
    running_balance: Optional[Decimal] = None
    transaction_type: BankTransactionType
    check_number: Optional[str] = None
    status: BankTransactionStatus

    class Config:
        from_attributes = True


class BankTransactionUpdate(BaseModel):
    """Descriptive fields and the ignore flag; MATCHED is set by matching only."""
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    reference: Optional[str] = Field(None, max_length=100)
    check_number: Optional[str] = Field(None, max_length=50)
    transaction_type: Optional[BankTransactionType] = None
    status: Optional[BankTransactionStatus] = None


class TransactionImportRequest(BaseModel):
    """
    Raw rows for one statement. Each row carries date, description and
    amount, optionally reference, balance, type and check_number. Rows are
    validated individually by the importer.
    """
    bank_statement_id: UUID
    rows: List[Dict[str, Any]]


class ImportRowError(BaseModel):
    row: int
    error: str
    data: Dict[str, Any] = Field(default_factory=dict)


class StatementImportResponse(BaseModel):
    """Import job record and outcome."""
    import_id: UUID
    statement_id: UUID
    source: ImportSource
    file_name: Optional[str] = None
    status: ImportStatus
    total_rows: int
    inserted: int
    error_count: int
    errors: List[ImportRowError] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "StatementImportResponse":
        return cls(
            import_id=record.id,
            statement_id=record.statement_id,
            source=record.source,
            file_name=record.file_name,
            status=record.status,
            total_rows=record.total_rows,
            inserted=record.imported_count,
            error_count=record.error_count,
            errors=record.row_errors or [],
            error_message=record.error_message,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


# ===========================================
# LEDGER SCHEMAS
# ===========================================

class LedgerLineResponse(BaseModel):
    """Read-only view of a journal line."""
    id: UUID
    journal_entry_id: UUID
    account_id: UUID
    entry_date: date
    reference: Optional[str] = None
    # Entry description stands in when the line has none
    description: Optional[str] = Field(
        None, validation_alias=AliasChoices("display_description", "description"),
    )
    debit_amount: Decimal
    credit_amount: Decimal

    class Config:
        from_attributes = True


# ===========================================
# RECONCILIATION SCHEMAS
# ===========================================

class BankReconciliationCreate(BaseModel):
    """Schema for opening a reconciliation."""
    bank_account_id: UUID
    bank_statement_id: Optional[UUID] = None
    reconciliation_date: date
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    start_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    end_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    book_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    statement_balance: Decimal = Field(..., max_digits=18, decimal_places=2)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_period(self):
        _check_period(self.period_start, self.period_end)
        return self


class BankReconciliationUpdate(BaseModel):
    """
    Partial reconciliation update. The difference is recomputed only when
    book_balance and statement_balance are sent together.
    """
    reconciliation_date: Optional[date] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    start_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    end_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    book_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    statement_balance: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    status: Optional[ReconciliationStatus] = None
    notes: Optional[str] = None


class BankReconciliationResponse(BaseModel):
    id: UUID
    bank_account_id: UUID
    bank_statement_id: Optional[UUID] = None
    reconciliation_date: date
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    start_balance: Decimal
    end_balance: Decimal
    book_balance: Decimal
    statement_balance: Decimal
    difference: Decimal
    is_balanced: bool
    status: ReconciliationStatus
    notes: Optional[str] = None
    created_by_id: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    completed_by_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    approved_by_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReconciliationItemResponse(BaseModel):
    id: UUID
    reconciliation_id: UUID
    bank_transaction_id: Optional[UUID] = None
    ledger_line_id: Optional[UUID] = None
    match_type: MatchType
    status: ReconciliationItemStatus
    amount: Decimal
    notes: Optional[str] = None
    created_by_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ReconciliationItemDetailResponse(ReconciliationItemResponse):
    """Matched item with bank-side and ledger-side details."""
    bank_transaction: Optional[BankTransactionResponse] = None
    ledger_line: Optional[LedgerLineResponse] = None


# ===========================================
# ADJUSTMENT SCHEMAS
# ===========================================

class ReconciliationAdjustmentCreate(BaseModel):
    adjustment_date: date
    description: str = Field(..., min_length=1, max_length=500)
    adjustment_type: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., max_digits=18, decimal_places=2)
    status: AdjustmentStatus = AdjustmentStatus.PENDING
    notes: Optional[str] = None


class ReconciliationAdjustmentUpdate(BaseModel):
    adjustment_date: Optional[date] = None
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    adjustment_type: Optional[str] = Field(None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(None, max_digits=18, decimal_places=2)
    status: Optional[AdjustmentStatus] = None
    notes: Optional[str] = None


class ReconciliationAdjustmentResponse(BaseModel):
    id: UUID
    reconciliation_id: UUID
    adjustment_date: date
    description: str
    adjustment_type: str
    amount: Decimal
    status: AdjustmentStatus
    notes: Optional[str] = None
    created_by_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    approved_by_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BankReconciliationDetailResponse(BankReconciliationResponse):
    """Reconciliation with matched items and adjustments."""
    matched_items: List[ReconciliationItemDetailResponse] = []
    adjustments: List[ReconciliationAdjustmentResponse] = []


# ===========================================
# MATCHING SCHEMAS
# ===========================================

class AutoMatchRequest(BaseModel):
    """Options for one auto-match pass."""
    date_tolerance_days: Optional[int] = Field(None, ge=0, le=31)
    description_match: bool = Field(default=False)


class MatchedPairResponse(BaseModel):
    item_id: UUID
    bank_transaction_id: UUID
    ledger_line_id: UUID
    amount: Decimal

    class Config:
        from_attributes = True


class AutoMatchResult(BaseModel):
    """Result of an auto-match pass."""
    reconciliation_id: UUID
    matches_created: int
    examined: int
    ambiguous: int
    no_candidate: int
    matches: List[MatchedPairResponse]

    class Config:
        from_attributes = True


class ManualMatchRequest(BaseModel):
    """Either side may be omitted, but not both."""
    reconciliation_id: UUID
    bank_transaction_id: Optional[UUID] = None
    ledger_line_id: Optional[UUID] = None
    notes: Optional[str] = None


class UnmatchedItemsResponse(BaseModel):
    bank_transactions: List[BankTransactionResponse]
    ledger_lines: List[LedgerLineResponse]

    class Config:
        from_attributes = True


# ===========================================
# REPORT SCHEMAS
# ===========================================

class ReconciliationSummary(BaseModel):
    total_matched_items: int
    matched_bank_transactions: int
    matched_ledger_lines: int
    matched_amount_total: Decimal
    total_adjustments: int
    approved_adjustments: int
    pending_adjustments: int
    adjustments_amount_total: Decimal
    unmatched_bank_transactions: int
    unmatched_ledger_lines: int
    difference: Decimal
    is_balanced: bool

    class Config:
        from_attributes = True


class ReconciliationReportResponse(BaseModel):
    """Full reconciliation report for audit and export."""
    reconciliation: BankReconciliationResponse
    bank_account: BankAccountResponse
    statement: Optional[BankStatementResponse] = None
    matched_items: List[ReconciliationItemDetailResponse]
    adjustments: List[ReconciliationAdjustmentResponse]
    summary: ReconciliationSummary


# ===========================================
# PAGINATION
# ===========================================

class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response."""
    items: List[T]
    total: int
    page: int
    page_size: int
    pages: int
