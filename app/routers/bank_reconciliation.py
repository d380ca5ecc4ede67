"""
FundLedger - Bank Reconciliation API Router

API endpoints for bank reconciliation operations.
Supports:
- Bank accounts and statements
- Statement transaction import (JSON rows, CSV upload)
- Transaction matching (auto, manual, unmatch)
- Reconciliation workflow (in progress → completed → approved)
- Adjustment management
- Unmatched items and reporting
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import get_current_user_id
from app.models.bank_reconciliation import (
    BankTransactionStatus,
    BankTransactionType,
    ReconciliationStatus,
    StatementStatus,
)
from app.schemas.bank_reconciliation import (
    AutoMatchRequest,
    AutoMatchResult,
    BankAccountCreate,
    BankAccountResponse,
    BankReconciliationCreate,
    BankReconciliationDetailResponse,
    BankReconciliationResponse,
    BankReconciliationUpdate,
    BankStatementCreate,
    BankStatementResponse,
    BankStatementUpdate,
    BankTransactionResponse,
    BankTransactionUpdate,
    LedgerLineResponse,
    ManualMatchRequest,
    PaginatedResponse,
    ReconciliationAdjustmentCreate,
    ReconciliationAdjustmentResponse,
    ReconciliationAdjustmentUpdate,
    ReconciliationItemDetailResponse,
    ReconciliationItemResponse,
    ReconciliationReportResponse,
    ReconciliationSummary,
    StatementImportResponse,
    TransactionImportRequest,
    UnmatchedItemsResponse,
)
from app.services.adjustment_service import get_adjustment_service
from app.services.bank_account_service import get_bank_account_service
from app.services.bank_reconciliation_service import (
    ReconciliationDetail,
    get_bank_reconciliation_service,
)
from app.services.matching_engine import MatchingConfig, get_matching_engine
from app.services.reconciliation_report_service import get_reconciliation_report_service
from app.services.statement_service import get_statement_service
from app.services.transaction_import_service import get_transaction_import_service
from app.utils.query_filters import (
    DateWindow,
    Page,
    Pagination,
    ReconciliationFilter,
    StatementFilter,
    TransactionFilter,
)

router = APIRouter(prefix="/bank-reconciliation", tags=["Bank Reconciliation"])


def _paginated(page: Page, schema) -> dict:
    return {
        "items": [schema.model_validate(item) for item in page.items],
        "total": page.total,
        "page": page.page,
        "page_size": page.page_size,
        "pages": page.pages,
    }


def _detail_response(detail: ReconciliationDetail) -> BankReconciliationDetailResponse:
    base = BankReconciliationResponse.model_validate(detail.reconciliation)
    return BankReconciliationDetailResponse(
        **base.model_dump(),
        matched_items=[ReconciliationItemDetailResponse.model_validate(i) for i in detail.items],
        adjustments=[ReconciliationAdjustmentResponse.model_validate(a) for a in detail.adjustments],
    )


# =============================================================================
# BANK ACCOUNT ENDPOINTS
# =============================================================================

@router.get("/accounts", response_model=List[BankAccountResponse])
async def list_bank_accounts(
    is_active: Optional[bool] = Query(True, description="Filter by active status"),
    db: AsyncSession = Depends(get_db),
):
    """Get bank accounts."""
    service = get_bank_account_service(db)
    return await service.get_bank_accounts(is_active=is_active)


@router.post("/accounts", response_model=BankAccountResponse, status_code=status.HTTP_201_CREATED)
async def create_bank_account(
    account_data: BankAccountCreate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Register a bank account and link it to its ledger cash account."""
    service = get_bank_account_service(db)
    return await service.create_bank_account(
        bank_name=account_data.bank_name,
        account_name=account_data.account_name,
        account_number=account_data.account_number,
        gl_account_id=account_data.gl_account_id,
        currency=account_data.currency,
        notes=account_data.notes,
        created_by_id=user_id,
    )


@router.get("/accounts/{account_id}", response_model=BankAccountResponse)
async def get_bank_account(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get a bank account with its last reconciliation snapshot."""
    service = get_bank_account_service(db)
    return await service.require_bank_account(account_id)


# =============================================================================
# STATEMENT ENDPOINTS
# =============================================================================

@router.get("/statements", response_model=PaginatedResponse[BankStatementResponse])
async def list_statements(
    bank_account_id: Optional[uuid.UUID] = Query(None, description="Filter by bank account"),
    status_filter: Optional[StatementStatus] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: AsyncSession = Depends(get_db),
):
    """List statements, newest first."""
    service = get_statement_service(db)
    filters = StatementFilter(
        bank_account_id=bank_account_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
    )
    result = await service.list_statements(filters, Pagination(page=page, page_size=page_size))
    return _paginated(result, BankStatementResponse)


@router.post("/statements", response_model=BankStatementResponse, status_code=status.HTTP_201_CREATED)
async def create_statement(
    statement_data: BankStatementCreate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Record an uploaded bank statement."""
    service = get_statement_service(db)
    return await service.create_statement(
        **statement_data.model_dump(),
        created_by_id=user_id,
    )


@router.get("/statements/{statement_id}", response_model=BankStatementResponse)
async def get_statement(
    statement_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get a statement with its transaction count."""
    service = get_statement_service(db)
    statement = await service.require_statement(statement_id)
    response = BankStatementResponse.model_validate(statement)
    response.transaction_count = await service.count_transactions(statement_id)
    return response


@router.patch("/statements/{statement_id}", response_model=BankStatementResponse)
async def update_statement(
    statement_id: uuid.UUID,
    statement_data: BankStatementUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Partially update a statement."""
    service = get_statement_service(db)
    return await service.update_statement(
        statement_id,
        statement_data.model_dump(exclude_unset=True),
        updated_by_id=user_id,
    )


@router.delete("/statements/{statement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_statement(
    statement_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Delete a statement and its transactions."""
    service = get_statement_service(db)
    await service.delete_statement(statement_id)


# =============================================================================
# TRANSACTION ENDPOINTS
# =============================================================================

@router.get(
    "/statements/{statement_id}/transactions",
    response_model=PaginatedResponse[BankTransactionResponse],
)
async def list_statement_transactions(
    statement_id: uuid.UUID,
    status_filter: Optional[BankTransactionStatus] = Query(None, alias="status"),
    transaction_type: Optional[BankTransactionType] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.transaction_page_size, ge=1, le=settings.max_page_size),
    db: AsyncSession = Depends(get_db),
):
    """List the transactions of a statement."""
    service = get_statement_service(db)
    filters = TransactionFilter(
        statement_id=statement_id,
        status=status_filter,
        transaction_type=transaction_type,
    )
    result = await service.list_transactions(filters, Pagination(page=page, page_size=page_size))
    return _paginated(result, BankTransactionResponse)


@router.post(
    "/transactions/import",
    response_model=StatementImportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def import_transactions(
    import_data: TransactionImportRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """
    Import transaction rows into a statement.

    Valid rows are inserted; invalid rows are reported with their row
    number and the reason they were rejected.
    """
    service = get_transaction_import_service(db)
    record = await service.import_transactions(
        import_data.bank_statement_id,
        import_data.rows,
        imported_by_id=user_id,
    )
    return StatementImportResponse.from_record(record)


@router.post(
    "/statements/{statement_id}/import/csv",
    response_model=StatementImportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def import_csv_statement(
    statement_id: uuid.UUID,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """
    Import a CSV file into a statement.

    Expected columns: date, description, amount; optional reference,
    balance, type and check_number.
    """
    service = get_transaction_import_service(db)
    content = await file.read()
    record = await service.import_csv(
        statement_id,
        content,
        file_name=file.filename,
        imported_by_id=user_id,
    )
    return StatementImportResponse.from_record(record)


@router.get("/statements/{statement_id}/imports", response_model=List[StatementImportResponse])
async def list_statement_imports(
    statement_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """List import runs for a statement, newest first."""
    service = get_transaction_import_service(db)
    records = await service.list_imports(statement_id)
    return [StatementImportResponse.from_record(r) for r in records]


@router.get("/imports/{import_id}", response_model=StatementImportResponse)
async def get_import(
    import_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get one import run."""
    service = get_transaction_import_service(db)
    return StatementImportResponse.from_record(await service.get_import(import_id))


@router.patch("/transactions/{transaction_id}", response_model=BankTransactionResponse)
async def update_transaction(
    transaction_id: uuid.UUID,
    transaction_data: BankTransactionUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update descriptive fields or ignore/restore a transaction."""
    service = get_statement_service(db)
    return await service.update_transaction(
        transaction_id,
        transaction_data.model_dump(exclude_unset=True),
    )


# =============================================================================
# RECONCILIATION ENDPOINTS
# =============================================================================

@router.get("/reconciliations", response_model=PaginatedResponse[BankReconciliationResponse])
async def list_reconciliations(
    bank_account_id: Optional[uuid.UUID] = Query(None, description="Filter by bank account"),
    status_filter: Optional[ReconciliationStatus] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: AsyncSession = Depends(get_db),
):
    """Get reconciliations with optional filtering."""
    service = get_bank_reconciliation_service(db)
    filters = ReconciliationFilter(
        bank_account_id=bank_account_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
    )
    result = await service.list_reconciliations(filters, Pagination(page=page, page_size=page_size))
    return _paginated(result, BankReconciliationResponse)


@router.post(
    "/reconciliations",
    response_model=BankReconciliationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_reconciliation(
    recon_data: BankReconciliationCreate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Create a new bank reconciliation."""
    service = get_bank_reconciliation_service(db)
    return await service.create_reconciliation(
        **recon_data.model_dump(),
        created_by_id=user_id,
    )


@router.get("/reconciliations/{reconciliation_id}", response_model=BankReconciliationDetailResponse)
async def get_reconciliation(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get reconciliation with matched items and adjustments."""
    service = get_bank_reconciliation_service(db)
    return _detail_response(await service.get_reconciliation_detail(reconciliation_id))


@router.patch("/reconciliations/{reconciliation_id}", response_model=BankReconciliationResponse)
async def update_reconciliation(
    reconciliation_id: uuid.UUID,
    recon_data: BankReconciliationUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """
    Update balances, notes or status.

    Setting status to completed runs the same balance check as the
    complete endpoint.
    """
    service = get_bank_reconciliation_service(db)
    return await service.update_reconciliation(
        reconciliation_id,
        recon_data.model_dump(exclude_unset=True),
        user_id=user_id,
    )


@router.post("/reconciliations/{reconciliation_id}/complete", response_model=BankReconciliationResponse)
async def complete_reconciliation(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Complete a balanced reconciliation and mark its statement reconciled."""
    service = get_bank_reconciliation_service(db)
    return await service.complete_reconciliation(reconciliation_id, user_id=user_id)


@router.post("/reconciliations/{reconciliation_id}/approve", response_model=BankReconciliationResponse)
async def approve_reconciliation(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Approve a completed reconciliation."""
    service = get_bank_reconciliation_service(db)
    return await service.approve_reconciliation(reconciliation_id, user_id=user_id)


@router.get("/reconciliations/{reconciliation_id}/report", response_model=ReconciliationReportResponse)
async def get_reconciliation_report(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Full reconciliation report for audit and export."""
    service = get_reconciliation_report_service(db)
    report = await service.build_report(reconciliation_id)
    return ReconciliationReportResponse(
        reconciliation=BankReconciliationResponse.model_validate(report.reconciliation),
        bank_account=BankAccountResponse.model_validate(report.bank_account),
        statement=(
            BankStatementResponse.model_validate(report.statement)
            if report.statement is not None else None
        ),
        matched_items=[ReconciliationItemDetailResponse.model_validate(i) for i in report.items],
        adjustments=[ReconciliationAdjustmentResponse.model_validate(a) for a in report.adjustments],
        summary=ReconciliationSummary.model_validate(report.summary),
    )


# =============================================================================
# MATCHING ENDPOINTS
# =============================================================================

@router.post("/reconciliations/{reconciliation_id}/auto-match", response_model=AutoMatchResult)
async def auto_match_transactions(
    reconciliation_id: uuid.UUID,
    match_request: Optional[AutoMatchRequest] = None,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """
    Run automatic matching.

    A bank line is matched only when exactly one ledger line agrees on
    amount and date (and description, when enabled).
    """
    match_request = match_request or AutoMatchRequest()
    config = MatchingConfig.from_request(
        date_tolerance_days=match_request.date_tolerance_days,
        description_match=match_request.description_match,
    )
    engine = get_matching_engine(db)
    outcome = await engine.auto_match(reconciliation_id, config=config, user_id=user_id)
    return AutoMatchResult.model_validate(outcome)


@router.post("/matches", response_model=ReconciliationItemResponse, status_code=status.HTTP_201_CREATED)
async def manual_match_transactions(
    match_data: ManualMatchRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Manually match a bank transaction and/or a ledger line."""
    engine = get_matching_engine(db)
    return await engine.manual_match(
        match_data.reconciliation_id,
        bank_transaction_id=match_data.bank_transaction_id,
        ledger_line_id=match_data.ledger_line_id,
        notes=match_data.notes,
        user_id=user_id,
    )


@router.delete("/matches/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unmatch(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Remove a match and release its bank transaction."""
    engine = get_matching_engine(db)
    await engine.unmatch(item_id)


@router.get("/unmatched/{bank_account_id}", response_model=UnmatchedItemsResponse)
async def get_unmatched_items(
    bank_account_id: uuid.UUID,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Unmatched bank transactions and ledger lines for manual triage."""
    service = get_bank_reconciliation_service(db)
    items = await service.get_unmatched_items(
        bank_account_id,
        DateWindow(start_date=start_date, end_date=end_date),
    )
    return UnmatchedItemsResponse(
        bank_transactions=[BankTransactionResponse.model_validate(t) for t in items.bank_transactions],
        ledger_lines=[LedgerLineResponse.model_validate(line) for line in items.ledger_lines],
    )


# =============================================================================
# ADJUSTMENT ENDPOINTS
# =============================================================================

@router.get(
    "/reconciliations/{reconciliation_id}/adjustments",
    response_model=List[ReconciliationAdjustmentResponse],
)
async def get_reconciliation_adjustments(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get adjustments for a reconciliation."""
    service = get_adjustment_service(db)
    return await service.list_adjustments(reconciliation_id)


@router.post(
    "/reconciliations/{reconciliation_id}/adjustments",
    response_model=ReconciliationAdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_adjustment(
    reconciliation_id: uuid.UUID,
    adjustment_data: ReconciliationAdjustmentCreate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Add an adjustment to a reconciliation in progress."""
    service = get_adjustment_service(db)
    return await service.create_adjustment(
        reconciliation_id,
        **adjustment_data.model_dump(),
        created_by_id=user_id,
    )


@router.patch("/adjustments/{adjustment_id}", response_model=ReconciliationAdjustmentResponse)
async def update_adjustment(
    adjustment_id: uuid.UUID,
    adjustment_data: ReconciliationAdjustmentUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Update a pending adjustment."""
    service = get_adjustment_service(db)
    return await service.update_adjustment(
        adjustment_id,
        adjustment_data.model_dump(exclude_unset=True),
        user_id=user_id,
    )


@router.post("/adjustments/{adjustment_id}/approve", response_model=ReconciliationAdjustmentResponse)
async def approve_adjustment(
    adjustment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
):
    """Approve a pending adjustment."""
    service = get_adjustment_service(db)
    return await service.approve_adjustment(adjustment_id, user_id=user_id)


@router.delete("/adjustments/{adjustment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_adjustment(
    adjustment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Delete a pending adjustment."""
    service = get_adjustment_service(db)
    await service.delete_adjustment(adjustment_id)
