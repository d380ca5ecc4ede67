"""
FundLedger - Transaction Import Service

Imports a tabular transaction feed into a bank statement.

Each row is validated on its own: bad rows are reported back with their row
number while every valid row is inserted in a single unit of work. Every
run is tracked by a persisted StatementImport record so its outcome can be
looked up later by id.
"""

import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import transactional
from app.models.base import utcnow
from app.models.bank_reconciliation import (
    BankStatementTransaction,
    BankTransactionType,
    ImportSource,
    ImportStatus,
    StatementImport,
    StatementStatus,
)
from app.services.statement_service import StatementService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
# Numeric(18, 2) leaves 16 digits before the decimal point
MAX_INTEGER_DIGITS = 16
REQUIRED_FIELDS = ("date", "description", "amount")


@dataclass
class RowError:
    """A rejected input row."""
    row: int
    error: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "error": self.error, "data": self.data}


@dataclass
class ParsedRow:
    transaction_date: date
    description: str
    amount: Decimal
    transaction_type: BankTransactionType
    reference: Optional[str] = None
    running_balance: Optional[Decimal] = None
    check_number: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


# ===========================================
# ROW PARSING
# ===========================================

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _json_safe(row: Mapping[str, Any]) -> Dict[str, Any]:
    safe = {}
    for key, value in row.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            safe[str(key)] = value
        else:
            safe[str(key)] = str(value)
    return safe


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a money value to two places.

    Returns None when the value is not a finite number or does not fit a
    Numeric(18, 2) column.
    """
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
        if not amount.is_finite():
            return None
        amount = amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    if amount.adjusted() >= MAX_INTEGER_DIGITS:
        return None
    return amount


def parse_date(value: Any) -> Optional[date]:
    """Accept date objects or ISO ``YYYY-MM-DD`` strings."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def classify(amount: Decimal, type_hint: Optional[BankTransactionType] = None) -> BankTransactionType:
    """Explicit hint wins; otherwise the sign of the amount decides."""
    if type_hint is not None:
        return type_hint
    if amount > 0:
        return BankTransactionType.DEPOSIT
    if amount < 0:
        return BankTransactionType.WITHDRAWAL
    return BankTransactionType.OTHER


def parse_row(row_number: int, row: Mapping[str, Any]) -> Union[ParsedRow, RowError]:
    """Validate one raw row. Returns a ParsedRow or the RowError explaining the rejection."""
    normalized = {
        str(key).strip().lower(): value
        for key, value in row.items()
        if key is not None
    }
    raw = _json_safe(row)

    if any(_is_blank(normalized.get(name)) for name in REQUIRED_FIELDS):
        return RowError(row_number, "Row missing required fields", raw)

    amount = parse_amount(normalized["amount"])
    if amount is None:
        return RowError(row_number, "Invalid amount in row", raw)

    transaction_date = parse_date(normalized["date"])
    if transaction_date is None:
        return RowError(row_number, "Invalid date in row", raw)

    running_balance = None
    if not _is_blank(normalized.get("balance")):
        running_balance = parse_amount(normalized["balance"])
        if running_balance is None:
            return RowError(row_number, "Invalid balance in row", raw)

    type_hint = None
    if not _is_blank(normalized.get("type")):
        try:
            type_hint = BankTransactionType(str(normalized["type"]).strip().lower())
        except ValueError:
            return RowError(row_number, "Invalid transaction type in row", raw)

    reference = normalized.get("reference")
    check_number = normalized.get("check_number")

    return ParsedRow(
        transaction_date=transaction_date,
        description=str(normalized["description"]).strip()[:500],
        amount=amount,
        transaction_type=classify(amount, type_hint),
        reference=None if _is_blank(reference) else str(reference).strip()[:100],
        running_balance=running_balance,
        check_number=None if _is_blank(check_number) else str(check_number).strip()[:50],
        raw_data=raw,
    )


def read_csv_rows(content: bytes) -> List[Dict[str, Any]]:
    """Read a UTF-8 CSV with a header row into row mappings."""
    try:
        content_str = content.decode("utf-8-sig")  # Handle BOM
    except UnicodeDecodeError as e:
        raise ValidationException("CSV file must be UTF-8 encoded", field="file") from e
    reader = csv.DictReader(io.StringIO(content_str))
    return [dict(row) for row in reader]


# ===========================================
# IMPORT SERVICE
# ===========================================

class TransactionImportService:
    """Service for importing statement transactions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.statements = StatementService(db)

    async def import_transactions(
        self,
        statement_id: uuid.UUID,
        rows: Iterable[Mapping[str, Any]],
        source: ImportSource = ImportSource.JSON,
        file_name: Optional[str] = None,
        imported_by_id: Optional[uuid.UUID] = None,
    ) -> StatementImport:
        """
        Import rows into a statement.

        Valid rows are inserted together with the statement status change
        and the final import record in one unit. If parsing or that unit
        fails nothing from it is kept and the import record is marked FAILED.
        """
        rows = list(rows)
        statement = await self.statements.require_statement(statement_id)
        self._ensure_open(statement)

        import_record = StatementImport(
            statement_id=statement_id,
            source=source,
            file_name=file_name,
            status=ImportStatus.PENDING,
            total_rows=len(rows),
            imported_by_id=imported_by_id,
        )
        async with transactional(self.db):
            self.db.add(import_record)
        import_id = import_record.id

        parsed: List[ParsedRow] = []
        errors: List[RowError] = []
        try:
            await self._mark_processing(import_record)

            for index, row in enumerate(rows, start=1):
                result = parse_row(index, row)
                if isinstance(result, RowError):
                    errors.append(result)
                else:
                    parsed.append(result)

            async with transactional(self.db):
                statement = await self.statements.require_statement(statement_id, for_update=True)
                self._ensure_open(statement)

                self.db.add_all([
                    BankStatementTransaction(
                        statement_id=statement_id,
                        transaction_date=item.transaction_date,
                        description=item.description,
                        reference=item.reference,
                        amount=item.amount,
                        running_balance=item.running_balance,
                        transaction_type=item.transaction_type,
                        check_number=item.check_number,
                        raw_data=item.raw_data,
                    )
                    for item in parsed
                ])

                if parsed and statement.status == StatementStatus.UPLOADED:
                    statement.status = StatementStatus.PROCESSED

                import_record.status = ImportStatus.COMPLETED
                import_record.imported_count = len(parsed)
                import_record.error_count = len(errors)
                import_record.row_errors = [e.to_dict() for e in errors]
                import_record.completed_at = utcnow()
        except Exception as e:
            await self._mark_failed(import_id, e)
            raise

        logger.info(
            f"Imported {len(parsed)} of {len(rows)} rows into statement {statement_id} "
            f"({len(errors)} rejected, import {import_id})"
        )
        return import_record

    async def import_csv(
        self,
        statement_id: uuid.UUID,
        content: bytes,
        file_name: Optional[str] = None,
        imported_by_id: Optional[uuid.UUID] = None,
    ) -> StatementImport:
        """Import a CSV upload with date, description and amount columns."""
        rows = read_csv_rows(content)
        return await self.import_transactions(
            statement_id,
            rows,
            source=ImportSource.CSV,
            file_name=file_name,
            imported_by_id=imported_by_id,
        )

    async def get_import(self, import_id: uuid.UUID) -> StatementImport:
        result = await self.db.execute(
            select(StatementImport).where(StatementImport.id == import_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundException("Statement import", import_id)
        return record

    async def list_imports(self, statement_id: uuid.UUID) -> List[StatementImport]:
        await self.statements.require_statement(statement_id)
        result = await self.db.execute(
            select(StatementImport)
            .where(StatementImport.statement_id == statement_id)
            .order_by(StatementImport.created_at.desc())
        )
        return list(result.scalars().all())

    def _ensure_open(self, statement) -> None:
        if statement.status == StatementStatus.RECONCILED:
            raise ConflictException(
                "Cannot import transactions into a reconciled statement",
                resource_type="Bank statement",
                code=ErrorCode.CANNOT_MODIFY,
                details={"current_status": statement.status.value},
            )

    async def _mark_processing(self, import_record: StatementImport) -> None:
        async with transactional(self.db):
            import_record.status = ImportStatus.PROCESSING
            import_record.started_at = utcnow()

    async def _mark_failed(self, import_id: uuid.UUID, error: Exception) -> None:
        async with transactional(self.db):
            record = await self.db.get(StatementImport, import_id, populate_existing=True)
            if record is None:
                return
            record.status = ImportStatus.FAILED
            record.error_message = getattr(error, "message", None) or str(error)
            record.completed_at = utcnow()
        logger.warning(f"Import {import_id} failed: {error}")


def get_transaction_import_service(db: AsyncSession) -> TransactionImportService:
    """Factory function for TransactionImportService."""
    return TransactionImportService(db)
