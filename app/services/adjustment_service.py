"""
FundLedger - Reconciliation Adjustment Service

Operator-entered balancing entries (bank fees, interest, timing
differences) attached to an open reconciliation.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import transactional
from app.models.base import utcnow
from app.models.bank_reconciliation import AdjustmentStatus, ReconciliationAdjustment
from app.services.bank_reconciliation_service import BankReconciliationService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    InvalidStatusTransitionException,
    NotFoundException,
)

logger = logging.getLogger(__name__)

ADJUSTMENT_UPDATE_FIELDS = ("adjustment_date", "description", "adjustment_type", "amount", "notes")


class AdjustmentService:
    """Service for reconciliation adjustments."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.reconciliations = BankReconciliationService(db)

    async def list_adjustments(self, reconciliation_id: uuid.UUID) -> List[ReconciliationAdjustment]:
        await self.reconciliations.require_reconciliation(reconciliation_id)
        return await self.reconciliations.get_adjustments(reconciliation_id)

    async def create_adjustment(
        self,
        reconciliation_id: uuid.UUID,
        adjustment_date: date,
        description: str,
        adjustment_type: str,
        amount: Decimal,
        status: AdjustmentStatus = AdjustmentStatus.PENDING,
        notes: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> ReconciliationAdjustment:
        async with transactional(self.db):
            reconciliation = await self.reconciliations.require_reconciliation(
                reconciliation_id, lock="share",
            )
            self.reconciliations.ensure_in_progress(reconciliation, "add adjustment")

            adjustment = ReconciliationAdjustment(
                reconciliation_id=reconciliation_id,
                adjustment_date=adjustment_date,
                description=description,
                adjustment_type=adjustment_type,
                amount=amount,
                status=status,
                notes=notes,
                created_by_id=created_by_id,
            )
            if status == AdjustmentStatus.APPROVED:
                adjustment.approved_at = utcnow()
                adjustment.approved_by_id = created_by_id
            self.db.add(adjustment)

        logger.info(
            f"Added {adjustment_type} adjustment of {amount} to reconciliation {reconciliation_id}"
        )
        return adjustment

    async def _require_adjustment(self, adjustment_id: uuid.UUID) -> ReconciliationAdjustment:
        result = await self.db.execute(
            select(ReconciliationAdjustment)
            .where(ReconciliationAdjustment.id == adjustment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        adjustment = result.scalar_one_or_none()
        if adjustment is None:
            raise NotFoundException("Adjustment", adjustment_id)
        return adjustment

    async def _lock_for_change(self, adjustment_id: uuid.UUID, action: str) -> ReconciliationAdjustment:
        adjustment = await self._require_adjustment(adjustment_id)
        reconciliation = await self.reconciliations.require_reconciliation(
            adjustment.reconciliation_id, lock="share",
        )
        self.reconciliations.ensure_in_progress(reconciliation, action)
        return adjustment

    async def update_adjustment(
        self,
        adjustment_id: uuid.UUID,
        updates: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
    ) -> ReconciliationAdjustment:
        async with transactional(self.db):
            adjustment = await self._lock_for_change(adjustment_id, "update adjustment")

            target = updates.get("status")
            if adjustment.status == AdjustmentStatus.APPROVED:
                if target not in (None, AdjustmentStatus.APPROVED) or any(
                    updates.get(name) is not None for name in ADJUSTMENT_UPDATE_FIELDS
                ):
                    raise ConflictException(
                        "Cannot modify an approved adjustment",
                        resource_type="Adjustment",
                        code=ErrorCode.CANNOT_MODIFY,
                        details={"current_status": adjustment.status.value},
                    )

            for name in ADJUSTMENT_UPDATE_FIELDS:
                if updates.get(name) is not None:
                    setattr(adjustment, name, updates[name])
            adjustment.updated_by_id = user_id

            if target == AdjustmentStatus.APPROVED and adjustment.status != AdjustmentStatus.APPROVED:
                self._approve(adjustment, user_id)

        return adjustment

    async def approve_adjustment(
        self,
        adjustment_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> ReconciliationAdjustment:
        async with transactional(self.db):
            adjustment = await self._lock_for_change(adjustment_id, "approve adjustment")
            if adjustment.status != AdjustmentStatus.PENDING:
                raise InvalidStatusTransitionException(
                    "Adjustment", adjustment.status, AdjustmentStatus.APPROVED,
                )
            self._approve(adjustment, user_id)
        return adjustment

    async def delete_adjustment(self, adjustment_id: uuid.UUID) -> None:
        async with transactional(self.db):
            adjustment = await self._lock_for_change(adjustment_id, "delete adjustment")
            if adjustment.status == AdjustmentStatus.APPROVED:
                raise ConflictException(
                    "Cannot delete an approved adjustment",
                    resource_type="Adjustment",
                    code=ErrorCode.CANNOT_DELETE,
                    details={"current_status": adjustment.status.value},
                )
            await self.db.delete(adjustment)
        logger.info(f"Deleted adjustment {adjustment_id}")

    @staticmethod
    def _approve(adjustment: ReconciliationAdjustment, user_id: Optional[uuid.UUID]) -> None:
        adjustment.status = AdjustmentStatus.APPROVED
        adjustment.approved_at = utcnow()
        adjustment.approved_by_id = user_id


def get_adjustment_service(db: AsyncSession) -> AdjustmentService:
    """Factory function for AdjustmentService."""
    return AdjustmentService(db)
