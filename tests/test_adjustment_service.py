"""
FundLedger - Adjustment Service Tests

Unit tests for reconciliation adjustments.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.models.bank_reconciliation import AdjustmentStatus, ReconciliationStatus
from app.services.adjustment_service import AdjustmentService
from app.services.bank_reconciliation_service import BankReconciliationService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    InvalidStatusTransitionException,
    NotFoundException,
    ReconciliationNotFoundException,
)


async def add_fee(service: AdjustmentService, reconciliation_id, **kwargs):
    return await service.create_adjustment(
        reconciliation_id,
        adjustment_date=kwargs.pop("adjustment_date", date(2024, 3, 31)),
        description=kwargs.pop("description", "Monthly service fee"),
        adjustment_type=kwargs.pop("adjustment_type", "Bank Fee"),
        amount=Decimal(kwargs.pop("amount", "-15.00")),
        **kwargs,
    )


class TestAdjustmentService:
    """Test cases for AdjustmentService."""

    @pytest.mark.asyncio
    async def test_create_adjustment(self, db_session, make_reconciliation, user_id):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)

        adjustment = await add_fee(service, reconciliation.id, created_by_id=user_id)

        assert adjustment.status == AdjustmentStatus.PENDING
        assert adjustment.amount == Decimal("-15.00")
        assert adjustment.created_by_id == user_id
        assert adjustment.approved_at is None

    @pytest.mark.asyncio
    async def test_adjustments_do_not_touch_difference(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation(statement_balance="1000.00", book_balance="950.00")
        service = AdjustmentService(db_session)

        await add_fee(service, reconciliation.id, amount="50.00", adjustment_type="Timing")

        refreshed = await BankReconciliationService(db_session).require_reconciliation(reconciliation.id)
        assert refreshed.difference == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_create_approved(self, db_session, make_reconciliation, user_id):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)

        adjustment = await add_fee(
            service, reconciliation.id, status=AdjustmentStatus.APPROVED, created_by_id=user_id,
        )

        assert adjustment.status == AdjustmentStatus.APPROVED
        assert adjustment.approved_by_id == user_id
        assert adjustment.approved_at is not None

    @pytest.mark.asyncio
    async def test_missing_reconciliation(self, db_session):
        service = AdjustmentService(db_session)
        with pytest.raises(ReconciliationNotFoundException):
            await add_fee(service, uuid4())
        with pytest.raises(ReconciliationNotFoundException):
            await service.list_adjustments(uuid4())

    @pytest.mark.asyncio
    async def test_requires_in_progress(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation()
        reconciliation_id = reconciliation.id
        service = AdjustmentService(db_session)
        pending = await add_fee(service, reconciliation_id)
        pending_id = pending.id
        await BankReconciliationService(db_session).complete_reconciliation(reconciliation_id)

        with pytest.raises(ConflictException):
            await add_fee(service, reconciliation_id)
        with pytest.raises(ConflictException):
            await service.update_adjustment(pending_id, {"amount": Decimal("-1.00")})
        with pytest.raises(ConflictException):
            await service.delete_adjustment(pending_id)

    @pytest.mark.asyncio
    async def test_update_adjustment(self, db_session, make_reconciliation, user_id):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        adjustment = await add_fee(service, reconciliation.id)

        updated = await service.update_adjustment(
            adjustment.id,
            {"amount": Decimal("-17.50"), "description": "Wire fee", "notes": None},
            user_id=user_id,
        )

        assert updated.amount == Decimal("-17.50")
        assert updated.description == "Wire fee"
        assert updated.updated_by_id == user_id

    @pytest.mark.asyncio
    async def test_approve_adjustment(self, db_session, make_reconciliation, user_id):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        adjustment = await add_fee(service, reconciliation.id)
        adjustment_id = adjustment.id

        approved = await service.approve_adjustment(adjustment_id, user_id=user_id)
        assert approved.status == AdjustmentStatus.APPROVED
        assert approved.approved_by_id == user_id

        with pytest.raises(InvalidStatusTransitionException):
            await service.approve_adjustment(adjustment_id)

    @pytest.mark.asyncio
    async def test_approve_via_update(self, db_session, make_reconciliation, user_id):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        adjustment = await add_fee(service, reconciliation.id)

        approved = await service.update_adjustment(
            adjustment.id, {"status": AdjustmentStatus.APPROVED}, user_id=user_id,
        )
        assert approved.status == AdjustmentStatus.APPROVED
        assert approved.approved_at is not None

    @pytest.mark.asyncio
    async def test_approved_adjustment_is_immutable(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        adjustment = await add_fee(service, reconciliation.id, status=AdjustmentStatus.APPROVED)
        adjustment_id = adjustment.id

        with pytest.raises(ConflictException) as exc_info:
            await service.update_adjustment(adjustment_id, {"amount": Decimal("-1.00")})
        assert exc_info.value.code == ErrorCode.CANNOT_MODIFY

        with pytest.raises(ConflictException):
            await service.update_adjustment(adjustment_id, {"status": AdjustmentStatus.PENDING})

        with pytest.raises(ConflictException) as exc_info:
            await service.delete_adjustment(adjustment_id)
        assert exc_info.value.code == ErrorCode.CANNOT_DELETE

    @pytest.mark.asyncio
    async def test_delete_and_list(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        late = await add_fee(service, reconciliation.id, adjustment_date=date(2024, 3, 30))
        early = await add_fee(
            service, reconciliation.id,
            adjustment_date=date(2024, 3, 2), adjustment_type="Interest", amount="3.10",
        )

        listed = await service.list_adjustments(reconciliation.id)
        assert [a.id for a in listed] == [early.id, late.id]

        await service.delete_adjustment(late.id)
        listed = await service.list_adjustments(reconciliation.id)
        assert [a.id for a in listed] == [early.id]

    @pytest.mark.asyncio
    async def test_missing_adjustment(self, db_session):
        service = AdjustmentService(db_session)
        with pytest.raises(NotFoundException):
            await service.delete_adjustment(uuid4())

    @pytest.mark.asyncio
    async def test_reconciliation_status_unaffected(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation()
        service = AdjustmentService(db_session)
        adjustment = await add_fee(service, reconciliation.id)
        await service.approve_adjustment(adjustment.id)

        refreshed = await BankReconciliationService(db_session).require_reconciliation(reconciliation.id)
        assert refreshed.status == ReconciliationStatus.IN_PROGRESS
