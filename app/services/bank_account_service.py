"""
FundLedger - Bank Account Service

Bank account lookups and the last-reconciliation snapshot written when a
reconciliation completes.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.bank_reconciliation import BankAccount
from app.utils.error_handling import NotFoundException

logger = logging.getLogger(__name__)


class BankAccountService:
    """Service for bank account records used by reconciliation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_bank_account(
        self,
        bank_name: str,
        account_name: str,
        account_number: str,
        gl_account_id: Optional[uuid.UUID] = None,
        currency: str = "USD",
        notes: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> BankAccount:
        """Create a bank account linked to a ledger cash account."""
        account = BankAccount(
            bank_name=bank_name,
            account_name=account_name,
            account_number=account_number,
            gl_account_id=gl_account_id,
            currency=currency,
            notes=notes,
            created_by_id=created_by_id,
        )
        self.db.add(account)
        await self.db.commit()
        await self.db.refresh(account)
        return account

    async def get_bank_account(self, account_id: uuid.UUID) -> Optional[BankAccount]:
        result = await self.db.execute(
            select(BankAccount).where(BankAccount.id == account_id)
        )
        return result.scalar_one_or_none()

    async def require_bank_account(
        self,
        account_id: uuid.UUID,
        for_update: bool = False,
    ) -> BankAccount:
        """Load a bank account or raise NotFound, optionally locking the row."""
        query = select(BankAccount).where(BankAccount.id == account_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        account = (await self.db.execute(query)).scalar_one_or_none()
        if account is None:
            raise NotFoundException("Bank account", account_id)
        return account

    async def get_bank_accounts(self, is_active: Optional[bool] = True) -> List[BankAccount]:
        query = select(BankAccount)
        if is_active is not None:
            query = query.where(BankAccount.is_active == is_active)
        query = query.order_by(BankAccount.bank_name, BankAccount.account_name)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def record_reconciliation(
        self,
        bank_account_id: uuid.UUID,
        reconciliation_date: date,
        reconciled_balance: Decimal,
        reconciliation_id: uuid.UUID,
    ) -> BankAccount:
        """
        Write the last-reconciliation snapshot.

        Runs inside the caller's unit of work; it flushes but never commits.
        """
        account = await self.require_bank_account(bank_account_id, for_update=True)
        account.last_reconciliation_id = reconciliation_id
        account.last_reconciliation_date = reconciliation_date
        account.reconciled_balance = reconciled_balance
        await self.db.flush()

        logger.info(
            f"Bank account {bank_account_id} reconciled to {reconciled_balance} "
            f"as of {reconciliation_date} (reconciliation {reconciliation_id})"
        )
        return account


def get_bank_account_service(db: AsyncSession) -> BankAccountService:
    """Factory function for BankAccountService."""
    return BankAccountService(db)
