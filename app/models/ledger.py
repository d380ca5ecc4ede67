"""
FundLedger - General Ledger Models

Journal entries and journal lines owned by the general ledger. The
reconciliation engine maps these tables to read candidate lines and never
writes to them.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint, Date, ForeignKey, Index, Numeric, String, Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class JournalEntryStatus(str, Enum):
    """Journal entry posting status."""
    DRAFT = "draft"
    POSTED = "posted"
    VOIDED = "voided"


class JournalEntry(BaseModel):
    """A balanced journal entry in the general ledger."""

    __tablename__ = "journal_entries"

    entry_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[JournalEntryStatus] = mapped_column(
        SQLEnum(JournalEntryStatus),
        default=JournalEntryStatus.DRAFT,
        nullable=False,
    )

    lines: Mapped[List["JournalEntryLine"]] = relationship(
        "JournalEntryLine",
        back_populates="journal_entry",
    )


class JournalEntryLine(BaseModel):
    """
    One debit or credit line of a journal entry.

    Debit and credit are non-negative and at most one of them is nonzero.
    """

    __tablename__ = "journal_entry_lines"

    journal_entry_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("journal_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        comment="Chart of accounts reference",
    )
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    debit_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )

    journal_entry: Mapped["JournalEntry"] = relationship(
        "JournalEntry", back_populates="lines",
    )

    # Entry-level fields; journal_entry must be eagerly loaded
    @property
    def entry_date(self) -> date:
        return self.journal_entry.entry_date

    @property
    def reference(self) -> Optional[str]:
        return self.journal_entry.reference

    @property
    def display_description(self) -> Optional[str]:
        if self.description is not None:
            return self.description
        return self.journal_entry.description

    __table_args__ = (
        CheckConstraint(
            "debit_amount >= 0 AND credit_amount >= 0",
            name="non_negative_amounts",
        ),
        CheckConstraint(
            "NOT (debit_amount > 0 AND credit_amount > 0)",
            name="single_sided",
        ),
        Index("ix_journal_entry_lines_account", "account_id"),
    )
