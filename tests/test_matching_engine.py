"""
FundLedger - Matching Engine Tests

Tests for auto-match, manual match and unmatch.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, select

from app.models.bank_reconciliation import (
    BankStatement,
    BankStatementTransaction,
    BankTransactionStatus,
    MatchType,
    ReconciliationItem,
    StatementStatus,
)
from app.models.ledger import JournalEntryStatus
from app.services.bank_reconciliation_service import BankReconciliationService
from app.services.ledger_reader import LedgerLine
from app.services.matching_engine import (
    MatchingConfig,
    MatchingEngine,
    descriptions_overlap,
    is_candidate,
)
from app.utils.error_handling import (
    AlreadyMatchedException,
    ConflictException,
    NotFoundException,
    ValidationException,
)


async def count_items(db_session, **criteria) -> int:
    query = select(func.count(ReconciliationItem.id))
    for name, value in criteria.items():
        query = query.where(getattr(ReconciliationItem, name) == value)
    return (await db_session.execute(query)).scalar_one()


def ledger_line(entry_date, debit="0.00", credit="0.00", description=None) -> LedgerLine:
    return LedgerLine(
        id=uuid4(),
        journal_entry_id=uuid4(),
        account_id=uuid4(),
        entry_date=entry_date,
        reference=None,
        description=description,
        debit_amount=Decimal(debit),
        credit_amount=Decimal(credit),
    )


class TestCandidateRules:
    """Test cases for the pure matching predicates."""

    def test_descriptions_overlap(self):
        assert descriptions_overlap("ACH DEPOSIT Smith Foundation", "smith foundation")
        assert descriptions_overlap("rent", "March RENT payment")
        assert not descriptions_overlap("Payroll", "Rent")

    def test_empty_description_never_overlaps(self):
        assert not descriptions_overlap("", "anything")
        assert not descriptions_overlap("Deposit", None)
        assert not descriptions_overlap("   ", "   ")

    def test_deposit_matches_debit_side(self):
        txn = BankStatementTransaction(
            transaction_date=date(2024, 3, 1), amount=Decimal("150.00"), description="Deposit",
        )
        config = MatchingConfig(date_tolerance_days=3)
        assert is_candidate(txn, ledger_line(date(2024, 3, 2), debit="150.00"), config)
        assert not is_candidate(txn, ledger_line(date(2024, 3, 2), credit="150.00"), config)

    def test_withdrawal_matches_credit_side(self):
        txn = BankStatementTransaction(
            transaction_date=date(2024, 3, 1), amount=Decimal("-80.00"), description="Check",
        )
        config = MatchingConfig(date_tolerance_days=3)
        assert is_candidate(txn, ledger_line(date(2024, 3, 1), credit="80.00"), config)
        assert not is_candidate(txn, ledger_line(date(2024, 3, 1), debit="80.00"), config)

    def test_amount_and_date_tolerance(self):
        txn = BankStatementTransaction(
            transaction_date=date(2024, 3, 10), amount=Decimal("100.00"), description="x",
        )
        config = MatchingConfig(date_tolerance_days=3)
        assert is_candidate(txn, ledger_line(date(2024, 3, 13), debit="100.01"), config)
        assert not is_candidate(txn, ledger_line(date(2024, 3, 10), debit="100.02"), config)
        assert not is_candidate(txn, ledger_line(date(2024, 3, 14), debit="100.00"), config)

    def test_config_bounds(self):
        assert MatchingConfig.from_request().date_tolerance_days == 3
        assert MatchingConfig.from_request(0).date_tolerance_days == 0
        with pytest.raises(ValidationException):
            MatchingConfig.from_request(32)
        with pytest.raises(ValidationException):
            MatchingConfig.from_request(-1)


class TestAutoMatch:
    """Test cases for MatchingEngine.auto_match."""

    @pytest.mark.asyncio
    async def test_single_candidate_is_matched(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        """A 150.00 deposit one day before a 150.00 debit is matched."""
        txn = await make_bank_transaction(statement.id, date(2024, 3, 1), "150.00")
        line = await make_ledger_line(date(2024, 3, 2), debit="150.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        engine = MatchingEngine(db_session)
        outcome = await engine.auto_match(reconciliation.id, MatchingConfig(date_tolerance_days=3))

        assert outcome.matches_created == 1
        pair = outcome.matches[0]
        assert pair.bank_transaction_id == txn.id
        assert pair.ledger_line_id == line.id
        assert pair.amount == Decimal("150.00")

        await db_session.refresh(txn)
        assert txn.status == BankTransactionStatus.MATCHED

        item = (await db_session.execute(
            select(ReconciliationItem).where(ReconciliationItem.id == pair.item_id)
        )).scalar_one()
        assert item.match_type == MatchType.AUTO

    @pytest.mark.asyncio
    async def test_ambiguous_candidates_are_left_alone(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 5), "250.00")
        await make_ledger_line(date(2024, 3, 5), debit="250.00")
        await make_ledger_line(date(2024, 3, 5), debit="250.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        outcome = await MatchingEngine(db_session).auto_match(reconciliation.id)

        assert outcome.matches_created == 0
        assert outcome.ambiguous == 1
        await db_session.refresh(txn)
        assert txn.status == BankTransactionStatus.UNMATCHED
        assert await count_items(db_session) == 0

    @pytest.mark.asyncio
    async def test_second_pass_creates_nothing(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 1), "150.00")
        await make_bank_transaction(statement.id, date(2024, 3, 8), "-40.00")
        await make_ledger_line(date(2024, 3, 1), debit="150.00")
        await make_ledger_line(date(2024, 3, 9), credit="40.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        engine = MatchingEngine(db_session)

        first = await engine.auto_match(reconciliation.id)
        second = await engine.auto_match(reconciliation.id)

        assert first.matches_created == 2
        assert second.matches_created == 0
        assert second.examined == 0
        assert await count_items(db_session) == 2

    @pytest.mark.asyncio
    async def test_failure_mid_pass_keeps_no_matches(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
        monkeypatch,
    ):
        """A pass that fails after its first match is written leaves nothing behind."""
        first_txn = await make_bank_transaction(statement.id, date(2024, 3, 1), "150.00")
        second_txn = await make_bank_transaction(statement.id, date(2024, 3, 8), "-40.00")
        await make_ledger_line(date(2024, 3, 1), debit="150.00")
        await make_ledger_line(date(2024, 3, 8), credit="40.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        transaction_ids = [first_txn.id, second_txn.id]

        engine = MatchingEngine(db_session)
        original_lock = engine._lock_transaction
        calls = []

        async def lock_then_fail(transaction_id):
            calls.append(transaction_id)
            if len(calls) == 1:
                return await original_lock(transaction_id)
            await db_session.flush()
            raise RuntimeError("connection lost")

        monkeypatch.setattr(engine, "_lock_transaction", lock_then_fail)

        with pytest.raises(RuntimeError):
            await engine.auto_match(reconciliation_id)

        assert len(calls) == 2
        assert await count_items(db_session, reconciliation_id=reconciliation_id) == 0
        statuses = (await db_session.execute(
            select(BankStatementTransaction.status)
            .where(BankStatementTransaction.id.in_(transaction_ids))
        )).scalars().all()
        assert sorted(s.value for s in statuses) == [
            BankTransactionStatus.UNMATCHED.value, BankTransactionStatus.UNMATCHED.value,
        ]

    @pytest.mark.asyncio
    async def test_line_claimed_earlier_in_pass(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 10), "200.00")
        await make_bank_transaction(statement.id, date(2024, 3, 10), "200.00")
        await make_ledger_line(date(2024, 3, 10), debit="200.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        outcome = await MatchingEngine(db_session).auto_match(reconciliation.id)

        assert outcome.matches_created == 1
        assert outcome.no_candidate == 1

    @pytest.mark.asyncio
    async def test_date_tolerance(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 10), "100.00")
        await make_ledger_line(date(2024, 3, 20), debit="100.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        engine = MatchingEngine(db_session)

        narrow = await engine.auto_match(reconciliation.id, MatchingConfig.from_request(3))
        assert narrow.matches_created == 0
        assert narrow.no_candidate == 1

        wide = await engine.auto_match(reconciliation.id, MatchingConfig.from_request(10))
        assert wide.matches_created == 1

    @pytest.mark.asyncio
    async def test_description_match_breaks_ties(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(
            statement.id, date(2024, 3, 15), "300.00", description="ACH Smith Foundation",
        )
        smith = await make_ledger_line(date(2024, 3, 15), debit="300.00", description="smith foundation")
        await make_ledger_line(date(2024, 3, 15), debit="300.00", description="Jones Trust")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        engine = MatchingEngine(db_session)

        plain = await engine.auto_match(reconciliation.id, MatchingConfig.from_request())
        assert plain.ambiguous == 1

        fuzzy = await engine.auto_match(
            reconciliation.id, MatchingConfig.from_request(description_match=True),
        )
        assert fuzzy.matches_created == 1
        assert fuzzy.matches[0].ledger_line_id == smith.id

    @pytest.mark.asyncio
    async def test_entry_description_used_when_line_has_none(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 15), "60.00", description="Interest")
        line = await make_ledger_line(
            date(2024, 3, 15), debit="60.00", entry_description="Monthly interest",
        )
        reconciliation = await make_reconciliation(statement_id=statement.id)

        outcome = await MatchingEngine(db_session).auto_match(
            reconciliation.id, MatchingConfig.from_request(description_match=True),
        )
        assert outcome.matches[0].ledger_line_id == line.id

    @pytest.mark.asyncio
    async def test_unposted_and_zero_lines_skipped(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 12), "90.00")
        await make_bank_transaction(statement.id, date(2024, 3, 12), "0.00")
        await make_ledger_line(date(2024, 3, 12), debit="90.00", status=JournalEntryStatus.DRAFT)
        reconciliation = await make_reconciliation(statement_id=statement.id)

        outcome = await MatchingEngine(db_session).auto_match(reconciliation.id)

        assert outcome.matches_created == 0
        assert outcome.no_candidate == 2

    @pytest.mark.asyncio
    async def test_other_ledger_accounts_ignored(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        await make_bank_transaction(statement.id, date(2024, 3, 12), "90.00")
        await make_ledger_line(date(2024, 3, 12), debit="90.00", account_id=uuid4())
        reconciliation = await make_reconciliation(statement_id=statement.id)

        outcome = await MatchingEngine(db_session).auto_match(reconciliation.id)
        assert outcome.matches_created == 0

    @pytest.mark.asyncio
    async def test_reconciliation_without_statement(self, db_session, make_reconciliation):
        reconciliation = await make_reconciliation()
        outcome = await MatchingEngine(db_session).auto_match(reconciliation.id)
        assert outcome.matches_created == 0
        assert outcome.examined == 0

    @pytest.mark.asyncio
    async def test_requires_in_progress(self, db_session, statement, make_reconciliation):
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        await BankReconciliationService(db_session).complete_reconciliation(reconciliation_id)

        with pytest.raises(ConflictException):
            await MatchingEngine(db_session).auto_match(reconciliation_id)

    @pytest.mark.asyncio
    async def test_matched_status_tracks_items(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        """A transaction is Matched exactly when one item references it."""
        transactions = [
            await make_bank_transaction(statement.id, date(2024, 3, 1), "150.00"),
            await make_bank_transaction(statement.id, date(2024, 3, 2), "75.00"),
            await make_bank_transaction(statement.id, date(2024, 3, 3), "75.00"),
            await make_bank_transaction(statement.id, date(2024, 3, 20), "-19.99"),
        ]
        await make_ledger_line(date(2024, 3, 1), debit="150.00")
        await make_ledger_line(date(2024, 3, 2), debit="75.00")
        await make_ledger_line(date(2024, 3, 21), credit="19.99")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        await MatchingEngine(db_session).auto_match(reconciliation.id)

        for txn in transactions:
            await db_session.refresh(txn)
            items = await count_items(db_session, bank_transaction_id=txn.id)
            assert (txn.status == BankTransactionStatus.MATCHED) == (items == 1)
            assert items <= 1


class TestManualMatch:
    """Test cases for manual match and unmatch."""

    @pytest.mark.asyncio
    async def test_match_bank_side_only(
        self, db_session, statement, make_bank_transaction, make_reconciliation, user_id,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "-35.50")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        item = await MatchingEngine(db_session).manual_match(
            reconciliation.id, bank_transaction_id=txn.id, notes="Bank fee", user_id=user_id,
        )

        assert item.match_type == MatchType.MANUAL
        assert item.amount == Decimal("35.50")
        assert item.ledger_line_id is None
        assert item.created_by_id == user_id
        await db_session.refresh(txn)
        assert txn.status == BankTransactionStatus.MATCHED

    @pytest.mark.asyncio
    async def test_match_ledger_side_only(
        self, db_session, statement, make_ledger_line, make_reconciliation,
    ):
        line = await make_ledger_line(date(2024, 3, 6), credit="410.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        item = await MatchingEngine(db_session).manual_match(reconciliation.id, ledger_line_id=line.id)

        assert item.amount == Decimal("410.00")
        assert item.bank_transaction_id is None

    @pytest.mark.asyncio
    async def test_match_both_sides(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "500.00")
        line = await make_ledger_line(date(2024, 3, 28), debit="500.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        item = await MatchingEngine(db_session).manual_match(
            reconciliation.id, bank_transaction_id=txn.id, ledger_line_id=line.id,
        )

        assert item.bank_transaction_id == txn.id
        assert item.ledger_line_id == line.id
        assert item.amount == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_requires_one_side(self, db_session, statement, make_reconciliation):
        reconciliation = await make_reconciliation(statement_id=statement.id)
        with pytest.raises(ValidationException):
            await MatchingEngine(db_session).manual_match(reconciliation.id)

    @pytest.mark.asyncio
    async def test_missing_references(self, db_session, statement, make_reconciliation):
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        engine = MatchingEngine(db_session)

        with pytest.raises(NotFoundException):
            await engine.manual_match(reconciliation_id, bank_transaction_id=uuid4())
        with pytest.raises(NotFoundException):
            await engine.manual_match(reconciliation_id, ledger_line_id=uuid4())
        with pytest.raises(NotFoundException):
            await engine.manual_match(uuid4(), ledger_line_id=uuid4())

    @pytest.mark.asyncio
    async def test_already_matched_transaction(
        self, db_session, statement, make_bank_transaction, make_reconciliation,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "12.00")
        txn_id = txn.id
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        engine = MatchingEngine(db_session)

        await engine.manual_match(reconciliation_id, bank_transaction_id=txn_id)
        with pytest.raises(AlreadyMatchedException):
            await engine.manual_match(reconciliation_id, bank_transaction_id=txn_id)

        assert await count_items(db_session, bank_transaction_id=txn_id) == 1

    @pytest.mark.asyncio
    async def test_consumed_ledger_line(
        self, db_session, statement, make_ledger_line, make_reconciliation,
    ):
        line = await make_ledger_line(date(2024, 3, 6), debit="10.00")
        line_id = line.id
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        engine = MatchingEngine(db_session)

        await engine.manual_match(reconciliation_id, ledger_line_id=line_id)
        with pytest.raises(AlreadyMatchedException):
            await engine.manual_match(reconciliation_id, ledger_line_id=line_id)

    @pytest.mark.asyncio
    async def test_ignored_transaction(
        self, db_session, statement, make_bank_transaction, make_reconciliation,
    ):
        txn = await make_bank_transaction(
            statement.id, date(2024, 3, 4), "12.00", status=BankTransactionStatus.IGNORED,
        )
        txn_id = txn.id
        reconciliation = await make_reconciliation(statement_id=statement.id)

        with pytest.raises(ConflictException):
            await MatchingEngine(db_session).manual_match(reconciliation.id, bank_transaction_id=txn_id)

    @pytest.mark.asyncio
    async def test_transaction_from_other_account(
        self, db_session, statement, other_bank_account, make_bank_transaction, make_reconciliation,
    ):
        foreign_statement = BankStatement(
            id=uuid4(),
            bank_account_id=other_bank_account.id,
            statement_date=date(2024, 3, 31),
            period_start=date(2024, 3, 1),
            period_end=date(2024, 3, 31),
            opening_balance=Decimal("0.00"),
            closing_balance=Decimal("0.00"),
            status=StatementStatus.UPLOADED,
        )
        db_session.add(foreign_statement)
        await db_session.commit()
        txn = await make_bank_transaction(foreign_statement.id, date(2024, 3, 4), "12.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)

        with pytest.raises(ValidationException):
            await MatchingEngine(db_session).manual_match(reconciliation.id, bank_transaction_id=txn.id)

    @pytest.mark.asyncio
    async def test_ledger_line_from_other_account(
        self, db_session, statement, make_ledger_line, make_reconciliation,
    ):
        line = await make_ledger_line(date(2024, 3, 6), debit="10.00", account_id=uuid4())
        reconciliation = await make_reconciliation(statement_id=statement.id)

        with pytest.raises(ValidationException):
            await MatchingEngine(db_session).manual_match(reconciliation.id, ledger_line_id=line.id)

    @pytest.mark.asyncio
    async def test_match_then_unmatch(
        self, db_session, statement, make_bank_transaction, make_ledger_line, make_reconciliation,
    ):
        """Unmatch restores the transaction and frees the ledger line."""
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "500.00")
        line = await make_ledger_line(date(2024, 3, 4), debit="500.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        engine = MatchingEngine(db_session)

        item = await engine.manual_match(
            reconciliation.id, bank_transaction_id=txn.id, ledger_line_id=line.id,
        )
        await engine.unmatch(item.id)

        await db_session.refresh(txn)
        assert txn.status == BankTransactionStatus.UNMATCHED
        assert await count_items(db_session) == 0
        assert not await engine.ledger.is_consumed(line.id)

        # Both sides are available to auto-match again
        outcome = await engine.auto_match(reconciliation.id)
        assert outcome.matches_created == 1

    @pytest.mark.asyncio
    async def test_unmatch_missing_item(self, db_session):
        with pytest.raises(NotFoundException):
            await MatchingEngine(db_session).unmatch(uuid4())

    @pytest.mark.asyncio
    async def test_unmatch_requires_in_progress(
        self, db_session, statement, make_bank_transaction, make_reconciliation,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "5.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        reconciliation_id = reconciliation.id
        engine = MatchingEngine(db_session)
        item = await engine.manual_match(reconciliation_id, bank_transaction_id=txn.id)
        item_id = item.id

        await BankReconciliationService(db_session).complete_reconciliation(reconciliation_id)

        with pytest.raises(ConflictException):
            await engine.unmatch(item_id)
        assert await count_items(db_session, id=item_id) == 1

    @pytest.mark.asyncio
    async def test_unmatch_locks_reconciliation_then_transaction_then_item(
        self, db_session, statement, make_bank_transaction, make_reconciliation, monkeypatch,
    ):
        txn = await make_bank_transaction(statement.id, date(2024, 3, 4), "-12.00")
        reconciliation = await make_reconciliation(statement_id=statement.id)
        engine = MatchingEngine(db_session)
        item = await engine.manual_match(reconciliation.id, bank_transaction_id=txn.id)
        item_id = item.id

        order = []
        original_require = engine.reconciliations.require_reconciliation
        original_lock = engine._lock_transaction
        original_execute = db_session.execute

        async def tracking_require(*args, **kwargs):
            order.append("reconciliation")
            return await original_require(*args, **kwargs)

        async def tracking_lock(transaction_id):
            order.append("transaction")
            return await original_lock(transaction_id)

        async def tracking_execute(statement, *args, **kwargs):
            descriptions = getattr(statement, "column_descriptions", None) or []
            if len(descriptions) == 1 and descriptions[0]["type"] is ReconciliationItem:
                order.append("item")
            return await original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(engine.reconciliations, "require_reconciliation", tracking_require)
        monkeypatch.setattr(engine, "_lock_transaction", tracking_lock)
        monkeypatch.setattr(db_session, "execute", tracking_execute)

        await engine.unmatch(item_id)

        assert order == ["reconciliation", "transaction", "item"]
        monkeypatch.undo()
        await db_session.refresh(txn)
        assert txn.status == BankTransactionStatus.UNMATCHED
        assert await count_items(db_session, id=item_id) == 0
