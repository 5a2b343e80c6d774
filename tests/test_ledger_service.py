"""
tests/test_ledger_service.py — Append-Only Ledger Tests
=========================================================
Running-balance consistency, the non-negative floor, history filters,
chain verification, operator adjustments, transfers and purchase credits.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

import pytest
from conftest import make_member
from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.models import AdminLog, PointSource, PointTransaction
from tally.engine.outcomes import AccountSuspended, InsufficientBalance, MemberNotFound


@pytest.fixture
def ledger(services):
    return services.ledger


def _rows(engine, member_id: str) -> list[PointTransaction]:
    with Session(engine) as session:
        return list(session.scalars(
            select(PointTransaction)
            .where(PointTransaction.member_id == member_id)
            .order_by(PointTransaction.sequence)
        ).all())


class TestAppend:
    def test_running_balance_follows_amounts(self, ledger, db_engine, member_id):
        ledger.append(member_id, 50, PointSource.QUIZ)
        ledger.append(member_id, 30, PointSource.TASK)
        ledger.append(member_id, -20, PointSource.REDEMPTION)

        rows = _rows(db_engine, member_id)
        assert [r.sequence for r in rows] == [1, 2, 3]
        assert [r.balance_after for r in rows] == [50, 80, 60]
        assert [r.transaction_type for r in rows] == ["credit", "credit", "debit"]
        assert ledger.current_balance(member_id) == 60

    def test_balance_of_member_without_rows_is_zero(self, ledger, member_id):
        assert ledger.current_balance(member_id) == 0

    def test_debit_below_zero_is_refused(self, ledger, db_engine, member_id):
        ledger.append(member_id, 10, PointSource.QUIZ)
        with pytest.raises(InsufficientBalance) as exc_info:
            ledger.append(member_id, -11, PointSource.REDEMPTION)

        assert exc_info.value.context == {"balance": 10, "requested": 11}
        assert len(_rows(db_engine, member_id)) == 1
        assert ledger.current_balance(member_id) == 10

    def test_debit_to_exactly_zero_is_allowed(self, ledger, member_id):
        ledger.append(member_id, 10, PointSource.QUIZ)
        tx = ledger.append(member_id, -10, PointSource.REDEMPTION)
        assert tx.balance_after == 0

    def test_zero_amount_is_rejected(self, ledger, member_id):
        with pytest.raises(ValueError):
            ledger.append(member_id, 0, PointSource.QUIZ)

    def test_unknown_member_is_rejected(self, ledger):
        with pytest.raises(MemberNotFound):
            ledger.append("no-such-member", 5, PointSource.QUIZ)

    def test_reference_and_metadata_are_stored(self, ledger, member_id):
        tx = ledger.append(
            member_id, 15, PointSource.EVENT,
            reference_type="event_checkin", reference_id="evt-9",
            metadata={"note": "front door"},
        )
        assert tx.reference_type == "event_checkin"
        assert tx.reference_id == "evt-9"
        assert tx.metadata_ == {"note": "front door"}

    def test_members_have_independent_sequences(self, ledger, db_engine, member_id):
        other = make_member(db_engine, "Grace")
        ledger.append(member_id, 5, PointSource.QUIZ)
        ledger.append(other, 7, PointSource.QUIZ)
        ledger.append(member_id, 5, PointSource.QUIZ)

        assert [r.sequence for r in _rows(db_engine, member_id)] == [1, 2]
        assert [r.sequence for r in _rows(db_engine, other)] == [1]


class TestHistory:
    def test_newest_first_with_totals(self, ledger, clock, member_id):
        ledger.append(member_id, 100, PointSource.PURCHASE)
        clock.advance(minutes=5)
        ledger.append(member_id, -40, PointSource.REDEMPTION)
        clock.advance(minutes=5)
        ledger.append(member_id, 25, PointSource.QUIZ)

        page = ledger.history(member_id)
        assert [tx.amount for tx in page.items] == [25, -40, 100]
        assert page.total == 3
        assert page.total_credits == 125
        assert page.total_debits == 40
        assert page.current_balance == 85
        assert page.has_more is False

    def test_pagination(self, ledger, member_id):
        for _ in range(5):
            ledger.append(member_id, 1, PointSource.TASK)

        first = ledger.history(member_id, page=1, page_size=2)
        last = ledger.history(member_id, page=3, page_size=2)
        assert [tx.sequence for tx in first.items] == [5, 4]
        assert first.has_more is True
        assert [tx.sequence for tx in last.items] == [1]
        assert last.has_more is False

    def test_page_size_is_capped(self, ledger, member_id):
        page = ledger.history(member_id, page_size=10_000)
        assert page.page_size == 100

    def test_filters_by_type_and_source(self, ledger, member_id):
        ledger.append(member_id, 100, PointSource.PURCHASE)
        ledger.append(member_id, 10, PointSource.QUIZ)
        ledger.append(member_id, -30, PointSource.REDEMPTION)

        debits = ledger.history(member_id, transaction_type="debit")
        quizzes = ledger.history(member_id, source="quiz")
        assert [tx.amount for tx in debits.items] == [-30]
        assert [tx.amount for tx in quizzes.items] == [10]

    def test_filters_by_date_range(self, ledger, clock, member_id):
        ledger.append(member_id, 1, PointSource.TASK)
        clock.advance(days=2)
        start = clock()
        ledger.append(member_id, 2, PointSource.TASK)
        clock.advance(days=2)
        ledger.append(member_id, 3, PointSource.TASK)

        window = ledger.history(member_id, start=start, end=start)
        assert [tx.amount for tx in window.items] == [2]


class TestVerifyChain:
    def test_clean_chain(self, ledger, member_id):
        ledger.append(member_id, 10, PointSource.QUIZ)
        ledger.append(member_id, -4, PointSource.REDEMPTION)

        report = ledger.verify_chain(member_id)
        assert report.ok
        assert report.rows_checked == 2
        assert report.final_balance == 6

    def test_detects_tampered_balance(self, ledger, db_engine, member_id):
        ledger.append(member_id, 10, PointSource.QUIZ)
        ledger.append(member_id, 5, PointSource.QUIZ)
        with Session(db_engine) as session:
            row = session.scalars(
                select(PointTransaction).where(PointTransaction.sequence == 2)
            ).one()
            row.balance_after = 99
            session.commit()

        report = ledger.verify_chain(member_id)
        assert not report.ok
        assert report.first_break_sequence == 2


class TestAdjust:
    def test_adjustment_is_a_new_row_and_audited(self, ledger, db_engine, member_id):
        ledger.append(member_id, 50, PointSource.QUIZ)
        tx = ledger.adjust(member_id, -20, "duplicate credit", "admin-7")

        assert tx.source == PointSource.ADJUSTMENT.value
        assert tx.balance_after == 30
        with Session(db_engine) as session:
            entry = session.scalars(select(AdminLog)).one()
        assert entry.action_type == "ADJUST"
        assert entry.actor_id == "admin-7"
        assert entry.before_snapshot == {"member_id": member_id, "balance": 50}
        assert entry.after_snapshot["balance_after"] == 30

    def test_adjustment_cannot_go_negative(self, ledger, db_engine, member_id):
        with pytest.raises(InsufficientBalance):
            ledger.adjust(member_id, -1, "oops", "admin-7")
        with Session(db_engine) as session:
            assert session.scalars(select(AdminLog)).all() == []


class TestTransfer:
    def test_moves_points_atomically(self, ledger, db_engine, member_id):
        other = make_member(db_engine, "Grace")
        ledger.append(member_id, 40, PointSource.PURCHASE)

        debit, credit = ledger.transfer(member_id, other, 15, "thanks")
        assert debit.amount == -15
        assert credit.amount == 15
        assert debit.reference_id == credit.reference_id
        assert ledger.current_balance(member_id) == 25
        assert ledger.current_balance(other) == 15

    def test_insufficient_balance_leaves_both_untouched(self, ledger, db_engine, member_id):
        other = make_member(db_engine, "Grace")
        with pytest.raises(InsufficientBalance):
            ledger.transfer(member_id, other, 5)
        assert _rows(db_engine, member_id) == []
        assert _rows(db_engine, other) == []

    def test_self_transfer_is_rejected(self, ledger, member_id):
        with pytest.raises(ValueError):
            ledger.transfer(member_id, member_id, 5)

    def test_suspended_sender_is_refused_under_the_lock(
        self, ledger, services, db_engine, member_id,
    ):
        other = make_member(db_engine, "Grace")
        ledger.append(member_id, 40, PointSource.PURCHASE)
        services.suspensions.suspend(member_id, "review", "admin-1")

        with pytest.raises(AccountSuspended):
            ledger.transfer(member_id, other, 15)

        assert ledger.current_balance(member_id) == 40
        assert ledger.current_balance(other) == 0
        assert _rows(db_engine, other) == []

    def test_suspended_recipient_still_receives(self, ledger, services, db_engine, member_id):
        other = make_member(db_engine, "Grace")
        ledger.append(member_id, 40, PointSource.PURCHASE)
        services.suspensions.suspend(other, "review", "admin-1", duration_days=3)

        ledger.transfer(member_id, other, 15)
        assert ledger.current_balance(other) == 15


class TestPurchaseCredit:
    def test_first_credit_then_replay(self, ledger, db_engine, member_id):
        tx, duplicate = ledger.credit_from_verified_purchase(member_id, 500, "pay-123")
        again, duplicate_again = ledger.credit_from_verified_purchase(member_id, 500, "pay-123")

        assert duplicate is False
        assert duplicate_again is True
        assert again.id == tx.id
        assert len(_rows(db_engine, member_id)) == 1
        assert ledger.current_balance(member_id) == 500

    def test_different_references_both_credit(self, ledger, member_id):
        ledger.credit_from_verified_purchase(member_id, 100, "pay-1")
        ledger.credit_from_verified_purchase(member_id, 100, "pay-2")
        assert ledger.current_balance(member_id) == 200

    def test_non_positive_amount_is_rejected(self, ledger, member_id):
        with pytest.raises(ValueError):
            ledger.credit_from_verified_purchase(member_id, 0, "pay-0")
