"""
tally.services.ledger_service — Append-Only Point Ledger
==========================================================

The ledger is the only writer of ``point_transactions``.  A member's balance
is never stored as a counter: it is the ``balance_after`` of the member's
latest row (highest ``sequence``), and each row satisfies

    balance_after[n] = balance_after[n-1] + amount[n],   balance_after[n] >= 0

Write protocol for one append (all inside one DB transaction):

  1. :func:`~tally.database.engine.lock_member` — per-member write lock
  2. read the latest row for the member (prior balance, prior sequence)
  3. reject if the new balance would be negative
  4. insert the row with ``sequence = prior + 1``

The ``(member_id, sequence)`` unique constraint backs up the lock.  If two
writers ever slip past it, the loser's insert fails and :meth:`LedgerStore.append`
retries the whole transaction a bounded number of times.

Corrections are always new offsetting rows; nothing here updates or deletes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.engine import get_session, lock_member, lock_members
from tally.database.models import (
    AdminActionType,
    PointSource,
    PointTransaction,
    TransactionType,
)
from tally.engine.clock import Clock, utcnow
from tally.engine.outcomes import InsufficientBalance
from tally.services.audit_service import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.services.suspension_service import SuspensionManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
MAX_PAGE_SIZE = 100


def _is_sequence_conflict(exc: IntegrityError) -> bool:
    msg = str(exc.orig)
    return (
        "uq_point_tx_member_seq" in msg
        or "point_transactions.member_id, point_transactions.sequence" in msg
    )


def _is_purchase_conflict(exc: IntegrityError) -> bool:
    msg = str(exc.orig)
    return "uq_point_tx_purchase_ref" in msg or "point_transactions.reference_id" in msg


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------
@dataclass
class LedgerPage:
    """One page of a member's history, newest first."""

    member_id: str
    items: list[PointTransaction]
    page: int
    page_size: int
    total: int
    total_credits: int
    total_debits: int
    current_balance: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass
class ChainReport:
    """Result of replaying a member's ledger from the first row."""

    member_id: str
    rows_checked: int = 0
    final_balance: int = 0
    ok: bool = True
    first_break_sequence: int | None = None
    problems: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# LedgerStore
# ---------------------------------------------------------------------------
class LedgerStore:
    """Append-only ledger over ``point_transactions``."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock = utcnow,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        suspensions: SuspensionManager | None = None,
    ) -> None:
        self._engine = engine
        self._suspensions = suspensions
        self._clock = clock
        self._max_attempts = max_attempts

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def append_in_session(
        self,
        session: Session,
        member_id: str,
        amount: int,
        source: PointSource | str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PointTransaction:
        """Append one row inside the caller's transaction.

        Takes the member lock (a no-op re-bump if the caller already holds
        it), so callers can combine the append with their own writes and
        have both commit or roll back together.
        """
        if amount == 0:
            raise ValueError("Ledger amount must be non-zero")
        source = PointSource(source)

        lock_member(session, member_id)
        last = session.scalars(
            select(PointTransaction)
            .where(PointTransaction.member_id == member_id)
            .order_by(PointTransaction.sequence.desc())
            .limit(1)
        ).first()
        prior_balance = last.balance_after if last is not None else 0
        next_sequence = last.sequence + 1 if last is not None else 1

        new_balance = prior_balance + amount
        if new_balance < 0:
            raise InsufficientBalance(
                "Insufficient points balance",
                balance=prior_balance,
                requested=-amount,
            )

        tx = PointTransaction(
            member_id=member_id,
            sequence=next_sequence,
            amount=amount,
            transaction_type=(
                TransactionType.CREDIT.value if amount > 0 else TransactionType.DEBIT.value
            ),
            source=source.value,
            balance_after=new_balance,
            reference_type=reference_type,
            reference_id=reference_id,
            metadata_=metadata,
            created_at=self._clock(),
        )
        session.add(tx)
        session.flush()
        logger.debug(
            "Ledger append member=%s seq=%d amount=%+d balance=%d source=%s",
            member_id, next_sequence, amount, new_balance, source.value,
        )
        return tx

    def append(
        self,
        member_id: str,
        amount: int,
        source: PointSource | str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PointTransaction:
        """Append one row in its own transaction, retrying sequence conflicts."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                with get_session(self._engine) as session:
                    return self.append_in_session(
                        session, member_id, amount, source,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        metadata=metadata,
                    )
            except IntegrityError as exc:
                if not _is_sequence_conflict(exc) or attempt >= self._max_attempts:
                    raise
                logger.warning(
                    "Ledger sequence conflict for member %s (attempt %d/%d), retrying",
                    member_id, attempt, self._max_attempts,
                )
        raise AssertionError("unreachable")

    def adjust(
        self,
        member_id: str,
        amount: int,
        reason: str,
        admin_id: str,
    ) -> PointTransaction:
        """Manual operator correction, recorded in admin_log."""
        with get_session(self._engine) as session:
            before = self.current_balance_in_session(session, member_id)
            tx = self.append_in_session(
                session, member_id, amount, PointSource.ADJUSTMENT,
                reference_type="admin_adjustment",
                metadata={"reason": reason, "admin_id": str(admin_id)},
            )
            log_admin_action(
                session,
                actor_id=admin_id,
                action_type=AdminActionType.ADJUST.value,
                target_table="point_transactions",
                target_id=str(tx.id),
                before={"member_id": member_id, "balance": before},
                after=row_to_dict(tx),
                reason=reason,
                timestamp=self._clock(),
            )
        logger.info(
            "Admin %s adjusted member %s by %+d (%s)", admin_id, member_id, amount, reason,
        )
        return tx

    def transfer(
        self,
        from_member_id: str,
        to_member_id: str,
        points: int,
        reason: str | None = None,
    ) -> tuple[PointTransaction, PointTransaction]:
        """Move *points* between two members atomically.

        Both members are locked in sorted id order so two opposite transfers
        cannot deadlock.  A suspended sender is refused under the lock.
        Returns ``(debit, credit)``.
        """
        if points <= 0:
            raise ValueError("Transfer amount must be positive")
        if from_member_id == to_member_id:
            raise ValueError("Cannot transfer points to yourself")

        transfer_id = str(uuid.uuid4())
        with get_session(self._engine) as session:
            lock_members(session, from_member_id, to_member_id)
            if self._suspensions is not None:
                self._suspensions.require_active_in_session(session, from_member_id)
            debit = self.append_in_session(
                session, from_member_id, -points, PointSource.TRANSFER,
                reference_type="transfer",
                reference_id=transfer_id,
                metadata={"to_member_id": to_member_id, "reason": reason},
            )
            credit = self.append_in_session(
                session, to_member_id, points, PointSource.TRANSFER,
                reference_type="transfer",
                reference_id=transfer_id,
                metadata={"from_member_id": from_member_id, "reason": reason},
            )
        logger.info(
            "Transferred %d points %s → %s (%s)",
            points, from_member_id, to_member_id, transfer_id,
        )
        return debit, credit

    def credit_from_verified_purchase(
        self,
        member_id: str,
        points_amount: int,
        purchase_reference: str,
    ) -> tuple[PointTransaction, bool]:
        """Credit a purchase the payment collaborator has already verified.

        Idempotent per *purchase_reference*.  Returns ``(transaction,
        was_duplicate)``; a replayed reference returns the original row.
        """
        if points_amount <= 0:
            raise ValueError("Purchase credit must be positive")

        with get_session(self._engine) as session:
            lock_member(session, member_id)
            existing = self._purchase_row(session, purchase_reference)
            if existing is not None:
                return existing, True
            try:
                # SAVEPOINT: the partial unique index decides concurrent replays
                with session.begin_nested():
                    tx = self.append_in_session(
                        session, member_id, points_amount, PointSource.PURCHASE,
                        reference_type="purchase",
                        reference_id=purchase_reference,
                    )
            except IntegrityError as exc:
                if not _is_purchase_conflict(exc):
                    raise
                existing = self._purchase_row(session, purchase_reference)
                if existing is None:
                    raise
                return existing, True

        logger.info(
            "Credited %d points to %s for purchase %s",
            points_amount, member_id, purchase_reference,
        )
        return tx, False

    @staticmethod
    def _purchase_row(session: Session, reference: str) -> PointTransaction | None:
        existing = session.scalar(
            select(PointTransaction).where(
                PointTransaction.source == PointSource.PURCHASE.value,
                PointTransaction.reference_id == reference,
            )
        )
        if existing is not None:
            logger.info("Purchase %s already credited (tx %d)", reference, existing.id)
        return existing

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    @staticmethod
    def current_balance_in_session(session: Session, member_id: str) -> int:
        balance = session.scalar(
            select(PointTransaction.balance_after)
            .where(PointTransaction.member_id == member_id)
            .order_by(PointTransaction.sequence.desc())
            .limit(1)
        )
        return balance or 0

    def current_balance(self, member_id: str) -> int:
        """``balance_after`` of the member's latest row, or 0."""
        with Session(self._engine) as session:
            return self.current_balance_in_session(session, member_id)

    def history(
        self,
        member_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
        transaction_type: str | None = None,
        source: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> LedgerPage:
        """Filtered, paginated history with credit/debit totals."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        filters = [PointTransaction.member_id == member_id]
        if transaction_type:
            filters.append(PointTransaction.transaction_type == TransactionType(transaction_type).value)
        if source:
            filters.append(PointTransaction.source == PointSource(source).value)
        if start is not None:
            filters.append(PointTransaction.created_at >= start)
        if end is not None:
            filters.append(PointTransaction.created_at <= end)

        with Session(self._engine) as session:
            items = session.scalars(
                select(PointTransaction)
                .where(*filters)
                .order_by(PointTransaction.sequence.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            total = session.scalar(
                select(func.count()).select_from(PointTransaction).where(*filters)
            ) or 0
            credits = session.scalar(
                select(func.coalesce(func.sum(PointTransaction.amount), 0))
                .where(*filters, PointTransaction.amount > 0)
            ) or 0
            debits = session.scalar(
                select(func.coalesce(func.sum(PointTransaction.amount), 0))
                .where(*filters, PointTransaction.amount < 0)
            ) or 0
            balance = self.current_balance_in_session(session, member_id)
            for row in items:
                session.expunge(row)

        return LedgerPage(
            member_id=member_id,
            items=list(items),
            page=page,
            page_size=page_size,
            total=int(total),
            total_credits=int(credits),
            total_debits=abs(int(debits)),
            current_balance=balance,
        )

    def verify_chain(self, member_id: str) -> ChainReport:
        """Replay every row in sequence order and report the first break."""
        report = ChainReport(member_id=member_id)
        with Session(self._engine) as session:
            rows = session.scalars(
                select(PointTransaction)
                .where(PointTransaction.member_id == member_id)
                .order_by(PointTransaction.sequence)
            ).all()

            expected_balance = 0
            expected_sequence = 1
            for row in rows:
                report.rows_checked += 1
                expected_balance += row.amount
                if row.sequence != expected_sequence:
                    report.problems.append(
                        f"seq {row.sequence}: expected sequence {expected_sequence}"
                    )
                if row.balance_after != expected_balance:
                    report.problems.append(
                        f"seq {row.sequence}: balance_after {row.balance_after} "
                        f"!= running total {expected_balance}"
                    )
                if row.balance_after < 0:
                    report.problems.append(f"seq {row.sequence}: negative balance")
                if report.problems and report.first_break_sequence is None:
                    report.first_break_sequence = row.sequence
                expected_sequence = row.sequence + 1
                expected_balance = row.balance_after

        report.final_balance = expected_balance
        report.ok = not report.problems
        if not report.ok:
            logger.error(
                "Ledger chain broken for member %s at seq %s: %s",
                member_id, report.first_break_sequence, report.problems[0],
            )
        return report
