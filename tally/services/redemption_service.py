"""
tally.services.redemption_service — Points → Airtime / Data / Cash
====================================================================

A redemption happens in two phases:

  1. **Debit** (one DB transaction): member lock → suspension gate →
     idempotency-key re-check → rate limit → ledger debit (source ``redemption``) →
     ``pending`` redemption row.
  2. **Disburse** (no DB transaction open): call the provider, then record
     the outcome — ``completed`` with the provider reference, ``failed``
     with the error (the debit stays; an operator may :meth:`refund`), or
     still ``pending`` on a timeout, to be settled by
     :meth:`RedemptionProcessor.reconcile_pending`.

A retried request with the same idempotency key returns the stored row
unchanged, so at most one debit exists per key.  A key already bound to
another member is refused with :class:`IdempotencyKeyConflict`.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.engine import get_session, lock_member
from tally.database.models import (
    AdminActionType,
    PointSource,
    ProductType,
    Redemption,
    RedemptionStatus,
)
from tally.engine.clock import Clock, utcnow
from tally.engine.outcomes import (
    AccountSuspended,
    IdempotencyKeyConflict,
    PointsOutOfRange,
    RedemptionNotRefundable,
)
from tally.services.audit_service import log_admin_action, row_to_dict
from tally.services.disbursement import (
    DisbursementClient,
    DisbursementError,
    DisbursementReceipt,
    DisbursementStatus,
    DisbursementTimeout,
)
from tally.services.rate_limit_service import REDEMPTION_SCOPE

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.database.models import PointTransaction
    from tally.engine.cache import ConfigCache
    from tally.services.ledger_service import LedgerStore
    from tally.services.rate_limit_service import ActionRateLimiter
    from tally.services.suspension_service import SuspensionManager

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _owned_by(redemption: Redemption, member_id: str) -> Redemption:
    """A replayed key only returns the row to the member who created it."""
    if redemption.member_id != member_id:
        logger.warning(
            "Member %s reused idempotency key %s of member %s",
            member_id, redemption.idempotency_key, redemption.member_id,
        )
        raise IdempotencyKeyConflict("Idempotency key already used by another request")
    return redemption


class RedemptionProcessor:
    """Converts points to external value through the disbursement provider."""

    def __init__(
        self,
        engine: Engine,
        cache: ConfigCache,
        ledger: LedgerStore,
        suspensions: SuspensionManager,
        disbursement: DisbursementClient,
        *,
        limiter: ActionRateLimiter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._ledger = ledger
        self._suspensions = suspensions
        self._disbursement = disbursement
        self._limiter = limiter
        self._clock = clock

    # -------------------------------------------------------------------
    # Conversion rules
    # -------------------------------------------------------------------
    def bounds(self, product_type: ProductType | str) -> tuple[int, int]:
        product = ProductType(product_type)
        return (
            self._cache.get_int(f"redemption.{product.value}.min_points", 100),
            self._cache.get_int(f"redemption.{product.value}.max_points", 10000),
        )

    def quote(self, product_type: ProductType | str, points_amount: int) -> Decimal:
        """External value for *points_amount*, rounded to cents."""
        product = ProductType(product_type)
        per_unit = self._cache.get_float(f"redemption.{product.value}.points_per_unit", 1.0)
        if per_unit <= 0:
            raise ValueError(f"Invalid points_per_unit for {product.value}: {per_unit}")
        value = Decimal(points_amount) / Decimal(str(per_unit))
        return value.quantize(_CENT, rounding=ROUND_HALF_UP)

    # -------------------------------------------------------------------
    # Redeem
    # -------------------------------------------------------------------
    def redeem(
        self,
        member_id: str,
        product_type: ProductType | str,
        points_amount: int,
        idempotency_key: str,
        destination: str,
    ) -> Redemption:
        product = ProductType(product_type)
        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        if self._suspensions.is_suspended(member_id):
            raise AccountSuspended("Account is suspended; redemption refused")

        low, high = self.bounds(product)
        if not low <= points_amount <= high:
            raise PointsOutOfRange(
                f"{product.value} redemptions must be between {low} and {high} points",
                min_points=low,
                max_points=high,
            )

        existing = self.get_by_key(idempotency_key)
        if existing is not None:
            logger.info("Redemption %s replayed; returning stored row", idempotency_key)
            return _owned_by(existing, member_id)

        try:
            redemption, created = self._debit(
                member_id, product, points_amount, idempotency_key, destination,
            )
        except IntegrityError:
            # Same key raced in for another member's lock
            existing = self.get_by_key(idempotency_key)
            if existing is None:
                raise
            return _owned_by(existing, member_id)
        if not created:
            return redemption

        return self._disburse(redemption)

    def _debit(
        self,
        member_id: str,
        product: ProductType,
        points_amount: int,
        idempotency_key: str,
        destination: str,
    ) -> tuple[Redemption, bool]:
        with get_session(self._engine) as session:
            lock_member(session, member_id)
            self._suspensions.require_active_in_session(session, member_id)

            existing = self._by_key(session, idempotency_key)
            if existing is not None:
                return _owned_by(existing, member_id), False
            if self._limiter is not None:
                self._limiter.acquire_in_session(session, member_id, REDEMPTION_SCOPE)

            debit = self._ledger.append_in_session(
                session, member_id, -points_amount, PointSource.REDEMPTION,
                reference_type="redemption",
                reference_id=idempotency_key,
                metadata={"product_type": product.value, "destination": destination},
            )
            redemption = Redemption(
                member_id=member_id,
                product_type=product.value,
                destination=destination,
                points_debited=points_amount,
                external_value=self.quote(product, points_amount),
                status=RedemptionStatus.PENDING.value,
                idempotency_key=idempotency_key,
                debit_transaction_id=debit.id,
                created_at=self._clock(),
            )
            session.add(redemption)
            session.flush()

        logger.info(
            "Redemption %d pending: member=%s %s %d points → %s",
            redemption.id, member_id, product.value, points_amount, destination,
        )
        return redemption, True

    def _disburse(self, redemption: Redemption) -> Redemption:
        try:
            receipt = self._disbursement.submit(
                redemption.destination,
                redemption.external_value,
                redemption.idempotency_key,
                product_type=redemption.product_type,
            )
        except DisbursementTimeout:
            logger.warning(
                "Disbursement for redemption %d timed out; left pending", redemption.id,
            )
            return redemption
        except DisbursementError as exc:
            logger.exception("Disbursement for redemption %d failed", redemption.id)
            receipt = DisbursementReceipt(DisbursementStatus.FAILED, message=str(exc))
        return self._apply_receipt(redemption.id, receipt)

    def _apply_receipt(self, redemption_id: int, receipt: DisbursementReceipt) -> Redemption:
        """Record the provider's answer; only a ``pending`` row may change."""
        with get_session(self._engine) as session:
            redemption = session.get(Redemption, redemption_id, populate_existing=True)
            if redemption is None:
                raise LookupError(f"Redemption {redemption_id} vanished")
            if redemption.status != RedemptionStatus.PENDING.value:
                return redemption

            if receipt.status == DisbursementStatus.COMPLETED:
                redemption.status = RedemptionStatus.COMPLETED.value
                redemption.provider_reference = receipt.provider_reference
                redemption.completed_at = self._clock()
                logger.info(
                    "Redemption %d completed (provider ref %s)",
                    redemption_id, receipt.provider_reference,
                )
            elif receipt.status == DisbursementStatus.FAILED:
                redemption.status = RedemptionStatus.FAILED.value
                redemption.error_message = receipt.message or "Disbursement failed"
                redemption.completed_at = self._clock()
                logger.warning("Redemption %d failed: %s", redemption_id, redemption.error_message)
        return redemption

    # -------------------------------------------------------------------
    # Reconciliation & refunds
    # -------------------------------------------------------------------
    def reconcile_pending(self, older_than_minutes: float = 10) -> list[Redemption]:
        """Settle ``pending`` rows older than *older_than_minutes*.

        Rows the provider has never heard of are re-submitted under the same
        idempotency key.  Returns the rows that left ``pending``.
        """
        cutoff = self._clock() - timedelta(minutes=older_than_minutes)
        with Session(self._engine) as session:
            stale = session.scalars(
                select(Redemption)
                .where(
                    Redemption.status == RedemptionStatus.PENDING.value,
                    Redemption.created_at <= cutoff,
                )
                .order_by(Redemption.created_at)
            ).all()
            for r in stale:
                session.expunge(r)

        settled: list[Redemption] = []
        for redemption in stale:
            try:
                receipt = self._disbursement.status(redemption.idempotency_key)
                if receipt.status == DisbursementStatus.UNKNOWN:
                    logger.info("Re-submitting redemption %d", redemption.id)
                    receipt = self._disbursement.submit(
                        redemption.destination,
                        redemption.external_value,
                        redemption.idempotency_key,
                        product_type=redemption.product_type,
                    )
            except DisbursementTimeout:
                logger.warning("Status check for redemption %d timed out", redemption.id)
                continue
            except DisbursementError:
                logger.exception("Status check for redemption %d failed", redemption.id)
                continue

            updated = self._apply_receipt(redemption.id, receipt)
            if updated.status != RedemptionStatus.PENDING.value:
                settled.append(updated)

        if stale:
            logger.info("Reconciled %d/%d pending redemptions", len(settled), len(stale))
        return settled

    def refund(
        self,
        redemption_id: int,
        admin_id: str | None = None,
        reason: str | None = None,
    ) -> PointTransaction:
        """Credit back the points of a ``failed`` redemption, at most once."""
        with get_session(self._engine) as session:
            redemption = session.get(Redemption, redemption_id)
            if redemption is None:
                raise RedemptionNotRefundable(f"Redemption {redemption_id} not found")
            lock_member(session, redemption.member_id)
            session.refresh(redemption)

            if redemption.status != RedemptionStatus.FAILED.value:
                raise RedemptionNotRefundable(
                    f"Redemption {redemption_id} is {redemption.status}, not failed",
                )
            if redemption.refund_transaction_id is not None:
                raise RedemptionNotRefundable(f"Redemption {redemption_id} already refunded")

            before = row_to_dict(redemption)
            credit = self._ledger.append_in_session(
                session, redemption.member_id, redemption.points_debited, PointSource.REFUND,
                reference_type="redemption",
                reference_id=str(redemption.id),
                metadata={"reason": reason, "admin_id": admin_id},
            )
            redemption.refund_transaction_id = credit.id
            if admin_id is not None:
                log_admin_action(
                    session,
                    actor_id=admin_id,
                    action_type=AdminActionType.REFUND.value,
                    target_table="redemptions",
                    target_id=str(redemption.id),
                    before=before,
                    after=row_to_dict(redemption),
                    reason=reason,
                    timestamp=self._clock(),
                )

        logger.info(
            "Refunded %d points for redemption %d", redemption.points_debited, redemption_id,
        )
        return credit

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    @staticmethod
    def _by_key(session: Session, idempotency_key: str) -> Redemption | None:
        return session.scalar(
            select(Redemption).where(Redemption.idempotency_key == idempotency_key)
        )

    def get_by_key(self, idempotency_key: str) -> Redemption | None:
        with Session(self._engine, expire_on_commit=False) as session:
            row = self._by_key(session, idempotency_key)
            if row is not None:
                session.expunge(row)
            return row

    def get(self, redemption_id: int) -> Redemption | None:
        with Session(self._engine) as session:
            row = session.get(Redemption, redemption_id)
            if row is not None:
                session.expunge(row)
            return row

    def list_for_member(self, member_id: str, limit: int = 50) -> list[Redemption]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(Redemption)
                .where(Redemption.member_id == member_id)
                .order_by(Redemption.created_at.desc(), Redemption.id.desc())
                .limit(limit)
            ).all()
            for r in rows:
                session.expunge(r)
            return list(rows)
