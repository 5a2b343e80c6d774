"""
tally.services.fraud_service — Fraud Detector (history reads & evidence)
==========================================================================

Reads a member's trailing-hour history, hands it to the pure scorer in
:mod:`tally.engine.fraud`, and persists evidence when an orchestrating
handler decides a screen was suspicious.

Scoring takes no locks and writes nothing.  The only writer is
:meth:`FraudDetector.record_detection`.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import (
    EARNING_SOURCES,
    AuditLog,
    FraudDetectionLog,
    PointTransaction,
    Severity,
)
from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.fraud import (
    SEVERITY_POINTS,
    TIMING_SAMPLE_SIZE,
    WINDOW_SECONDS,
    FraudAssessment,
    FraudSignals,
    FraudThresholds,
    assess,
)
from tally.services.audit_service import fingerprint

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


class FraudDetector:
    """Trailing-window fraud screening for one member at a time."""

    def __init__(self, engine: Engine, cache: ConfigCache, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._cache = cache
        self._clock = clock

    # -------------------------------------------------------------------
    # Scoring (read-only)
    # -------------------------------------------------------------------
    def collect_signals(
        self, session: Session, member_id: str, ip_address: str | None,
    ) -> FraudSignals:
        since = self._clock() - timedelta(seconds=WINDOW_SECONDS)

        points_earned = session.scalar(
            select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
                PointTransaction.member_id == member_id,
                PointTransaction.amount > 0,
                PointTransaction.source.in_(sorted(EARNING_SOURCES)),
                PointTransaction.created_at >= since,
            )
        ) or 0

        ip_count = 0
        if ip_address:
            ip_count = session.scalar(
                select(func.count()).select_from(AuditLog).where(
                    AuditLog.ip_address == ip_address,
                    AuditLog.created_at >= since,
                )
            ) or 0

        recent = session.scalars(
            select(AuditLog.created_at)
            .where(AuditLog.member_id == member_id, AuditLog.created_at >= since)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(TIMING_SAMPLE_SIZE)
        ).all()

        prior = session.scalar(
            select(func.count()).select_from(FraudDetectionLog).where(
                FraudDetectionLog.member_id == member_id,
                FraudDetectionLog.created_at >= since,
            )
        ) or 0

        return FraudSignals(
            points_earned=int(points_earned),
            ip_address=ip_address,
            ip_action_count=int(ip_count),
            recent_action_times=tuple(as_utc(t) for t in recent),
            prior_detections=int(prior),
        )

    def score(self, member_id: str, ip_address: str | None = None) -> FraudAssessment:
        """Score the member's last hour.  Advisory; writes nothing."""
        with Session(self._engine) as session:
            signals = self.collect_signals(session, member_id, ip_address)
        assessment = assess(signals, FraudThresholds.from_cache(self._cache))
        if assessment.suspicious:
            logger.warning(
                "Suspicious activity for member %s (score=%d): %s",
                member_id, assessment.score, ", ".join(assessment.reasons),
            )
        return assessment

    # -------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------
    def record_detection(
        self,
        member_id: str,
        action_type: str,
        assessment: FraudAssessment,
        *,
        severity: Severity | str = Severity.HIGH,
        blocked: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> FraudDetectionLog:
        row = FraudDetectionLog(
            member_id=member_id,
            action_type=str(action_type),
            reason="; ".join(assessment.reasons) or "manual review",
            severity=Severity(severity).value,
            blocked=blocked,
            score=assessment.score,
            metadata_={"evidence": assessment.evidence_dicts()},
            ip_address=ip_address,
            user_agent=user_agent,
            fingerprint=fingerprint(ip_address, user_agent),
            created_at=self._clock(),
        )
        with get_session(self._engine) as session:
            session.add(row)
        logger.warning(
            "Fraud detection logged: member=%s action=%s severity=%s blocked=%s score=%d",
            member_id, action_type, row.severity, blocked, assessment.score,
        )
        return row

    def severity_score(self, member_id: str, days: int = 7) -> int:
        """Sum of severity points over the member's detections in the last *days*."""
        since = self._clock() - timedelta(days=days)
        with Session(self._engine) as session:
            severities = session.scalars(
                select(FraudDetectionLog.severity).where(
                    FraudDetectionLog.member_id == member_id,
                    FraudDetectionLog.created_at >= since,
                )
            ).all()
        return sum(SEVERITY_POINTS.get(s, 0) for s in severities)

    def recent_detections(
        self, member_id: str | None = None, limit: int = 50,
    ) -> list[FraudDetectionLog]:
        with Session(self._engine) as session:
            stmt = select(FraudDetectionLog).order_by(
                FraudDetectionLog.created_at.desc(), FraudDetectionLog.id.desc(),
            )
            if member_id is not None:
                stmt = stmt.where(FraudDetectionLog.member_id == member_id)
            rows = session.scalars(stmt.limit(limit)).all()
            for r in rows:
                session.expunge(r)
            return list(rows)
