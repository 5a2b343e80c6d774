"""
tally.api.routes.admin — Operator endpoints
=============================================

Suspend/restore, manual adjustments, fraud inspection, ledger verification,
redemption reconciliation and refunds, tuning settings and the admin audit
trail.  Every mutation is attributed to the admin's JWT ``sub``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from tally.api.deps import get_current_admin, get_services
from tally.api.routes.members import redemption_dict, transaction_dict
from tally.database.models import AccountSuspension, FraudDetectionLog
from tally.engine.fraud import evidence_from_dict, evidence_to_dict
from tally.services import settings_service
from tally.services.audit_service import get_admin_log
from tally.services.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SuspendRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=500)
    duration_days: float | None = Field(default=None, gt=0)
    notes: str | None = None


class RestoreRequest(BaseModel):
    reason: str | None = None


class AdjustRequest(BaseModel):
    amount: int
    reason: str = Field(min_length=3, max_length=500)


class RefundRequest(BaseModel):
    reason: str | None = None


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _suspension_dict(s: AccountSuspension) -> dict:
    return {
        "id": s.id,
        "member_id": s.member_id,
        "reason": s.reason,
        "suspended_by": s.suspended_by,
        "suspended_at": s.suspended_at.isoformat() if s.suspended_at else None,
        "expires_at": s.expires_at.isoformat() if s.expires_at else None,
        "is_active": s.is_active,
        "lifted_at": s.lifted_at.isoformat() if s.lifted_at else None,
        "lifted_by": s.lifted_by,
        "notes": s.notes,
    }


def _detection_dict(d: FraudDetectionLog) -> dict:
    raw = (d.metadata_ or {}).get("evidence", [])
    return {
        "id": d.id,
        "member_id": d.member_id,
        "action_type": d.action_type,
        "reason": d.reason,
        "severity": d.severity,
        "blocked": d.blocked,
        "score": d.score,
        "evidence": [evidence_to_dict(evidence_from_dict(e)) for e in raw],
        "ip_address": d.ip_address,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }


# ---------------------------------------------------------------------------
# Suspensions
# ---------------------------------------------------------------------------
@router.post("/members/{member_id}/suspend", status_code=status.HTTP_201_CREATED)
def suspend_member(
    member_id: str,
    body: SuspendRequest,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    row = services.suspensions.suspend(
        member_id,
        body.reason,
        suspended_by=str(admin["sub"]),
        duration_days=body.duration_days,
        notes=body.notes,
    )
    return _suspension_dict(row)


@router.post("/members/{member_id}/restore")
def restore_member(
    member_id: str,
    body: RestoreRequest,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    lifted = services.suspensions.restore(member_id, str(admin["sub"]), body.reason)
    return {"member_id": member_id, "lifted": lifted}


@router.get("/members/{member_id}/suspensions")
def member_suspensions(
    member_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return {
        "suspended": services.suspensions.is_suspended(member_id),
        "history": [_suspension_dict(s) for s in services.suspensions.history(member_id)],
    }


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
@router.post("/members/{member_id}/adjust", status_code=status.HTTP_201_CREATED)
def adjust_balance(
    member_id: str,
    body: AdjustRequest,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    if body.amount == 0:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Adjustment must be non-zero")
    tx = services.ledger.adjust(member_id, body.amount, body.reason, str(admin["sub"]))
    return transaction_dict(tx)


@router.get("/members/{member_id}/ledger/verify")
def verify_ledger(
    member_id: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    report = services.ledger.verify_chain(member_id)
    return {
        "member_id": report.member_id,
        "ok": report.ok,
        "rows_checked": report.rows_checked,
        "final_balance": report.final_balance,
        "first_break_sequence": report.first_break_sequence,
        "problems": report.problems,
    }


# ---------------------------------------------------------------------------
# Fraud
# ---------------------------------------------------------------------------
@router.get("/members/{member_id}/fraud-score")
def fraud_score(
    member_id: str,
    ip: str | None = Query(None),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    """Live trailing-hour screen plus the 7-day severity total."""
    assessment = services.fraud.score(member_id, ip)
    return {
        "member_id": member_id,
        **assessment.to_dict(),
        "severity_score_7d": services.fraud.severity_score(member_id),
    }


@router.get("/fraud/detections")
def fraud_detections(
    member_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    rows = services.fraud.recent_detections(member_id, limit=limit)
    return {"detections": [_detection_dict(d) for d in rows]}


# ---------------------------------------------------------------------------
# Redemptions
# ---------------------------------------------------------------------------
@router.post("/redemptions/reconcile")
def reconcile_redemptions(
    older_than_minutes: float = Query(10, ge=0),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    settled = services.redemptions.reconcile_pending(older_than_minutes)
    return {"settled": [redemption_dict(r) for r in settled]}


@router.post("/redemptions/{redemption_id}/refund", status_code=status.HTTP_201_CREATED)
def refund_redemption(
    redemption_id: int,
    body: RefundRequest,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    tx = services.redemptions.refund(redemption_id, str(admin["sub"]), body.reason)
    return transaction_dict(tx)


# ---------------------------------------------------------------------------
# Settings & audit
# ---------------------------------------------------------------------------
@router.get("/settings")
def list_settings(
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return {"settings": settings_service.get_all_settings(services.engine)}


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    for item in body:
        settings_service.update_setting(
            services.engine,
            services.cache,
            key=item.key,
            value=item.value,
            actor_id=str(admin["sub"]),
            category=item.category,
            description=item.description,
        )
    return {"updated": len(body)}


@router.get("/audit")
def admin_audit_log(
    limit: int = Query(50, ge=1, le=200),
    target_table: str | None = Query(None),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    rows = get_admin_log(services.engine, limit=limit, target_table=target_table)
    return {
        "entries": [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ],
    }
