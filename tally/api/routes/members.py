"""
tally.api.routes.members — Member balance, history, redemptions & transfers
=============================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from tally.api.deps import get_action_context, get_current_member, get_services
from tally.database.models import PointSource, PointTransaction, ProductType, Redemption, TransactionType
from tally.services.action_service import ActionContext
from tally.services.container import Services

router = APIRouter(prefix="/members/me", tags=["members"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RedemptionRequest(BaseModel):
    product_type: ProductType
    points: int = Field(gt=0)
    idempotency_key: str = Field(min_length=8, max_length=128)
    destination: str = Field(min_length=3, max_length=100)


class TransferRequest(BaseModel):
    to_member_id: str = Field(min_length=1, max_length=36)
    points: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=200)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def transaction_dict(tx: PointTransaction) -> dict:
    return {
        "id": tx.id,
        "sequence": tx.sequence,
        "amount": tx.amount,
        "type": tx.transaction_type,
        "source": tx.source,
        "balance_after": tx.balance_after,
        "reference_type": tx.reference_type,
        "reference_id": tx.reference_id,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


def redemption_dict(r: Redemption) -> dict:
    return {
        "id": r.id,
        "member_id": r.member_id,
        "product_type": r.product_type,
        "destination": r.destination,
        "points": r.points_debited,
        "external_value": str(r.external_value),
        "status": r.status,
        "idempotency_key": r.idempotency_key,
        "provider_reference": r.provider_reference,
        "error_message": r.error_message,
        "refunded": r.refund_transaction_id is not None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
    }


# ---------------------------------------------------------------------------
# Balance & history
# ---------------------------------------------------------------------------
@router.get("/balance")
def get_balance(
    member_id: str = Depends(get_current_member),
    services: Services = Depends(get_services),
):
    return {"member_id": member_id, "balance": services.ledger.current_balance(member_id)}


@router.get("/transactions")
def get_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    type: TransactionType | None = Query(None),
    source: PointSource | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    member_id: str = Depends(get_current_member),
    services: Services = Depends(get_services),
):
    """Paginated point history, newest first."""
    result = services.ledger.history(
        member_id,
        page=page,
        page_size=page_size,
        transaction_type=type,
        source=source,
        start=start,
        end=end,
    )
    return {
        "items": [transaction_dict(tx) for tx in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "has_more": result.has_more,
        "total_credits": result.total_credits,
        "total_debits": result.total_debits,
        "current_balance": result.current_balance,
    }


# ---------------------------------------------------------------------------
# Redemptions
# ---------------------------------------------------------------------------
@router.post("/redemptions", status_code=status.HTTP_201_CREATED)
def create_redemption(
    body: RedemptionRequest,
    ctx: ActionContext = Depends(get_action_context),
    services: Services = Depends(get_services),
):
    """Redeem points.  Replays with the same idempotency key return the
    stored redemption unchanged."""
    redemption = services.redemptions.redeem(
        ctx.member_id,
        body.product_type,
        body.points,
        body.idempotency_key,
        body.destination,
    )
    services.audit.record(
        member_id=ctx.member_id,
        action="redemption.requested",
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        resource_type="redemption",
        resource_id=str(redemption.id),
        details={"points": body.points, "status": redemption.status},
    )
    return redemption_dict(redemption)


@router.get("/redemptions")
def list_redemptions(
    limit: int = Query(50, ge=1, le=200),
    member_id: str = Depends(get_current_member),
    services: Services = Depends(get_services),
):
    rows = services.redemptions.list_for_member(member_id, limit=limit)
    return {"redemptions": [redemption_dict(r) for r in rows]}


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------
@router.post("/transfers", status_code=status.HTTP_201_CREATED)
def create_transfer(
    body: TransferRequest,
    ctx: ActionContext = Depends(get_action_context),
    services: Services = Depends(get_services),
):
    try:
        debit, credit = services.ledger.transfer(
            ctx.member_id, body.to_member_id, body.points, body.reason,
        )
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    services.audit.record(
        member_id=ctx.member_id,
        action="transfer.sent",
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        resource_type="transfer",
        resource_id=debit.reference_id,
        details={"to_member_id": body.to_member_id, "points": body.points},
    )
    return {"debit": transaction_dict(debit), "credit": transaction_dict(credit)}
