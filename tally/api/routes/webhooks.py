"""
tally.api.routes.webhooks — Verified purchase credits
=======================================================

The payment collaborator calls this endpoint after it has verified a
purchase.  The ledger trusts the amount it is given, so the trust boundary
is here: the raw body must carry a valid HMAC-SHA256 signature made with
``PAYMENT_WEBHOOK_SECRET``.  Replays of the same purchase reference are
answered with the original credit.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError

from tally.api.deps import get_services
from tally.database.engine import run_db
from tally.services.container import Services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Tally-Signature"


class PurchaseNotification(BaseModel):
    member_id: str = Field(min_length=1, max_length=36)
    points: int = Field(gt=0)
    reference: str = Field(min_length=1, max_length=128)


def get_webhook_secret() -> str:
    secret = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    if not secret:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Webhook not configured")
    return secret


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@router.post("/purchases")
async def purchase_webhook(
    request: Request,
    x_tally_signature: str | None = Header(None),
    secret: str = Depends(get_webhook_secret),
    services: Services = Depends(get_services),
):
    body = await request.body()
    expected = sign_payload(secret, body)
    if not x_tally_signature or not hmac.compare_digest(expected, x_tally_signature):
        logger.warning("Rejected purchase webhook with bad signature from %s",
                       request.client.host if request.client else "unknown")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        notification = PurchaseNotification.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            exc.errors(include_url=False, include_context=False),
        )

    tx, duplicate = await run_db(
        services.ledger.credit_from_verified_purchase,
        notification.member_id,
        notification.points,
        notification.reference,
    )
    return {
        "transaction_id": tx.id,
        "member_id": tx.member_id,
        "balance_after": tx.balance_after,
        "duplicate": duplicate,
    }
