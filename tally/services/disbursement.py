"""
tally.services.disbursement — External Payout Collaborator
============================================================

The redemption processor talks to the payout provider through the
:class:`DisbursementClient` protocol so tests can hand in a fake.  The
production implementation speaks JSON over HTTP with ``httpx``.

Every call carries the redemption's idempotency key; the provider is
expected to deduplicate on it, which is what makes re-submitting a stale
``pending`` redemption safe.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class DisbursementStatus(enum.StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    # Provider has no record of the key (the submit never arrived)
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class DisbursementReceipt:
    status: DisbursementStatus
    provider_reference: str | None = None
    message: str | None = None


class DisbursementError(Exception):
    """The provider refused the payout or answered with garbage."""


class DisbursementTimeout(DisbursementError):
    """No answer in time; the outcome is unknown."""


class DisbursementClient(Protocol):
    def submit(
        self,
        destination: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        product_type: str | None = None,
    ) -> DisbursementReceipt: ...

    def status(self, idempotency_key: str) -> DisbursementReceipt: ...


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------
class HttpDisbursementClient:
    """``DisbursementClient`` over the provider's REST API.

    Single client, explicit timeout, one transport-level retry for
    connection errors.  Read timeouts are *not* retried: the provider may
    already have paid out.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport or httpx.HTTPTransport(retries=1),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise DisbursementTimeout(f"Provider timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DisbursementError(f"Provider unreachable: {exc}") from exc

    @staticmethod
    def _receipt(resp: httpx.Response) -> DisbursementReceipt:
        try:
            body = resp.json()
        except ValueError as exc:
            raise DisbursementError(f"Invalid provider response ({resp.status_code})") from exc
        try:
            status = DisbursementStatus(str(body.get("status", "")).lower())
        except ValueError as exc:
            raise DisbursementError(f"Unknown provider status: {body.get('status')!r}") from exc
        return DisbursementReceipt(
            status=status,
            provider_reference=body.get("reference"),
            message=body.get("message"),
        )

    def submit(
        self,
        destination: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        product_type: str | None = None,
    ) -> DisbursementReceipt:
        resp = self._request(
            "POST",
            "/disbursements",
            json={
                "destination": destination,
                "amount": str(amount),
                "product_type": product_type,
                "idempotency_key": idempotency_key,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        if resp.status_code >= 400:
            detail = resp.text[:200]
            logger.error("Disbursement %s rejected (%d): %s", idempotency_key, resp.status_code, detail)
            raise DisbursementError(f"Provider rejected payout ({resp.status_code}): {detail}")
        return self._receipt(resp)

    def status(self, idempotency_key: str) -> DisbursementReceipt:
        resp = self._request("GET", f"/disbursements/{idempotency_key}")
        if resp.status_code == 404:
            return DisbursementReceipt(status=DisbursementStatus.UNKNOWN)
        if resp.status_code >= 400:
            raise DisbursementError(f"Status lookup failed ({resp.status_code})")
        return self._receipt(resp)
