"""
tally.services.container — Per-Process Service Bundle
=======================================================

Services are plain objects built once per process with their storage,
cache, clock and collaborators injected, then passed by reference to
whoever handles requests (FastAPI dependencies, the worker).  Nothing here
is module-level mutable state.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tally.engine.cache import ConfigCache
from tally.engine.clock import Clock, utcnow
from tally.engine.tokens import ActionTokenSigner
from tally.services.action_service import ActionService
from tally.services.audit_service import AuditLogger
from tally.services.disbursement import DisbursementClient, HttpDisbursementClient
from tally.services.fraud_service import FraudDetector
from tally.services.ledger_service import LedgerStore
from tally.services.rate_limit_service import ActionRateLimiter
from tally.services.redemption_service import RedemptionProcessor
from tally.services.suspension_service import SuspensionManager
from tally.services.uniqueness_service import UniquenessGuard

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.config import TallyConfig

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: Engine
    cache: ConfigCache
    ledger: LedgerStore
    guard: UniquenessGuard
    fraud: FraudDetector
    suspensions: SuspensionManager
    audit: AuditLogger
    redemptions: RedemptionProcessor
    actions: ActionService
    limiter: ActionRateLimiter


def build_disbursement_client(cfg: TallyConfig) -> HttpDisbursementClient:
    api_key = os.getenv("DISBURSEMENT_API_KEY", "")
    if not api_key:
        logger.warning("DISBURSEMENT_API_KEY is not set; payouts will be rejected by the provider")
    return HttpDisbursementClient(
        cfg.disbursement_base_url,
        api_key,
        timeout=cfg.disbursement_timeout_seconds,
    )


def build_services(
    engine: Engine,
    *,
    disbursement: DisbursementClient,
    cache: ConfigCache | None = None,
    clock: Clock = utcnow,
    token_secret: str | None = None,
) -> Services:
    """Wire every service against *engine*.

    *cache* is loaded here when not supplied.  *token_secret* defaults to
    ``JWT_SECRET`` from the environment.
    """
    if cache is None:
        cache = ConfigCache(engine)
        cache.load_all()

    secret = token_secret or os.getenv("JWT_SECRET", "")
    suspensions = SuspensionManager(engine, clock=clock)
    limiter = ActionRateLimiter(cache, clock=clock)
    ledger = LedgerStore(engine, clock=clock, suspensions=suspensions)
    guard = UniquenessGuard(engine, clock=clock)
    fraud = FraudDetector(engine, cache, clock=clock)
    audit = AuditLogger(engine, clock=clock)
    redemptions = RedemptionProcessor(
        engine, cache, ledger, suspensions, disbursement,
        limiter=limiter,
        clock=clock,
    )
    actions = ActionService(
        engine,
        cache,
        ledger=ledger,
        guard=guard,
        fraud=fraud,
        suspensions=suspensions,
        audit=audit,
        tokens=ActionTokenSigner(secret, clock=clock),
        limiter=limiter,
        clock=clock,
    )
    logger.info("Services built")
    return Services(
        engine=engine,
        cache=cache,
        ledger=ledger,
        guard=guard,
        fraud=fraud,
        suspensions=suspensions,
        audit=audit,
        redemptions=redemptions,
        actions=actions,
        limiter=limiter,
    )
