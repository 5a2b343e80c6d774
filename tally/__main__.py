"""
tally.__main__ — Entry point for ``python -m tally``
=====================================================

Runs the redemption reconciliation worker:

1. Load .env (secrets).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine, ensure tables exist and seed settings.
4. Build the service bundle (warms the ConfigCache).
5. Every ``reconcile_interval_seconds``, settle stale ``pending``
   redemptions against the disbursement provider.

Run with::

    python -m tally
"""

from __future__ import annotations

import logging
import threading

from dotenv import load_dotenv

from tally.config import load_config
from tally.database.engine import create_db_engine, init_db
from tally.services.container import build_disbursement_client, build_services

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tally")


def main() -> None:
    """Bootstrap and run the reconciliation worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration.
    cfg = load_config()
    logger.info("Config loaded — Service: %s", cfg.service_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Services.
    disbursement = build_disbursement_client(cfg)
    services = build_services(engine, disbursement=disbursement)

    # 5. Sweep loop (blocks until Ctrl+C).
    stop = threading.Event()
    logger.info(
        "Reconciliation worker started — every %ds, rows older than %d min",
        cfg.reconcile_interval_seconds, cfg.reconcile_older_than_minutes,
    )
    try:
        while not stop.is_set():
            try:
                services.redemptions.reconcile_pending(cfg.reconcile_older_than_minutes)
            except Exception:
                logger.exception("Reconciliation sweep failed")
            stop.wait(cfg.reconcile_interval_seconds)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")
    finally:
        disbursement.close()


if __name__ == "__main__":
    main()
