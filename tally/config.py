"""
tally.config — YAML Configuration Loader
=========================================

This module reads ``config.yaml`` for **infrastructure-only** settings
(service identity, API port, disbursement provider endpoint).  All tuning
values (fraud thresholds, heuristic ceilings, redemption bands) live in the
``settings`` database table and are read through
:class:`~tally.engine.cache.ConfigCache`.

Secrets (``DATABASE_URL``, ``JWT_SECRET``, ``DISBURSEMENT_API_KEY``,
``PAYMENT_WEBHOOK_SECRET``) never go in the YAML file; they come from the
environment (``.env`` via python-dotenv).

Usage::

    from tally.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.service_name)      # "Tally"
    print(cfg.disbursement_base_url)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure/identity only.
# Tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # HTTP API
    api_port: int

    # Disbursement collaborator (airtime / data / cash payouts)
    disbursement_base_url: str
    disbursement_timeout_seconds: float = 15.0

    # Reconciliation sweep cadence for the worker
    reconcile_interval_seconds: int = 300
    reconcile_older_than_minutes: int = 10


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return TallyConfig(
        service_name=raw["service_name"],
        api_port=int(raw["api_port"]),
        disbursement_base_url=str(raw["disbursement_base_url"]).rstrip("/"),
        disbursement_timeout_seconds=float(
            raw.get("disbursement_timeout_seconds", 15.0)
        ),
        reconcile_interval_seconds=int(raw.get("reconcile_interval_seconds", 300)),
        reconcile_older_than_minutes=int(raw.get("reconcile_older_than_minutes", 10)),
    )
