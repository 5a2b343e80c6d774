"""
Tally — Integrity & Rewards Ledger for a Membership Platform
=============================================================
Turns member actions into point credits exactly once, keeps an append-only
balance history, scores abusive behaviour, and enforces account suspension.
Everything else in the membership platform (content, elections, events) is
plain CRUD and lives elsewhere.

Package layout::

    tally/
    ├── config.py          # YAML → typed Python config
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session, member lock, async bridge
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default tuning settings
    ├── engine/
    │   ├── clock.py       # UTC helpers + injectable clock
    │   ├── outcomes.py    # Typed rejections and outcomes
    │   ├── fraud.py       # Pure fraud scoring + evidence union
    │   ├── geofence.py    # Check-in window, haversine, quiz timing
    │   ├── tokens.py      # Signed action tokens (quiz start → submit)
    │   └── cache.py       # In-memory settings cache
    ├── services/
    │   ├── ledger_service.py      # Append-only point ledger
    │   ├── uniqueness_service.py  # Exactly-once action reservation
    │   ├── fraud_service.py       # History reads + evidence persistence
    │   ├── suspension_service.py  # Suspension lifecycle
    │   ├── redemption_service.py  # Points → airtime/data/cash payouts
    │   ├── disbursement.py        # External payout collaborator (httpx)
    │   ├── audit_service.py       # Audit log writer + fingerprints
    │   ├── action_service.py      # Quiz/task/vote/check-in handlers
    │   └── container.py           # Per-process service bundle
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, services, JWT auth
        └── routes/        # Member, admin and webhook endpoints
"""

__version__ = "0.1.0"
