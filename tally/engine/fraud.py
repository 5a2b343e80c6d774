"""
tally.engine.fraud — Fraud scoring (pure)
==========================================

Scores a member's trailing-hour history with four independent heuristics.
No DB I/O happens here: :class:`~tally.services.fraud_service.FraudDetector`
reads the history into :class:`FraudSignals` and hands it to :func:`assess`.

Heuristics (each adds its weight at most once):

  velocity          earned points in the window  > velocity ceiling      +30
  ip concentration  audit rows from the IP       > IP ceiling            +25
  timing            any adjacent gap among the
                    member's last 10 actions     < timing threshold      +20
  recidivism        any fraud log in the window                          +15

``suspicious`` is ``score >= suspicious_threshold`` (50 by default).  Every
weight is non-negative, so adding a signal never lowers the score.

Evidence is a closed tagged union serialized as ``{"kind": ..., ...}``;
unknown tags read back as :class:`OpaqueEvidence` instead of failing.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Union

from tally.database.models import Severity

if TYPE_CHECKING:
    from tally.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600
TIMING_SAMPLE_SIZE = 10

WEIGHTS: dict[str, int] = {
    "velocity": 30,
    "ip_concentration": 25,
    "timing": 20,
    "recidivism": 15,
}

REASONS: dict[str, str] = {
    "velocity": "excessive points earned",
    "ip_concentration": "too many actions from same IP",
    "timing": "actions completed too quickly",
    "recidivism": "previous suspicious activity detected",
}

# Weekly severity weighting of persisted detections
SEVERITY_POINTS: dict[str, int] = {
    Severity.LOW.value: 10,
    Severity.MEDIUM.value: 25,
    Severity.HIGH.value: 50,
    Severity.CRITICAL.value: 100,
}


# ---------------------------------------------------------------------------
# Evidence union
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class VelocityEvidence:
    kind: ClassVar[str] = "velocity"
    points_earned: int
    ceiling: int


@dataclass(frozen=True, slots=True)
class IpConcentrationEvidence:
    kind: ClassVar[str] = "ip_concentration"
    ip_address: str | None
    action_count: int
    ceiling: int


@dataclass(frozen=True, slots=True)
class TimingEvidence:
    kind: ClassVar[str] = "timing"
    gap_seconds: float
    threshold_seconds: float


@dataclass(frozen=True, slots=True)
class RecidivismEvidence:
    kind: ClassVar[str] = "recidivism"
    prior_detections: int


@dataclass(frozen=True, slots=True)
class OpaqueEvidence:
    """Evidence with a tag this version does not know; kept verbatim."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


Evidence = Union[
    VelocityEvidence,
    IpConcentrationEvidence,
    TimingEvidence,
    RecidivismEvidence,
    OpaqueEvidence,
]

_EVIDENCE_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (VelocityEvidence, IpConcentrationEvidence, TimingEvidence, RecidivismEvidence)
}


def evidence_to_dict(item: Evidence) -> dict[str, Any]:
    if isinstance(item, OpaqueEvidence):
        return {"kind": item.kind, **item.payload}
    return {"kind": item.kind, **asdict(item)}


def evidence_from_dict(data: dict[str, Any]) -> Evidence:
    """Rebuild an evidence object; unknown or malformed entries become opaque."""
    kind = str(data.get("kind", "unknown"))
    payload = {k: v for k, v in data.items() if k != "kind"}
    cls = _EVIDENCE_TYPES.get(kind)
    if cls is None:
        return OpaqueEvidence(kind=kind, payload=payload)
    try:
        return cls(**payload)
    except TypeError:
        logger.warning("Malformed %s evidence: %s", kind, payload)
        return OpaqueEvidence(kind=kind, payload=payload)


# ---------------------------------------------------------------------------
# Inputs & output
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FraudThresholds:
    velocity_ceiling: int = 100
    ip_ceiling: int = 20
    timing_threshold_seconds: float = 2.0
    suspicious_threshold: int = 50

    @classmethod
    def from_cache(cls, cache: ConfigCache) -> FraudThresholds:
        return cls(
            velocity_ceiling=cache.get_int("fraud.velocity_ceiling", 100),
            ip_ceiling=cache.get_int("fraud.ip_ceiling", 20),
            timing_threshold_seconds=cache.get_float("fraud.timing_threshold_seconds", 2.0),
            suspicious_threshold=cache.get_int("fraud.suspicious_threshold", 50),
        )


@dataclass(frozen=True, slots=True)
class FraudSignals:
    """Trailing-window history for one member, as read from storage.

    ``recent_action_times`` is newest first and already limited to the
    member's last :data:`TIMING_SAMPLE_SIZE` audit rows.
    """

    points_earned: int = 0
    ip_address: str | None = None
    ip_action_count: int = 0
    recent_action_times: tuple[datetime, ...] = ()
    prior_detections: int = 0


@dataclass
class FraudAssessment:
    """Advisory output of a fraud screen."""

    suspicious: bool = False
    reasons: list[str] = field(default_factory=list)
    score: int = 0
    evidence: list[Evidence] = field(default_factory=list)

    def evidence_dicts(self) -> list[dict[str, Any]]:
        return [evidence_to_dict(e) for e in self.evidence]

    def to_dict(self) -> dict[str, Any]:
        return {
            "suspicious": self.suspicious,
            "score": self.score,
            "reasons": list(self.reasons),
            "evidence": self.evidence_dicts(),
        }


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
def first_fast_gap(times: tuple[datetime, ...], threshold_seconds: float) -> float | None:
    """Return the first adjacent gap (newest first) below the threshold, if any."""
    for newer, older in zip(times, times[1:]):
        gap = abs((newer - older).total_seconds())
        if gap < threshold_seconds:
            return gap
    return None


def assess(
    signals: FraudSignals, thresholds: FraudThresholds | None = None
) -> FraudAssessment:
    """Score *signals* against *thresholds*."""
    t = thresholds or FraudThresholds()
    result = FraudAssessment()

    def flag(name: str, evidence: Evidence) -> None:
        result.score += WEIGHTS[name]
        result.reasons.append(REASONS[name])
        result.evidence.append(evidence)

    if signals.points_earned > t.velocity_ceiling:
        flag("velocity", VelocityEvidence(signals.points_earned, t.velocity_ceiling))

    if signals.ip_action_count > t.ip_ceiling:
        flag("ip_concentration", IpConcentrationEvidence(
            signals.ip_address, signals.ip_action_count, t.ip_ceiling,
        ))

    gap = first_fast_gap(signals.recent_action_times, t.timing_threshold_seconds)
    if gap is not None:
        flag("timing", TimingEvidence(gap, t.timing_threshold_seconds))

    if signals.prior_detections > 0:
        flag("recidivism", RecidivismEvidence(signals.prior_detections))

    result.suspicious = result.score >= t.suspicious_threshold
    return result


def severity_for(score: int, auto_suspend_threshold: int = 80) -> Severity:
    """Severity recorded for a suspicious screen: critical above the
    auto-suspend threshold, high otherwise."""
    return Severity.CRITICAL if score > auto_suspend_threshold else Severity.HIGH
