"""
tally.engine.geofence — Check-in window, location & quiz timing rules
======================================================================

Pure validators.  Each one returns ``None`` when the input passes and raises
the matching :class:`~tally.engine.outcomes.Rejection` otherwise, so the
action handlers can chain them without inspecting results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from tally.engine.clock import as_utc
from tally.engine.outcomes import (
    CheckInWindowClosed,
    CheckInWindowExpired,
    LocationMismatch,
    TooFast,
)

EARTH_RADIUS_M = 6_371_000.0

DEFAULT_WINDOW_BEFORE = timedelta(hours=1)
DEFAULT_WINDOW_AFTER = timedelta(hours=2)
DEFAULT_MAX_DISTANCE_M = 500.0
DEFAULT_MIN_QUIZ_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class Coordinates:
    lat: float
    lng: float

    @classmethod
    def parse(cls, value: Coordinates | tuple[float, float] | dict | None) -> Coordinates | None:
        """Accept a ``Coordinates``, a ``(lat, lng)`` pair or a ``{"lat", "lng"}`` dict."""
        if value is None or isinstance(value, Coordinates):
            return value
        if isinstance(value, dict):
            return cls(float(value["lat"]), float(value["lng"]))
        lat, lng = value
        return cls(float(lat), float(lng))


def haversine_m(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in metres on a 6,371 km sphere."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def validate_checkin_window(
    event_time: datetime,
    now: datetime,
    *,
    before: timedelta = DEFAULT_WINDOW_BEFORE,
    after: timedelta = DEFAULT_WINDOW_AFTER,
) -> None:
    """Check-in is open on ``[event_time - before, event_time + after]``."""
    event_time = as_utc(event_time)
    now = as_utc(now)
    opens = event_time - before
    closes = event_time + after
    if now < opens:
        raise CheckInWindowClosed(
            "Check-in not yet available", opens_at=opens.isoformat(),
        )
    if now > closes:
        raise CheckInWindowExpired(
            "Check-in window has closed", closed_at=closes.isoformat(),
        )


def validate_location(
    event_coords: Coordinates | None,
    member_coords: Coordinates | None,
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
) -> float | None:
    """Reject a check-in further than *max_distance_m* from the event.

    Skipped (returns ``None``) when either side has no coordinates;
    otherwise returns the measured distance.
    """
    if event_coords is None or member_coords is None:
        return None
    distance = haversine_m(event_coords, member_coords)
    if distance > max_distance_m:
        raise LocationMismatch(
            "You must be at the event location to check in",
            distance_m=round(distance, 1),
            max_distance_m=max_distance_m,
        )
    return distance


def validate_quiz_timing(
    completion_seconds: float, minimum: float = DEFAULT_MIN_QUIZ_SECONDS
) -> None:
    if completion_seconds < minimum:
        raise TooFast(
            "Quiz completed too quickly",
            completion_seconds=round(completion_seconds, 3),
            minimum_seconds=minimum,
        )
