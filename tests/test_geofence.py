"""
tests/test_geofence.py — Check-in Window, Location & Quiz Timing Tests
=======================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tally.engine.geofence import (
    Coordinates,
    haversine_m,
    validate_checkin_window,
    validate_location,
    validate_quiz_timing,
)
from tally.engine.outcomes import (
    CheckInWindowClosed,
    CheckInWindowExpired,
    LocationMismatch,
    TooFast,
)

EVENT = datetime(2026, 3, 14, 18, 0, tzinfo=UTC)
LAGOS = Coordinates(6.5244, 3.3792)


class TestCheckInWindow:
    def test_two_hours_early_is_not_yet_open(self):
        with pytest.raises(CheckInWindowClosed) as exc_info:
            validate_checkin_window(EVENT, EVENT - timedelta(hours=2))
        assert exc_info.value.message == "Check-in not yet available"

    def test_one_hour_after_is_open(self):
        validate_checkin_window(EVENT, EVENT + timedelta(hours=1))

    def test_three_hours_after_is_closed(self):
        with pytest.raises(CheckInWindowExpired):
            validate_checkin_window(EVENT, EVENT + timedelta(hours=3))

    @pytest.mark.parametrize("offset", [timedelta(hours=-1), timedelta(0), timedelta(hours=2)])
    def test_window_edges_are_inclusive(self, offset):
        validate_checkin_window(EVENT, EVENT + offset)

    def test_naive_event_time_is_treated_as_utc(self):
        naive = EVENT.replace(tzinfo=None)
        validate_checkin_window(naive, EVENT + timedelta(minutes=30))

    def test_custom_window(self):
        with pytest.raises(CheckInWindowExpired):
            validate_checkin_window(
                EVENT, EVENT + timedelta(minutes=31),
                before=timedelta(minutes=10), after=timedelta(minutes=30),
            )


class TestLocation:
    def test_haversine_zero_distance(self):
        assert haversine_m(LAGOS, LAGOS) == 0

    def test_haversine_one_degree_of_latitude(self):
        d = haversine_m(Coordinates(0, 0), Coordinates(1, 0))
        assert d == pytest.approx(111_195, rel=1e-3)

    def test_close_enough(self):
        nearby = Coordinates(LAGOS.lat + 0.001, LAGOS.lng)
        assert validate_location(LAGOS, nearby) == pytest.approx(111, abs=1)

    def test_too_far(self):
        across_town = Coordinates(LAGOS.lat + 0.01, LAGOS.lng)
        with pytest.raises(LocationMismatch) as exc_info:
            validate_location(LAGOS, across_town)
        assert exc_info.value.context["distance_m"] > 500

    @pytest.mark.parametrize("event, member", [(None, LAGOS), (LAGOS, None), (None, None)])
    def test_missing_coordinates_skip_the_check(self, event, member):
        assert validate_location(event, member) is None

    def test_parse_accepts_tuple_and_dict(self):
        assert Coordinates.parse((1, 2)) == Coordinates(1.0, 2.0)
        assert Coordinates.parse({"lat": "1.5", "lng": 2}) == Coordinates(1.5, 2.0)
        assert Coordinates.parse(None) is None


class TestQuizTiming:
    def test_too_fast(self):
        with pytest.raises(TooFast):
            validate_quiz_timing(3.2)

    def test_minimum_is_allowed(self):
        validate_quiz_timing(5.0)

    def test_custom_minimum(self):
        with pytest.raises(TooFast):
            validate_quiz_timing(9.9, minimum=10)
