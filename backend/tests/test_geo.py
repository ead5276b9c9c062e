from __future__ import annotations

from datetime import datetime

import pytest

from models import Coordinate
from utils import (
    distance,
    distance_to_segment,
    estimate_travel_minutes,
    format_distance,
    format_duration,
    is_reasonable_travel_time,
    mask_secret,
    suggest_start_after,
    travel_time_with_buffer,
)


DALLAS = Coordinate(32.7767, -96.7970)
FORT_WORTH = Coordinate(32.7555, -97.3308)


def test_distance_is_symmetric_and_zero_on_identity() -> None:
    assert distance(DALLAS, DALLAS) == 0
    assert distance(DALLAS, FORT_WORTH) == pytest.approx(distance(FORT_WORTH, DALLAS))
    assert 30 < distance(DALLAS, FORT_WORTH) < 32


def test_travel_minutes_use_speed_tiers() -> None:
    assert estimate_travel_minutes(0) == 0
    assert estimate_travel_minutes(0.6) == 3  # 15 mph, 2.4 rounded up
    assert estimate_travel_minutes(3) == 8  # 25 mph, 7.2 rounded up
    assert estimate_travel_minutes(10) == 18  # 35 mph, 17.1 rounded up


def test_buffer_has_a_floor() -> None:
    assert travel_time_with_buffer(DALLAS, DALLAS) == 5
    assert travel_time_with_buffer(DALLAS, FORT_WORTH) == estimate_travel_minutes(distance(DALLAS, FORT_WORTH)) + 5


def test_suggest_start_after_previous_event() -> None:
    end = datetime(2024, 1, 1, 10, 0)
    start = suggest_start_after(end, DALLAS, FORT_WORTH)
    assert (start - end).total_seconds() / 60 == travel_time_with_buffer(DALLAS, FORT_WORTH)


def test_reasonable_travel_time() -> None:
    assert is_reasonable_travel_time(30)
    assert not is_reasonable_travel_time(31)


def test_distance_to_segment() -> None:
    home = Coordinate(32.70, -96.80)
    work = Coordinate(32.90, -96.80)
    on_route = Coordinate(32.80, -96.80)
    off_route = Coordinate(32.80, -96.70)
    assert distance_to_segment(on_route, home, work) == pytest.approx(0, abs=1e-6)
    assert 5 < distance_to_segment(off_route, home, work) < 7
    # past the end of the segment, distance is to the endpoint
    beyond = Coordinate(33.00, -96.80)
    assert distance_to_segment(beyond, home, work) == pytest.approx(distance(beyond, work), rel=0.01)


def test_formatting() -> None:
    assert format_distance(0.05) == "< 0.1 mi"
    assert format_distance(2.345) == "2.3 mi"
    assert format_duration(45) == "45 min"
    assert format_duration(90) == "1h 30m"
    assert format_duration(120) == "2h"


def test_mask_secret() -> None:
    assert mask_secret(None) == "unset"
    assert mask_secret("short") == "*****"
    assert mask_secret("abcdefghijkl") == "abcd...ijkl"
