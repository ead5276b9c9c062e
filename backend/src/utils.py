"""Utility helpers for the activity feed engine: secrets and geo math."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from models import Coordinate

EARTH_RADIUS_MILES = 3958.8
TRAVEL_BUFFER_MIN = 5
MAX_REASONABLE_TRAVEL_MIN = 30


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "unset"
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"


def distance(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in miles."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_MILES * c


def estimate_travel_minutes(distance_miles: float) -> int:
    """Speed-tiered drive estimate, rounded up to whole minutes.

    Short hops are slow (15 mph) because parking and walking dominate, city
    trips average 25 mph and anything from 5 miles on averages 35 mph.
    """
    if distance_miles < 1:
        mph = 15.0
    elif distance_miles < 5:
        mph = 25.0
    else:
        mph = 35.0
    return math.ceil(distance_miles / mph * 60)


def travel_time_with_buffer(origin: Coordinate, destination: Coordinate) -> int:
    base = estimate_travel_minutes(distance(origin, destination))
    return max(TRAVEL_BUFFER_MIN, base + TRAVEL_BUFFER_MIN)


def suggest_start_after(
    previous_end: datetime, previous_location: Coordinate, new_location: Coordinate
) -> datetime:
    """Earliest start for a new activity following a previous one."""
    return previous_end + timedelta(minutes=travel_time_with_buffer(previous_location, new_location))


def is_reasonable_travel_time(minutes: float) -> bool:
    return minutes <= MAX_REASONABLE_TRAVEL_MIN


def distance_to_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Approximate distance in miles from point to the segment start-end.

    Uses an equirectangular projection around the point, accurate enough for
    commute-scale segments.
    """
    lat0 = math.radians(point.latitude)

    def _xy(c: Coordinate) -> tuple[float, float]:
        x = math.radians(c.longitude - point.longitude) * math.cos(lat0) * EARTH_RADIUS_MILES
        y = math.radians(c.latitude - point.latitude) * EARTH_RADIUS_MILES
        return x, y

    ax, ay = _xy(start)
    bx, by = _xy(end)
    dx, dy = bx - ax, by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0:
        return math.hypot(ax, ay)
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / seg_len_sq))
    return math.hypot(ax + t * dx, ay + t * dy)


def format_distance(miles: float) -> str:
    if miles < 0.1:
        return "< 0.1 mi"
    return f"{miles:.1f} mi"


def format_duration(minutes: float) -> str:
    if minutes < 60:
        return f"{round(minutes)} min"
    hours = int(minutes // 60)
    mins = round(minutes % 60)
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"
