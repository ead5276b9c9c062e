from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from models import Coordinate, ScheduledEvent
from services.conflicts import (
    ConflictDetector,
    DoubleBooking,
    Feasible,
    InMemoryCalendar,
    SchedulingConflict,
    TravelInfeasible,
    describe,
)
from utils import travel_time_with_buffer


DOWNTOWN = Coordinate(32.7767, -96.7970)
FORT_WORTH = Coordinate(32.7555, -97.3308)
DAY = datetime(2024, 1, 1)


def _event(event_id: str, start_hour: float, end_hour: float, coordinate=DOWNTOWN) -> ScheduledEvent:
    return ScheduledEvent(
        id=event_id,
        user_id="u1",
        start_time=DAY + timedelta(hours=start_hour),
        end_time=DAY + timedelta(hours=end_hour),
        title=f"Event {event_id}",
        coordinate=coordinate,
    )


def _check(events, start_hour: float, end_hour: float, coordinate=FORT_WORTH):
    calendar = InMemoryCalendar()
    detector = ConflictDetector(calendar)

    async def run():
        for event in events:
            await calendar.add(event)
        decision = await detector.check(
            "u1", DAY + timedelta(hours=start_hour), DAY + timedelta(hours=end_hour), coordinate
        )
        return decision, await calendar.events_for("u1")

    return asyncio.run(run())


def test_double_booking_takes_precedence_over_travel() -> None:
    # the preceding event would also make travel infeasible
    events = [_event("lunch", 11, 12), _event("meeting", 12.25, 13)]
    decision, after = _check(events, 12.5, 14)
    assert isinstance(decision, DoubleBooking)
    assert isinstance(decision, SchedulingConflict)
    assert decision.conflicting.id == "meeting"
    assert len(after) == 2


def test_travel_time_infeasible_reports_lateness() -> None:
    decision, _ = _check([_event("lunch", 11, 12)], 12.25, 13)
    assert isinstance(decision, TravelInfeasible)
    travel = travel_time_with_buffer(DOWNTOWN, FORT_WORTH)
    assert decision.previous.id == "lunch"
    assert decision.travel_minutes == travel
    assert decision.arrival_time == DAY + timedelta(hours=12, minutes=travel)
    assert decision.minutes_late == travel - 15
    assert decision.suggested_start == decision.arrival_time

    payload = describe(decision)
    assert payload["type"] == "travel-time"
    assert payload["previous_task"]["title"] == "Event lunch"
    assert payload["minutes_late"] == travel - 15


def test_uses_latest_preceding_event() -> None:
    events = [_event("breakfast", 8, 9), _event("nearby", 10, 11, coordinate=FORT_WORTH)]
    decision, _ = _check(events, 11.25, 12)
    # 5 minute buffer fits inside the 15 minute gap
    assert isinstance(decision, Feasible)


def test_back_to_back_at_same_place_is_feasible() -> None:
    decision, _ = _check([_event("class", 9, 10, coordinate=FORT_WORTH)], 10.25, 11)
    assert isinstance(decision, Feasible)
    assert describe(decision) == {"type": "feasible"}


def test_touching_events_do_not_overlap() -> None:
    decision, _ = _check([_event("gym", 14, 15)], 15, 16, coordinate=DOWNTOWN)
    assert isinstance(decision, TravelInfeasible)
    assert decision.travel_minutes == 5


def test_missing_coordinates_skip_travel_check() -> None:
    decision, _ = _check([_event("call", 11, 12, coordinate=None)], 12, 13)
    assert isinstance(decision, Feasible)


def test_invalid_slot_is_rejected() -> None:
    with pytest.raises(ValueError):
        _check([], 13, 12)
