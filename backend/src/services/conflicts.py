from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Union

from loguru import logger

from models import Coordinate, ScheduledEvent
from utils import travel_time_with_buffer


class CalendarStore(Protocol):
    async def events_for(self, user_id: str) -> List[ScheduledEvent]:
        ...


class InMemoryCalendar:
    def __init__(self) -> None:
        self._events: Dict[str, List[ScheduledEvent]] = {}
        self._lock = asyncio.Lock()

    async def add(self, event: ScheduledEvent) -> None:
        async with self._lock:
            self._events.setdefault(event.user_id, []).append(event)

    async def remove(self, user_id: str, event_id: str) -> bool:
        async with self._lock:
            events = self._events.get(user_id, [])
            kept = [e for e in events if e.id != event_id]
            self._events[user_id] = kept
            return len(kept) != len(events)

    async def events_for(self, user_id: str) -> List[ScheduledEvent]:
        async with self._lock:
            return list(self._events.get(user_id, []))


@dataclass(frozen=True)
class Feasible:
    kind: str = "feasible"


@dataclass(frozen=True)
class SchedulingConflict:
    pass


@dataclass(frozen=True)
class DoubleBooking(SchedulingConflict):
    conflicting: ScheduledEvent
    kind: str = "double-booking"


@dataclass(frozen=True)
class TravelInfeasible(SchedulingConflict):
    previous: ScheduledEvent
    travel_minutes: int
    arrival_time: datetime
    minutes_late: int
    kind: str = "travel-time"

    @property
    def suggested_start(self) -> datetime:
        """Earliest start that leaves enough travel time after ``previous``."""
        return self.arrival_time


ConflictDecision = Union[Feasible, DoubleBooking, TravelInfeasible]


def _overlaps(event: ScheduledEvent, start: datetime, end: datetime) -> bool:
    return event.start_time < end and event.end_time > start


def _preceding(events: List[ScheduledEvent], start: datetime) -> Optional[ScheduledEvent]:
    before = [e for e in events if e.end_time <= start]
    if not before:
        return None
    return max(before, key=lambda e: e.end_time)


class ConflictDetector:
    """Checks a proposed slot against the user's calendar without modifying it."""

    def __init__(self, calendar: CalendarStore) -> None:
        self.calendar = calendar

    async def check(
        self,
        user_id: str,
        proposed_start: datetime,
        proposed_end: datetime,
        proposed_coordinate: Optional[Coordinate],
    ) -> ConflictDecision:
        if proposed_end <= proposed_start:
            raise ValueError("proposed_end must be after proposed_start")
        events = await self.calendar.events_for(user_id)

        # double-booking takes precedence over travel
        for event in sorted(events, key=lambda e: e.start_time):
            if _overlaps(event, proposed_start, proposed_end):
                logger.debug("slot for {} overlaps {}", user_id, event.id)
                return DoubleBooking(conflicting=event)

        previous = _preceding(events, proposed_start)
        if previous is None or previous.coordinate is None or proposed_coordinate is None:
            return Feasible()

        travel = travel_time_with_buffer(previous.coordinate, proposed_coordinate)
        arrival = previous.end_time + timedelta(minutes=travel)
        if arrival > proposed_start:
            late = math.ceil((arrival - proposed_start).total_seconds() / 60)
            return TravelInfeasible(
                previous=previous,
                travel_minutes=travel,
                arrival_time=arrival,
                minutes_late=late,
            )
        return Feasible()


def describe(decision: ConflictDecision) -> dict:
    """Structured payload for presenting a decision to the user."""
    if isinstance(decision, DoubleBooking):
        return {
            "type": decision.kind,
            "conflicting_event": {
                "id": decision.conflicting.id,
                "title": decision.conflicting.title,
                "start_time": decision.conflicting.start_time.isoformat(),
                "end_time": decision.conflicting.end_time.isoformat(),
            },
        }
    if isinstance(decision, TravelInfeasible):
        return {
            "type": decision.kind,
            "previous_task": {
                "id": decision.previous.id,
                "title": decision.previous.title,
                "end_time": decision.previous.end_time.isoformat(),
            },
            "travel_minutes": decision.travel_minutes,
            "arrival_time": decision.arrival_time.isoformat(),
            "minutes_late": decision.minutes_late,
            "suggested_start": decision.suggested_start.isoformat(),
        }
    return {"type": decision.kind}
