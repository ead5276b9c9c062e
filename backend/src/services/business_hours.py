from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from models import BusinessHoursInfo, Category, DayHours


DAY_ORDER = ["mo", "tu", "we", "th", "fr", "sa", "su"]
DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
FULL_DAY_CLOSE = 23 * 60 + 59


def _parse_minutes(value: str) -> Optional[int]:
    try:
        hour, minute = value.split(":")
        total = int(hour) * 60 + int(minute)
    except (ValueError, AttributeError):
        return None
    if total == 24 * 60:
        return FULL_DAY_CLOSE
    if not 0 <= total < 24 * 60:
        return None
    return total


def _week(*spans: Optional[Tuple[str, str]]) -> Dict[int, DayHours]:
    days: Dict[int, DayHours] = {}
    for idx, span in enumerate(spans):
        if span is None:
            days[idx] = DayHours(closed=True)
            continue
        days[idx] = DayHours(open_min=_parse_minutes(span[0]) or 0, close_min=_parse_minutes(span[1]) or 0)
    return days


# Monday first.
DEFAULT_HOURS: Dict[str, Dict[int, DayHours]] = {
    "restaurant": _week(*[("11:00", "22:00")] * 4, ("11:00", "23:00"), ("11:00", "23:00"), ("11:00", "21:00")),
    "cafe": _week(*[("07:00", "18:00")] * 5, ("08:00", "17:00"), ("08:00", "17:00")),
    "bar": _week(*[("16:00", "02:00")] * 4, ("16:00", "03:00"), ("14:00", "03:00"), ("14:00", "00:00")),
    "store": _week(*[("09:00", "20:00")] * 4, ("09:00", "21:00"), ("09:00", "21:00"), ("10:00", "19:00")),
    "shopping_mall": _week(*[("10:00", "21:00")] * 6, ("11:00", "19:00")),
    "movie_theater": _week(*[("10:00", "23:00")] * 4, ("10:00", "01:00"), ("10:00", "01:00"), ("10:00", "23:00")),
    "museum": _week(None, *[("10:00", "17:00")] * 4, ("10:00", "18:00"), ("10:00", "18:00")),
    "gym": _week(*[("05:00", "23:00")] * 4, ("05:00", "22:00"), ("07:00", "20:00"), ("07:00", "20:00")),
    "park": _week(*[("06:00", "22:00")] * 7),
    "library": _week(*[("09:00", "20:00")] * 4, ("09:00", "18:00"), ("10:00", "17:00"), ("12:00", "17:00")),
    "default": _week(*[("09:00", "18:00")] * 5, ("10:00", "17:00"), None),
}

SCHEDULE_KEYS: Dict[str, str] = {
    # provider place types
    "restaurant": "restaurant",
    "meal_takeaway": "restaurant",
    "meal_delivery": "restaurant",
    "breakfast_restaurant": "restaurant",
    "brunch_restaurant": "restaurant",
    "cafe": "cafe",
    "coffee_shop": "cafe",
    "bakery": "cafe",
    "bar": "bar",
    "night_club": "bar",
    "pub": "bar",
    "store": "store",
    "clothing_store": "store",
    "book_store": "store",
    "supermarket": "store",
    "shopping_mall": "shopping_mall",
    "mall": "shopping_mall",
    "movie_theater": "movie_theater",
    "cinema": "movie_theater",
    "bowling_alley": "movie_theater",
    "museum": "museum",
    "art_gallery": "museum",
    "gym": "gym",
    "fitness_center": "gym",
    "yoga_studio": "gym",
    "park": "park",
    "dog_park": "park",
    "hiking_area": "park",
    "library": "library",
    # taxonomy categories
    Category.DINING.value: "restaurant",
    Category.ENTERTAINMENT.value: "movie_theater",
    Category.FITNESS.value: "gym",
    Category.SOCIAL.value: "bar",
}


def schedule_key(category: Optional[str], provider_types: Iterable[str] = ()) -> str:
    for raw in list(provider_types) + [category or ""]:
        key = raw.strip().lower().replace(" ", "_")
        if key in SCHEDULE_KEYS:
            return SCHEDULE_KEYS[key]
        if key in DEFAULT_HOURS:
            return key
    return "default"


def _google_point(point: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    """Return (weekday monday==0, minutes) for a Google period endpoint."""
    day = point.get("day")
    if not isinstance(day, int) or not 0 <= day <= 6:
        return None
    if "time" in point:
        raw = str(point.get("time") or "")
        if len(raw) != 4 or not raw.isdigit():
            return None
        minutes = _parse_minutes(f"{raw[:2]}:{raw[2:]}")
    else:
        minutes = _parse_minutes(f"{int(point.get('hour', 0))}:{int(point.get('minute', 0))}")
    if minutes is None:
        return None
    # Google counts Sunday as day 0
    return (day + 6) % 7, minutes


def parse_provider_periods(periods: List[Dict[str, Any]]) -> Dict[int, DayHours]:
    days: Dict[int, DayHours] = {}
    for period in periods or []:
        if not isinstance(period, dict):
            continue
        open_pt = period.get("open")
        if not isinstance(open_pt, dict):
            continue
        opened = _google_point(open_pt)
        if opened is None:
            continue
        close_pt = period.get("close")
        if isinstance(close_pt, dict):
            closed = _google_point(close_pt)
            if closed is None:
                continue
            days[opened[0]] = DayHours(open_min=opened[1], close_min=closed[1])
        else:
            # open with no close means open around the clock
            days[opened[0]] = DayHours(open_min=0, close_min=FULL_DAY_CLOSE)
    return days


def _segment_days(segment: str) -> List[int]:
    segment = segment.lower()
    days: set[int] = set()
    if "daily" in segment or "every day" in segment:
        return list(range(7))
    matches = re.findall(r"(mo|tu|we|th|fr|sa|su)(?:\s*-\s*(mo|tu|we|th|fr|sa|su))?", segment)
    for start, end in matches:
        start_idx = DAY_ORDER.index(start)
        if end:
            end_idx = DAY_ORDER.index(end)
            if start_idx <= end_idx:
                days.update(range(start_idx, end_idx + 1))
            else:
                days.update(range(start_idx, 7))
                days.update(range(0, end_idx + 1))
        else:
            days.add(start_idx)
    return sorted(days)


def _segment_time_range(segment: str) -> Optional[Tuple[int, int]]:
    match = re.search(r"(\d{1,2}:\d{2})\s*-\s*(\d{1,2}:\d{2})", segment)
    if not match:
        return None
    open_min = _parse_minutes(match.group(1))
    close_min = _parse_minutes(match.group(2))
    if open_min is None or close_min is None:
        return None
    return open_min, close_min


def parse_opening_hours_text(text: str) -> Dict[int, DayHours]:
    """Parse OSM-style strings such as ``Mo-Fr 09:00-18:00; Sa 10:00-14:00``."""
    days: Dict[int, DayHours] = {}
    if text.strip() == "24/7":
        return {idx: DayHours(open_min=0, close_min=FULL_DAY_CLOSE) for idx in range(7)}
    for seg in (s.strip() for s in text.split(";")):
        if not seg:
            continue
        seg_days = _segment_days(seg) or list(range(7))
        if re.search(r"\boff\b|\bclosed\b", seg.lower()):
            for idx in seg_days:
                days[idx] = DayHours(closed=True)
            continue
        time_range = _segment_time_range(seg)
        if not time_range:
            continue
        for idx in seg_days:
            days[idx] = DayHours(open_min=time_range[0], close_min=time_range[1])
    return days


def parse_provider_hours(raw: Any) -> Optional[Dict[int, DayHours]]:
    if not raw:
        return None
    days: Dict[int, DayHours] = {}
    if isinstance(raw, str):
        days = parse_opening_hours_text(raw)
    elif isinstance(raw, dict):
        days = parse_provider_periods(raw.get("periods") or [])
    elif isinstance(raw, list):
        days = parse_provider_periods(raw)
    if not any(not d.closed for d in days.values()):
        return None
    return days


def resolve_hours(raw_hours: Any, category: Optional[str], provider_types: Iterable[str] = ()) -> BusinessHoursInfo:
    """Provider hours when they parse to at least one open day, else category defaults."""
    parsed = parse_provider_hours(raw_hours)
    if parsed:
        return BusinessHoursInfo(days=parsed, source="provider")
    key = schedule_key(category, provider_types)
    if raw_hours:
        logger.debug("unparseable provider hours, estimating from {}", key)
    template = DEFAULT_HOURS[key]
    return BusinessHoursInfo(
        days={idx: DayHours(d.open_min, d.close_min, d.closed) for idx, d in template.items()},
        source="estimated",
    )


def _minute_of_day(instant: datetime) -> int:
    return instant.hour * 60 + instant.minute


def is_open_at(hours: BusinessHoursInfo, instant: datetime) -> bool:
    day = hours.days.get(instant.weekday())
    if day is None or day.closed:
        return False
    now = _minute_of_day(instant)
    if day.close_min < day.open_min:
        # opens today, closes after midnight
        return now >= day.open_min or now <= day.close_min
    return day.open_min <= now <= day.close_min


def next_opening_time(hours: BusinessHoursInfo, start: datetime) -> Optional[datetime]:
    """First opening strictly after ``start`` within a week; None when open now."""
    if is_open_at(hours, start):
        return None
    for offset in range(7):
        check = start + timedelta(days=offset)
        day = hours.days.get(check.weekday())
        if day is None or day.closed:
            continue
        opening = check.replace(hour=day.open_min // 60, minute=day.open_min % 60, second=0, microsecond=0)
        if opening > start:
            return opening
    return None


def suggest_visit_time(
    hours: BusinessHoursInfo,
    part_of_day: Optional[str] = None,
    start: Optional[datetime] = None,
) -> datetime:
    start = start or datetime.now()
    today = hours.days.get(start.weekday())

    if today is not None and not today.closed:
        open_hour = today.open_min // 60
        close_hour = today.close_min // 60
        if today.close_min < today.open_min:
            close_hour += 24

        suggested_hour = open_hour + 1
        if part_of_day == "morning":
            suggested_hour = max(open_hour, 9)
        elif part_of_day == "afternoon":
            suggested_hour = max(open_hour, 14)
        elif part_of_day == "evening":
            suggested_hour = max(open_hour, min(close_hour - 2, 19))

        if 0 <= suggested_hour < 24:
            suggested = start.replace(hour=suggested_hour, minute=0, second=0, microsecond=0)
            if is_open_at(hours, suggested):
                return suggested

    return next_opening_time(hours, start) or start


def today_hours(hours: BusinessHoursInfo, date: Optional[datetime] = None) -> Optional[DayHours]:
    date = date or datetime.now()
    return hours.days.get(date.weekday())


def format_day_hours(day: Optional[DayHours]) -> str:
    if day is None:
        return "Hours unavailable"
    if day.closed:
        return "Closed"

    def _fmt(minutes: int) -> str:
        hour, minute = divmod(minutes, 60)
        period = "PM" if hour >= 12 else "AM"
        display = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
        return f"{display}:{minute:02d} {period}"

    return f"{_fmt(day.open_min)} - {_fmt(day.close_min)}"
