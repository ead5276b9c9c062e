"""Data models for the activity feed engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class MalformedCandidate(ValueError):
    """Provider venue lacks an identifier or coordinate."""


class Category(str, Enum):
    DINING = "dining"
    ENTERTAINMENT = "entertainment"
    FITNESS = "fitness"
    SOCIAL = "social"
    WORK = "work"
    PERSONAL = "personal"
    TRAVEL = "travel"
    OTHER = "other"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Candidate:
    provider_id: str
    name: str
    coordinate: Coordinate
    category: Category = Category.OTHER
    raw_provider_hours: Any = None
    rating: Optional[float] = None
    review_count: int = 0
    price_level: Optional[int] = None
    photo_refs: tuple[str, ...] = ()
    address: Optional[str] = None
    provider_types: tuple[str, ...] = ()
    website: Optional[str] = None
    is_sponsored: bool = False
    sponsor_tier: Optional[str] = None  # "premium" | "boosted"


@dataclass
class DayHours:
    open_min: int = 0
    close_min: int = 0
    closed: bool = False


@dataclass
class BusinessHoursInfo:
    # keyed by weekday index, Monday == 0
    days: Dict[int, DayHours] = field(default_factory=dict)
    source: str = "estimated"  # "provider" | "estimated"

    @property
    def is_estimated(self) -> bool:
        return self.source != "provider"


# Composite weights; sub-scores are all on a 0-100 scale.
SCORE_WEIGHTS: Dict[str, float] = {
    "base": 0.40,
    "location": 0.20,
    "time": 0.15,
    "feedback": 0.15,
    "collaborative": 0.10,
}


def compose_final_score(
    base: float,
    location: float,
    time: float,
    feedback: float,
    collaborative: float,
    sponsor_boost: float,
) -> float:
    organic = (
        SCORE_WEIGHTS["base"] * base
        + SCORE_WEIGHTS["location"] * location
        + SCORE_WEIGHTS["time"] * time
        + SCORE_WEIGHTS["feedback"] * feedback
        + SCORE_WEIGHTS["collaborative"] * collaborative
    )
    return round(organic + sponsor_boost, 4)


@dataclass(frozen=True)
class ScoreBreakdown:
    base_score: float
    location_score: float
    time_score: float
    feedback_score: float
    collaborative_score: float
    sponsor_boost: float = 0.0

    @property
    def final_score(self) -> float:
        return compose_final_score(
            self.base_score,
            self.location_score,
            self.time_score,
            self.feedback_score,
            self.collaborative_score,
            self.sponsor_boost,
        )

    def as_dict(self) -> Dict[str, float]:
        return {
            "base_score": self.base_score,
            "location_score": self.location_score,
            "time_score": self.time_score,
            "feedback_score": self.feedback_score,
            "collaborative_score": self.collaborative_score,
            "sponsor_boost": self.sponsor_boost,
            "final_score": self.final_score,
        }


@dataclass
class ScoredRecommendation:
    candidate: Candidate
    score: ScoreBreakdown
    business_hours: BusinessHoursInfo
    distance_miles: float = 0.0
    suggested_visit_time: Optional[datetime] = None
    photo_url: Optional[str] = None
    explanation: str = ""
    recommendation_id: str = ""

    @property
    def provider_id(self) -> str:
        return self.candidate.provider_id


@dataclass
class UserProfile:
    user_id: str
    interests: list[str] = field(default_factory=list)
    home: Optional[Coordinate] = None
    work: Optional[Coordinate] = None
    preferred_times: list[str] = field(default_factory=list)
    max_distance_miles: float = 5.0
    budget_level: Optional[int] = None
    discovery_mode: str = "curated"  # "curated" | "explore"
    last_search_radius_miles: Optional[float] = None


@dataclass
class FeedFilters:
    categories: list[Category] = field(default_factory=list)
    max_distance_miles: Optional[float] = None
    time_of_day: Optional[str] = None  # "morning" | "afternoon" | "evening"
    price_levels: list[int] = field(default_factory=list)


@dataclass
class BlockedVenue:
    user_id: str
    provider_id: str
    name: str
    reason: str
    blocked_at: datetime


@dataclass
class CachedRecommendationBatch:
    user_id: str
    recommendations: list[ScoredRecommendation] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.now)


@dataclass
class ScheduledEvent:
    id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    title: str
    coordinate: Optional[Coordinate] = None


@dataclass
class FeedbackRecord:
    user_id: str
    venue_id: str
    rating: str  # "thumbs_up" | "thumbs_down"
    completed_at: datetime
    category: Optional[Category] = None
    recommendation_id: Optional[str] = None
    price_level: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    notes: Optional[str] = None
    feedback_id: str = ""
    recorded_at: Optional[datetime] = None


@dataclass
class RecommendationSignal:
    user_id: str
    venue_id: str
    status: str  # "accepted" | "declined" | "not_interested"
    category: Optional[Category] = None
    recorded_at: Optional[datetime] = None
