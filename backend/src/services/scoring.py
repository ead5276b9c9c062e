from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from models import (
    BusinessHoursInfo,
    Candidate,
    Category,
    Coordinate,
    FeedFilters,
    MalformedCandidate,
    ScoreBreakdown,
    ScoredRecommendation,
    UserProfile,
    compose_final_score,
)
from services.business_hours import is_open_at, resolve_hours, suggest_visit_time
from services.feedback import FeedbackSnapshot
from utils import distance, distance_to_segment


# Bayesian prior for ratings: a venue needs about this many reviews before
# its own average outweighs the prior mean.
RATING_PRIOR_MEAN = 3.5
RATING_PRIOR_WEIGHT = 10
POPULARITY_SATURATION = 1000

NEAR_ANCHOR_MILES = 1.0
CORRIDOR_MILES = 0.5

SPONSOR_RATES: Dict[str, float] = {"premium": 0.30, "boosted": 0.15}
LOW_ORGANIC_THRESHOLD = 40.0
LOW_ORGANIC_BOOST_CAP = 10.0

RELATED_CATEGORIES: Dict[str, Iterable[str]] = {
    "dining": ["social"],
    "social": ["dining", "entertainment"],
    "entertainment": ["social", "personal"],
    "fitness": ["travel"],
    "travel": ["fitness", "entertainment"],
    "personal": ["entertainment"],
    "work": [],
}

# hour window -> (perfect fit, good fit); everything else is acceptable
TIME_WINDOWS: Dict[str, tuple] = {
    "morning": ({"fitness", "dining"}, {"work", "personal"}),
    "lunch": ({"dining"}, {"social", "personal", "work"}),
    "afternoon": ({"personal", "entertainment", "travel"}, {"fitness", "dining"}),
    "evening": ({"dining", "social", "entertainment"}, {"fitness"}),
    "night": ({"social", "entertainment"}, {"dining"}),
}
PERFECT_FIT = 85.0
GOOD_FIT = 65.0
ACCEPTABLE_FIT = 45.0
PREFERRED_TIME_BONUS = 15.0

TOP_SLOTS = 5
MAX_SPONSORED_IN_TOP = 2
MAX_SAME_CATEGORY_IN_TOP = 2
MIN_TOP_CATEGORIES = 3


@dataclass
class ScoringContext:
    profile: UserProfile
    location: Coordinate
    now: datetime = field(default_factory=datetime.now)
    time_of_day: Optional[str] = None
    feedback: FeedbackSnapshot = field(default_factory=FeedbackSnapshot)
    blocked_ids: Set[str] = field(default_factory=set)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _window_for(instant: datetime) -> str:
    hour = instant.hour
    if 6 <= hour < 11:
        return "morning"
    if 11 <= hour < 14:
        return "lunch"
    if 14 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def _interest_labels(candidate: Candidate) -> Set[str]:
    labels = {candidate.category.value}
    labels.update(t.lower() for t in candidate.provider_types)
    return labels


def interest_match(candidate: Candidate, interests: List[str]) -> float:
    normalized = [i.strip().lower() for i in interests if i]
    labels = _interest_labels(candidate)
    if labels & set(normalized[:3]):
        return 100.0
    if labels & set(normalized):
        return 75.0
    related = set(RELATED_CATEGORIES.get(candidate.category.value, []))
    if related & set(normalized):
        return 50.0
    return 25.0


def bayesian_rating(rating: Optional[float], review_count: int) -> float:
    if rating is None:
        return RATING_PRIOR_MEAN
    votes = max(review_count, 0)
    return (votes * rating + RATING_PRIOR_WEIGHT * RATING_PRIOR_MEAN) / (votes + RATING_PRIOR_WEIGHT)


def popularity(review_count: int) -> float:
    if review_count <= 0:
        return 0.0
    return min(1.0, math.log10(1 + review_count) / math.log10(1 + POPULARITY_SATURATION))


def base_score(candidate: Candidate, profile: UserProfile) -> float:
    interest = interest_match(candidate, profile.interests)
    rating = bayesian_rating(candidate.rating, candidate.review_count) / 5.0 * 100
    pop = popularity(candidate.review_count) * 100
    return round(_clamp(interest * 0.6 + rating * 0.3 + pop * 0.1), 4)


def location_score(candidate: Candidate, context: ScoringContext) -> float:
    profile = context.profile
    dist = distance(context.location, candidate.coordinate)
    # a distance learned from feedback overrides the profile setting
    max_dist = context.feedback.preferred_distance_miles or profile.max_distance_miles
    if max_dist <= 0:
        max_dist = 5.0

    if dist <= 0.5:
        score = 100.0
    elif dist <= 1.0:
        score = 75.0
    elif dist <= max_dist:
        score = 50.0 + 25.0 * (1 - dist / max_dist)
    else:
        score = 25.0 * max_dist / dist

    if profile.home and distance(profile.home, candidate.coordinate) <= NEAR_ANCHOR_MILES:
        score += 15
    if profile.work and distance(profile.work, candidate.coordinate) <= NEAR_ANCHOR_MILES:
        score += 15
    if profile.home and profile.work:
        if distance_to_segment(candidate.coordinate, profile.home, profile.work) <= CORRIDOR_MILES:
            score += 20
    return round(_clamp(score), 4)


def visit_instant(hours: BusinessHoursInfo, context: ScoringContext) -> datetime:
    if context.time_of_day:
        return suggest_visit_time(hours, context.time_of_day, context.now)
    return context.now


def time_score(candidate: Candidate, hours: BusinessHoursInfo, context: ScoringContext) -> float:
    instant = visit_instant(hours, context)
    if not is_open_at(hours, instant):
        return 0.0
    window = _window_for(instant)
    perfect, good = TIME_WINDOWS[window]
    category = candidate.category.value
    if category in perfect:
        score = PERFECT_FIT
    elif category in good:
        score = GOOD_FIT
    else:
        score = ACCEPTABLE_FIT
    preferred = {p.lower() for p in context.profile.preferred_times}
    if window in preferred or (window == "lunch" and "afternoon" in preferred):
        score += PREFERRED_TIME_BONUS
    return _clamp(score)


def feedback_score(candidate: Candidate, context: ScoringContext) -> float:
    snap = context.feedback
    venue = candidate.provider_id
    if venue in context.blocked_ids or venue in snap.rejected_venues:
        return 0.0
    score = 50.0
    if venue in snap.liked_venues:
        score += 25
    if venue in snap.disliked_venues:
        score -= 25
    category = candidate.category.value
    if category in snap.liked_categories:
        score += 20
    if category in snap.disliked_categories:
        score -= 20
    budget = snap.budget_level if snap.budget_level is not None else context.profile.budget_level
    if budget is not None and candidate.price_level is not None:
        score += 10 if candidate.price_level <= math.ceil(budget) else -10
    return _clamp(score)


def collaborative_score(candidate: Candidate, context: ScoringContext) -> float:
    snap = context.feedback
    votes = snap.venue_votes.get(candidate.provider_id) or snap.category_votes.get(candidate.category.value)
    if not votes:
        return 50.0
    positive, total = votes
    # Laplace smoothing keeps a single vote from reaching 0 or 100
    return round((positive + 1) / (total + 2) * 100, 4)


def sponsor_boost(candidate: Candidate, organic_total: float) -> float:
    if not candidate.is_sponsored:
        return 0.0
    rate = SPONSOR_RATES.get(candidate.sponsor_tier or "", 0.0)
    boost = organic_total * rate
    if organic_total < LOW_ORGANIC_THRESHOLD:
        boost = min(boost, LOW_ORGANIC_BOOST_CAP)
    return round(boost, 4)


def explain(candidate: Candidate, score: ScoreBreakdown, dist: float, window: str, context: ScoringContext) -> str:
    reasons: list[str] = []
    if score.base_score >= 70:
        matched = _interest_labels(candidate) & {i.lower() for i in context.profile.interests}
        if matched:
            reasons.append(f"Matches your interest in {sorted(matched)[0]}")
    if score.location_score >= 75:
        reasons.append(f"Just {dist:.1f} miles away")
    if score.time_score >= PERFECT_FIT:
        reasons.append(f"Great for the {window}")
    if candidate.rating is not None and candidate.rating >= 4.5:
        reasons.append(f"Highly rated ({candidate.rating:.1f})")
    if not reasons:
        return "Discover something new nearby"
    return ", ".join(reasons[:2])


def passes_filters(candidate: Candidate, filters: Optional[FeedFilters], origin: Coordinate) -> bool:
    if filters is None:
        return True
    if filters.categories and candidate.category not in filters.categories:
        return False
    # unknown price level passes a price filter
    if filters.price_levels and candidate.price_level is not None:
        if candidate.price_level not in filters.price_levels:
            return False
    if filters.max_distance_miles is not None:
        if distance(origin, candidate.coordinate) > filters.max_distance_miles:
            return False
    return True


def open_now_only(recommendations: Iterable[ScoredRecommendation], instant: Optional[datetime] = None) -> List[ScoredRecommendation]:
    instant = instant or datetime.now()
    return [r for r in recommendations if is_open_at(r.business_hours, instant)]


def apply_business_rules(ranked: List[ScoredRecommendation]) -> List[ScoredRecommendation]:
    """Shape the head of an ordered list.

    The same business name is never shown twice. Within the top five, at most
    two items are sponsored and no category appears more than twice while
    fewer than three categories are represented. Items that break a top-five
    rule are pushed down, not dropped.
    """
    head: list[ScoredRecommendation] = []
    tail: list[ScoredRecommendation] = []
    names: Set[str] = set()
    counts: Dict[str, int] = {}
    sponsored = 0
    for rec in ranked:
        name = rec.candidate.name.strip().lower()
        if name in names:
            logger.debug("dropping duplicate business {}", rec.candidate.name)
            continue
        names.add(name)
        if len(head) >= TOP_SLOTS:
            tail.append(rec)
            continue
        if rec.candidate.is_sponsored and sponsored >= MAX_SPONSORED_IN_TOP:
            tail.append(rec)
            continue
        category = rec.candidate.category.value
        same = counts.get(category, 0) + 1
        unique = len(counts) + (0 if category in counts else 1)
        if unique < MIN_TOP_CATEGORIES and same > MAX_SAME_CATEGORY_IN_TOP:
            tail.append(rec)
            continue
        counts[category] = same
        if rec.candidate.is_sponsored:
            sponsored += 1
        head.append(rec)
    return head + tail


def _check_wellformed(candidate: Candidate) -> None:
    if not candidate.provider_id:
        raise MalformedCandidate(f"candidate {candidate.name!r} has no provider id")
    coord = candidate.coordinate
    if coord is None or coord.latitude is None or coord.longitude is None:
        raise MalformedCandidate(f"candidate {candidate.provider_id} has no coordinate")


class ScoringEngine:
    def __init__(self, photo_url: Optional[Callable[[Candidate], Optional[str]]] = None) -> None:
        self.photo_url = photo_url

    def score(
        self,
        candidate: Candidate,
        context: ScoringContext,
        hours: Optional[BusinessHoursInfo] = None,
    ) -> ScoredRecommendation:
        _check_wellformed(candidate)
        hours = hours or resolve_hours(
            candidate.raw_provider_hours, candidate.category.value, candidate.provider_types
        )
        base = base_score(candidate, context.profile)
        loc = location_score(candidate, context)
        tim = time_score(candidate, hours, context)
        fb = feedback_score(candidate, context)
        collab = collaborative_score(candidate, context)
        organic = compose_final_score(base, loc, tim, fb, collab, 0.0)
        breakdown = ScoreBreakdown(
            base_score=base,
            location_score=loc,
            time_score=tim,
            feedback_score=fb,
            collaborative_score=collab,
            sponsor_boost=sponsor_boost(candidate, organic),
        )
        dist = distance(context.location, candidate.coordinate)
        return ScoredRecommendation(
            candidate=candidate,
            score=breakdown,
            business_hours=hours,
            distance_miles=round(dist, 3),
            suggested_visit_time=suggest_visit_time(hours, context.time_of_day, context.now),
            photo_url=self.photo_url(candidate) if self.photo_url else None,
            explanation=explain(candidate, breakdown, dist, _window_for(visit_instant(hours, context)), context),
            recommendation_id=uuid.uuid4().hex,
        )

    def rank(
        self,
        candidates: Iterable[Candidate],
        context: ScoringContext,
        filters: Optional[FeedFilters] = None,
        hours_by_id: Optional[Dict[str, object]] = None,
        limit: Optional[int] = None,
    ) -> List[ScoredRecommendation]:
        """Score, filter and order candidates by final score, nearest first on ties."""
        scored: list[ScoredRecommendation] = []
        for candidate in candidates:
            try:
                _check_wellformed(candidate)
                if not passes_filters(candidate, filters, context.location):
                    continue
                hours = None
                extra = (hours_by_id or {}).get(candidate.provider_id)
                if extra and not candidate.raw_provider_hours:
                    hours = resolve_hours(extra, candidate.category.value, candidate.provider_types)
                scored.append(self.score(candidate, context, hours))
            except MalformedCandidate as exc:
                logger.warning("dropping malformed candidate: {}", exc)
        scored.sort(key=lambda r: (-r.score.final_score, r.distance_miles))
        scored = apply_business_rules(scored)
        if limit is not None:
            scored = scored[:limit]
        return scored


def categories_from(values: Iterable[str]) -> List[Category]:
    """Map free-form filter values onto the taxonomy, ignoring unknown ones."""
    result: list[Category] = []
    for value in values:
        try:
            result.append(Category(value.strip().lower()))
        except ValueError:
            logger.debug("ignoring unknown category filter {}", value)
    return result
