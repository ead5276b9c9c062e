from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from models import Category, FeedbackRecord, RecommendationSignal
from services.storage import KeyValueStore, dump, load


RATINGS = ("thumbs_up", "thumbs_down")
SIGNAL_STATUSES = ("accepted", "declined", "not_interested")
PROFILE_LIST_LIMIT = 10
USERS_KEY = "feedback:users"
DEFAULT_BUDGET_LEVEL = 2.0
DEFAULT_DISTANCE_MILES = 5.0
DECLINED_RESURFACE_DAYS = 3


@dataclass
class LearnedPreferences:
    user_id: str
    interests: List[str] = field(default_factory=list)
    favorite_categories: List[str] = field(default_factory=list)
    disliked_categories: List[str] = field(default_factory=list)
    budget_level: Optional[float] = None
    preferred_distance_miles: Optional[float] = None


@dataclass
class FeedbackSnapshot:
    """Committed feedback inputs for one user's feedback and collaborative scores."""

    liked_venues: Set[str] = field(default_factory=set)
    disliked_venues: Set[str] = field(default_factory=set)
    rejected_venues: Set[str] = field(default_factory=set)
    liked_categories: Set[str] = field(default_factory=set)
    disliked_categories: Set[str] = field(default_factory=set)
    budget_level: Optional[float] = None
    preferred_distance_miles: Optional[float] = None
    # (positive, total) votes from users sharing an interest
    venue_votes: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    category_votes: Dict[str, Tuple[int, int]] = field(default_factory=dict)


def _cap(values: List[str]) -> List[str]:
    return values[-PROFILE_LIST_LIMIT:]


def _category_value(category: Optional[Category | str]) -> Optional[str]:
    if category is None:
        return None
    return category.value if isinstance(category, Category) else str(category)


def _budget(prefs: LearnedPreferences) -> float:
    return prefs.budget_level if prefs.budget_level is not None else DEFAULT_BUDGET_LEVEL


def learn_from_feedback(prefs: LearnedPreferences, record: FeedbackRecord) -> LearnedPreferences:
    category = _category_value(record.category)
    if record.rating == "thumbs_up":
        if category:
            if category not in prefs.favorite_categories:
                prefs.favorite_categories.append(category)
            prefs.disliked_categories = [c for c in prefs.disliked_categories if c != category]
        if record.price_level:
            prefs.budget_level = float(round(_budget(prefs) * 0.7 + record.price_level * 0.3))
    elif record.rating == "thumbs_down":
        for tag in record.tags:
            if tag == "too_expensive":
                prefs.budget_level = max(1.0, _budget(prefs) - 0.5)
            elif tag == "too_far":
                current = prefs.preferred_distance_miles or DEFAULT_DISTANCE_MILES
                prefs.preferred_distance_miles = max(1.0, current * 0.8)
            elif tag in ("boring", "too_crowded") and category:
                if category not in prefs.disliked_categories:
                    prefs.disliked_categories.append(category)
                prefs.favorite_categories = [c for c in prefs.favorite_categories if c != category]
    prefs.favorite_categories = _cap(prefs.favorite_categories)
    prefs.disliked_categories = _cap(prefs.disliked_categories)
    return prefs


class FeedbackLoop:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    # ---- writes ---------------------------------------------------------

    async def _register_user(self, user_id: str) -> None:
        users = await self.store.get(USERS_KEY) or []
        if user_id not in users:
            users.append(user_id)
            await self.store.set(USERS_KEY, users)

    async def submit(self, record: FeedbackRecord) -> FeedbackRecord:
        """Persist a feedback record and update the learned profile."""
        if record.rating not in RATINGS:
            raise ValueError(f"unknown rating: {record.rating}")
        if not record.feedback_id:
            record.feedback_id = uuid.uuid4().hex
        record.recorded_at = record.recorded_at or datetime.now()

        async with self._lock:
            key = f"feedback:{record.user_id}"
            records = await self.store.get(key) or []
            records.append(dump(FeedbackRecord, record))
            await self.store.set(key, records)
            await self._register_user(record.user_id)

            prefs = learn_from_feedback(await self._preferences(record.user_id), record)
            await self.store.set(f"profile:{record.user_id}", dump(LearnedPreferences, prefs))

        logger.info("feedback {} from {} on {}", record.rating, record.user_id, record.venue_id)
        return record

    def submit_nowait(self, record: FeedbackRecord) -> asyncio.Task:
        task = asyncio.create_task(self.submit(record))
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("feedback write failed: {}", task.exception())

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def record_signal(
        self,
        user_id: str,
        provider_id: str,
        category: Optional[Category] = None,
        status: str = "accepted",
    ) -> RecommendationSignal:
        if status not in SIGNAL_STATUSES:
            raise ValueError(f"unknown status: {status}")
        signal = RecommendationSignal(
            user_id=user_id,
            venue_id=provider_id,
            status=status,
            category=category,
            recorded_at=datetime.now(),
        )
        async with self._lock:
            key = f"signals:{user_id}"
            signals = await self.store.get(key) or []
            signals.append(dump(RecommendationSignal, signal))
            await self.store.set(key, signals)
            await self._register_user(user_id)
        return signal

    async def remember_interests(self, user_id: str, interests: Iterable[str]) -> None:
        async with self._lock:
            prefs = await self._preferences(user_id)
            prefs.interests = [i.lower() for i in interests]
            await self.store.set(f"profile:{user_id}", dump(LearnedPreferences, prefs))
            await self._register_user(user_id)

    # ---- reads ----------------------------------------------------------

    async def _preferences(self, user_id: str) -> LearnedPreferences:
        raw = await self.store.get(f"profile:{user_id}")
        if raw is None:
            return LearnedPreferences(user_id=user_id)
        return load(LearnedPreferences, raw)

    async def preferences(self, user_id: str) -> LearnedPreferences:
        return await self._preferences(user_id)

    async def records(self, user_id: str) -> List[FeedbackRecord]:
        raw = await self.store.get(f"feedback:{user_id}") or []
        return load(List[FeedbackRecord], raw)

    async def signals(self, user_id: str) -> List[RecommendationSignal]:
        raw = await self.store.get(f"signals:{user_id}") or []
        return load(List[RecommendationSignal], raw)

    async def suppressed_ids(self, user_id: str, now: Optional[datetime] = None) -> Set[str]:
        """Venues a cached batch must not re-serve.

        Accepted and not-interested venues stay hidden; declined ones come back
        after DECLINED_RESURFACE_DAYS. The latest signal per venue wins.
        """
        now = now or datetime.now()
        latest: Dict[str, RecommendationSignal] = {}
        for signal in await self.signals(user_id):
            latest[signal.venue_id] = signal
        hidden: Set[str] = set()
        for venue_id, signal in latest.items():
            if signal.status in ("accepted", "not_interested"):
                hidden.add(venue_id)
            elif signal.status == "declined" and signal.recorded_at is not None:
                if now - signal.recorded_at < timedelta(days=DECLINED_RESURFACE_DAYS):
                    hidden.add(venue_id)
        return hidden

    async def snapshot(self, user_id: str, interests: Iterable[str] = ()) -> FeedbackSnapshot:
        snap = FeedbackSnapshot()
        prefs = await self._preferences(user_id)
        snap.liked_categories = set(prefs.favorite_categories)
        snap.disliked_categories = set(prefs.disliked_categories)
        snap.budget_level = prefs.budget_level
        snap.preferred_distance_miles = prefs.preferred_distance_miles

        for record in await self.records(user_id):
            if record.rating == "thumbs_up":
                snap.liked_venues.add(record.venue_id)
            else:
                snap.disliked_venues.add(record.venue_id)
        for signal in await self.signals(user_id):
            if signal.status in ("declined", "not_interested"):
                snap.rejected_venues.add(signal.venue_id)
            else:
                snap.rejected_venues.discard(signal.venue_id)

        wanted = {i.lower() for i in interests} or set(prefs.interests)
        if not wanted:
            return snap
        for other in await self.store.get(USERS_KEY) or []:
            if other == user_id:
                continue
            other_prefs = await self._preferences(other)
            if not wanted & set(other_prefs.interests):
                continue
            for venue_id, category, positive in await self._votes(other):
                _tally(snap.venue_votes, venue_id, positive)
                if category:
                    _tally(snap.category_votes, category, positive)
        return snap

    async def _votes(self, user_id: str) -> List[Tuple[str, Optional[str], bool]]:
        votes: list[Tuple[str, Optional[str], bool]] = []
        for record in await self.records(user_id):
            votes.append((record.venue_id, _category_value(record.category), record.rating == "thumbs_up"))
        for signal in await self.signals(user_id):
            votes.append((signal.venue_id, _category_value(signal.category), signal.status == "accepted"))
        return votes

    async def stats(self, user_id: str) -> dict:
        records = await self.records(user_id)
        total = len(records)
        ups = sum(1 for r in records if r.rating == "thumbs_up")
        counts: Dict[str, int] = {}
        for record in records:
            category = _category_value(record.category)
            if record.rating == "thumbs_up" and category:
                counts[category] = counts.get(category, 0) + 1
        top = sorted(counts, key=lambda c: (-counts[c], c))[:3]
        return {
            "total_feedback": total,
            "thumbs_up": ups,
            "thumbs_down": total - ups,
            "satisfaction_rate": round(ups / total * 100, 1) if total else 0.0,
            "top_categories": top,
        }


def _tally(votes: Dict[str, Tuple[int, int]], key: str, positive: bool) -> None:
    up, total = votes.get(key, (0, 0))
    votes[key] = (up + (1 if positive else 0), total + 1)
