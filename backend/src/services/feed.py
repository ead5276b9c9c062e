from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set

from loguru import logger

from config import Configuration
from models import Coordinate, FeedFilters, ScoredRecommendation, UserProfile
from services.cache import RecommendationCache
from services.feedback import FeedbackLoop
from services.places import CandidateRequest, CandidateSource, ProviderUnavailable
from services.scoring import ScoringContext, ScoringEngine, apply_business_rules, passes_filters
from services.session import FeedSession, FeedStatus, SessionManager
from services.storage import KeyValueStore


@dataclass
class FeedPage:
    recommendations: List[ScoredRecommendation] = field(default_factory=list)
    radius_miles: float = 0.0
    exhausted: bool = False
    provider_unavailable: bool = False
    from_cache: bool = False
    attempts: int = 0


def next_radius(current: float, ceiling: float) -> float:
    """Step the search radius up the 10 -> 20 -> 30 -> ceiling ladder."""
    if current >= ceiling:
        return ceiling
    if current <= 10:
        step = 20.0
    elif current <= 20:
        step = 30.0
    else:
        step = ceiling
    return min(step, ceiling)


def _radius_key(user_id: str) -> str:
    return f"radius:{user_id}"


class FeedPaginationController:
    def __init__(
        self,
        cfg: Configuration,
        source: CandidateSource,
        scorer: ScoringEngine,
        cache: RecommendationCache,
        feedback: FeedbackLoop,
        store: KeyValueStore,
        sessions: Optional[SessionManager] = None,
    ) -> None:
        self.cfg = cfg
        self.source = source
        self.scorer = scorer
        self.cache = cache
        self.feedback = feedback
        self.store = store
        self.sessions = sessions or SessionManager(ttl_sec=cfg.session_ttl_sec)

    # ---- helpers --------------------------------------------------------

    @staticmethod
    def _require(profile: Optional[UserProfile], location: Optional[Coordinate]) -> None:
        if profile is None or not profile.user_id:
            raise ValueError("user profile is required")
        if location is None:
            raise ValueError("current location is required")

    def _ceiling(self, filters: Optional[FeedFilters]) -> float:
        if filters and filters.max_distance_miles:
            return min(filters.max_distance_miles, self.cfg.max_radius_miles)
        return self.cfg.max_radius_miles

    def _reset_radius(self, filters: Optional[FeedFilters]) -> float:
        if filters and filters.max_distance_miles:
            return self._ceiling(filters)
        return self.cfg.default_radius_miles

    async def _initial_radius(self, profile: UserProfile, filters: Optional[FeedFilters]) -> float:
        """Radius for opening the feed; the saved preference applies only here."""
        if filters and filters.max_distance_miles:
            return self._ceiling(filters)
        stored = await self.store.get(_radius_key(profile.user_id))
        for pref in (stored, profile.last_search_radius_miles):
            if pref and float(pref) > self.cfg.default_radius_miles:
                return min(float(pref), self.cfg.max_radius_miles)
        return self.cfg.default_radius_miles

    async def _persist_radius(self, profile: UserProfile, radius: float) -> None:
        await self.store.set(_radius_key(profile.user_id), radius)
        profile.last_search_radius_miles = radius
        logger.info("saved radius preference {} mi for {}", radius, profile.user_id)

    async def _context(
        self,
        profile: UserProfile,
        location: Coordinate,
        filters: Optional[FeedFilters],
        now: Optional[datetime],
        blocked: Set[str],
    ) -> ScoringContext:
        snapshot = await self.feedback.snapshot(profile.user_id, profile.interests)
        return ScoringContext(
            profile=profile,
            location=location,
            now=now or datetime.now(),
            time_of_day=filters.time_of_day if filters else None,
            feedback=snapshot,
            blocked_ids=blocked,
        )

    async def _source(
        self,
        session: FeedSession,
        profile: UserProfile,
        location: Coordinate,
        filters: Optional[FeedFilters],
        now: Optional[datetime],
    ) -> FeedPage:
        """Run the radius-expanding sourcing loop for one call."""
        cfg = self.cfg
        blocked = await self.cache.blocked_ids(profile.user_id)
        context = await self._context(profile, location, filters, now, blocked)
        ceiling = self._ceiling(filters)
        filtered = bool(filters and filters.max_distance_miles)
        categories = list(filters.categories) if filters else []

        seen = set(session.shown_provider_ids) | blocked
        fresh: list[ScoredRecommendation] = []
        attempts = 0
        failures = 0
        page = FeedPage()

        while attempts < cfg.max_attempts and len(fresh) < cfg.batch_size:
            attempts += 1
            radius = session.current_radius_miles
            request = CandidateRequest(
                coordinate=location,
                radius_miles=radius,
                categories=categories,
                exclude_provider_ids=set(seen),
                max_results=cfg.places_max_results,
            )
            try:
                candidates = await self.source.fetch(request)
            except ProviderUnavailable as exc:
                logger.warning("provider unavailable at {} mi: {}", radius, exc)
                failures += 1
                candidates = []

            hours = await self.source.fetch_hours(candidates) if cfg.fetch_missing_hours and candidates else None
            ranked = self.scorer.rank(candidates, context, filters, hours_by_id=hours)
            new = [r for r in ranked if r.provider_id not in seen]
            for rec in new[: cfg.batch_size - len(fresh)]:
                seen.add(rec.provider_id)
                fresh.append(rec)
            logger.debug(
                "attempt {} for {}: radius={} candidates={} new={}",
                attempts, profile.user_id, radius, len(candidates), len(new),
            )

            if len(new) >= cfg.min_new_per_attempt:
                break
            if radius < ceiling:
                session.current_radius_miles = next_radius(radius, ceiling)
                logger.info("expanding radius {} -> {} mi for {}", radius, session.current_radius_miles, profile.user_id)
                continue
            if new:
                break
            if filtered:
                session.exhausted = True
                logger.info("feed exhausted for {} at filter ceiling {} mi", profile.user_id, ceiling)
                break
            if attempts >= cfg.min_attempts_at_ceiling:
                page.exhausted = True
                logger.info("no new results for {} at {} mi after {} attempts", profile.user_id, radius, attempts)
                break

        if not fresh and session.current_radius_miles >= ceiling and not filtered:
            page.exhausted = True

        fresh.sort(key=lambda r: (-r.score.final_score, r.distance_miles))
        fresh = apply_business_rules(fresh)
        session.shown_provider_ids.update(r.provider_id for r in fresh)
        page.recommendations = fresh
        page.radius_miles = session.current_radius_miles
        page.exhausted = page.exhausted or session.exhausted
        page.provider_unavailable = attempts > 0 and failures == attempts
        page.attempts = attempts
        return page

    def _begin(self, session: FeedSession) -> None:
        session.in_flight = True
        session.status = FeedStatus.SOURCING

    def _finish(self, session: FeedSession) -> None:
        session.in_flight = False
        session.status = FeedStatus.EXHAUSTED if session.exhausted else FeedStatus.READY

    # ---- operations -----------------------------------------------------

    async def initial_fetch(
        self,
        profile: UserProfile,
        location: Coordinate,
        filters: Optional[FeedFilters] = None,
        now: Optional[datetime] = None,
    ) -> FeedPage:
        """Open the feed: serve a valid cached batch or source a fresh one."""
        self._require(profile, location)
        radius = await self._initial_radius(profile, filters)
        if profile.interests:
            await self.feedback.remember_interests(profile.user_id, profile.interests)
        session = self.sessions.get_or_create(profile.user_id, radius)
        async with session.lock:
            session.reset(radius)
            self._begin(session)
            try:
                cached = await self.cache.load(profile.user_id)
                if cached is not None:
                    suppressed = await self.feedback.suppressed_ids(profile.user_id)
                    recs = [
                        r for r in cached.recommendations
                        if r.provider_id not in suppressed and passes_filters(r.candidate, filters, location)
                    ]
                    if recs:
                        session.shown_provider_ids.update(r.provider_id for r in recs)
                        logger.info("serving {} cached recommendations for {}", len(recs), profile.user_id)
                        return FeedPage(recommendations=recs, radius_miles=radius, from_cache=True)

                page = await self._source(session, profile, location, filters, now)
                if page.recommendations:
                    await self.cache.save(profile.user_id, page.recommendations, mode="replace")
                logger.info("sourced {} recommendations for {} within {} mi", len(page.recommendations), profile.user_id, page.radius_miles)
                return page
            finally:
                self._finish(session)

    async def load_more(
        self,
        profile: UserProfile,
        location: Coordinate,
        filters: Optional[FeedFilters] = None,
        now: Optional[datetime] = None,
    ) -> Optional[FeedPage]:
        """Next page of unseen venues, or None while a fetch is in flight or cooling down."""
        self._require(profile, location)
        session = self.sessions.get(profile.user_id)
        if session is None:
            # expired or never opened: venues in the cached batch are already on screen
            session = self.sessions.get_or_create(profile.user_id, await self._initial_radius(profile, filters))
            session.shown_provider_ids.update(await self.cache.cached_ids(profile.user_id))
        if session.in_flight or session.lock.locked() or session.in_cooldown(self.cfg.load_more_cooldown_sec):
            logger.debug("load-more for {} ignored (in flight or cooling down)", profile.user_id)
            return None
        if session.exhausted:
            return FeedPage(radius_miles=session.current_radius_miles, exhausted=True)

        async with session.lock:
            self._begin(session)
            try:
                start_radius = session.current_radius_miles
                page = await self._source(session, profile, location, filters, now)
                if page.recommendations:
                    await self.cache.save(profile.user_id, page.recommendations, mode="append")
                if session.current_radius_miles > start_radius and not page.provider_unavailable:
                    await self._persist_radius(profile, session.current_radius_miles)
                return page
            finally:
                session.last_load_more = time.monotonic()
                self._finish(session)

    async def refresh(
        self,
        profile: UserProfile,
        location: Coordinate,
        filters: Optional[FeedFilters] = None,
        now: Optional[datetime] = None,
    ) -> FeedPage:
        """Start over at the default radius: forget shown venues and re-source, replacing the cached batch."""
        self._require(profile, location)
        if profile.interests:
            await self.feedback.remember_interests(profile.user_id, profile.interests)
        radius = self._reset_radius(filters)
        session = self.sessions.get_or_create(profile.user_id, radius)
        async with session.lock:
            session.reset(radius)
            self._begin(session)
            try:
                page = await self._source(session, profile, location, filters, now)
                if page.recommendations:
                    await self.cache.save(profile.user_id, page.recommendations, mode="replace")
                else:
                    await self.cache.clear(profile.user_id)
                return page
            finally:
                self._finish(session)

    def status(self, user_id: str) -> FeedStatus:
        session = self.sessions.get(user_id)
        return session.status if session else FeedStatus.IDLE
