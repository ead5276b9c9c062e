from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from config import Configuration
from models import (
    Coordinate,
    FeedbackRecord,
    FeedFilters,
    ScheduledEvent,
    ScoredRecommendation,
    UserProfile,
)
from services.business_hours import format_day_hours, today_hours
from services.cache import RecommendationCache
from services.conflicts import ConflictDetector, InMemoryCalendar, describe
from services.feed import FeedPage, FeedPaginationController
from services.feedback import FeedbackLoop
from services.places import CandidateSource
from services.scoring import ScoringEngine, categories_from
from services.storage import KeyValueStore, build_store
from utils import format_distance


load_dotenv()

app = FastAPI(title="Activity Feed Engine")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class Engine:
    cfg: Configuration
    store: KeyValueStore
    cache: RecommendationCache
    feedback: FeedbackLoop
    calendar: InMemoryCalendar
    conflicts: ConflictDetector
    feed: FeedPaginationController


def build_engine(cfg: Configuration, source: Optional[CandidateSource] = None) -> Engine:
    if source is None:
        cfg.require_places()
        source = CandidateSource(cfg)
    store = build_store(cfg.cache_dir)
    cache = RecommendationCache(store, photo_valid_ratio=cfg.photo_valid_ratio, max_age_hours=cfg.cache_max_age_hours)
    feedback = FeedbackLoop(store)
    calendar = InMemoryCalendar()
    scorer = ScoringEngine(photo_url=source.photo_url)
    feed = FeedPaginationController(cfg, source, scorer, cache, feedback, store)
    logger.info("engine ready: {}", cfg.log_summary())
    return Engine(
        cfg=cfg,
        store=store,
        cache=cache,
        feedback=feedback,
        calendar=calendar,
        conflicts=ConflictDetector(calendar),
        feed=feed,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(Configuration.from_env())
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    _engine = engine


# ---- request / response models --------------------------------------------


class LocationPayload(BaseModel):
    lat: float
    lon: float

    def to_coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.lat, longitude=self.lon)


class ProfilePayload(BaseModel):
    user_id: str
    interests: List[str] = []
    home: Optional[LocationPayload] = None
    work: Optional[LocationPayload] = None
    preferred_times: List[str] = []
    max_distance_miles: float = 5.0
    budget_level: Optional[int] = None
    last_search_radius_miles: Optional[float] = None

    def to_profile(self) -> UserProfile:
        return UserProfile(
            user_id=self.user_id,
            interests=list(self.interests),
            home=self.home.to_coordinate() if self.home else None,
            work=self.work.to_coordinate() if self.work else None,
            preferred_times=list(self.preferred_times),
            max_distance_miles=self.max_distance_miles,
            budget_level=self.budget_level,
            last_search_radius_miles=self.last_search_radius_miles,
        )


class FiltersPayload(BaseModel):
    categories: List[str] = []
    max_distance_miles: Optional[float] = Field(None, gt=0)
    time_of_day: Optional[str] = Field(None, pattern="^(morning|afternoon|evening)$")
    price_levels: List[int] = []

    def to_filters(self) -> FeedFilters:
        return FeedFilters(
            categories=categories_from(self.categories),
            max_distance_miles=self.max_distance_miles,
            time_of_day=self.time_of_day,
            price_levels=list(self.price_levels),
        )


class FeedRequest(BaseModel):
    profile: ProfilePayload
    location: Optional[LocationPayload] = None
    filters: Optional[FiltersPayload] = None
    now: Optional[datetime] = Field(None, description="Override for the current time")


class RecommendationPayload(BaseModel):
    recommendation_id: str
    provider_id: str
    name: str
    category: str
    address: Optional[str] = None
    lat: float
    lon: float
    rating: Optional[float] = None
    review_count: int = 0
    price_level: Optional[int] = None
    photo_url: Optional[str] = None
    distance_miles: float
    distance_label: str
    suggested_visit_time: Optional[datetime] = None
    hours_today: str
    hours_estimated: bool
    explanation: str
    is_sponsored: bool = False
    scores: Dict[str, float] = {}
    final_score: float


class FeedResponse(BaseModel):
    recommendations: List[RecommendationPayload] = []
    radius_miles: float = 0.0
    exhausted: bool = False
    provider_unavailable: bool = False
    from_cache: bool = False
    skipped: bool = False
    status: str


class ScheduleCheckRequest(BaseModel):
    user_id: str
    start_time: datetime
    end_time: datetime
    location: Optional[LocationPayload] = None


class ScheduleEventRequest(BaseModel):
    id: str
    user_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[LocationPayload] = None


class FeedbackRequest(BaseModel):
    user_id: str
    venue_id: str
    rating: str = Field(..., pattern="^(thumbs_up|thumbs_down)$")
    category: Optional[str] = None
    recommendation_id: Optional[str] = None
    price_level: Optional[int] = None
    tags: List[str] = []
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None


class SignalRequest(BaseModel):
    user_id: str
    venue_id: str
    status: str = Field(..., pattern="^(accepted|declined|not_interested)$")
    category: Optional[str] = None


class BlockRequest(BaseModel):
    user_id: str
    provider_id: str
    name: str = ""
    reason: str = ""


def _to_payload(rec: ScoredRecommendation, now: Optional[datetime]) -> RecommendationPayload:
    c = rec.candidate
    return RecommendationPayload(
        recommendation_id=rec.recommendation_id,
        provider_id=c.provider_id,
        name=c.name,
        category=c.category.value,
        address=c.address,
        lat=c.coordinate.latitude,
        lon=c.coordinate.longitude,
        rating=c.rating,
        review_count=c.review_count,
        price_level=c.price_level,
        photo_url=rec.photo_url,
        distance_miles=rec.distance_miles,
        distance_label=format_distance(rec.distance_miles),
        suggested_visit_time=rec.suggested_visit_time,
        hours_today=format_day_hours(today_hours(rec.business_hours, now)),
        hours_estimated=rec.business_hours.is_estimated,
        explanation=rec.explanation,
        is_sponsored=c.is_sponsored,
        scores=rec.score.as_dict(),
        final_score=rec.score.final_score,
    )


def _page_response(engine: Engine, user_id: str, page: Optional[FeedPage], now: Optional[datetime]) -> FeedResponse:
    status = engine.feed.status(user_id).value
    if page is None:
        return FeedResponse(skipped=True, status=status)
    return FeedResponse(
        recommendations=[_to_payload(r, now) for r in page.recommendations],
        radius_miles=page.radius_miles,
        exhausted=page.exhausted,
        provider_unavailable=page.provider_unavailable,
        from_cache=page.from_cache,
        status=status,
    )


def _single_category(value: Optional[str]):
    if not value:
        return None
    found = categories_from([value])
    return found[0] if found else None


# ---- endpoints ------------------------------------------------------------


@app.get("/healthz")
def healthz() -> dict:
    cfg = Configuration.from_env()
    logger.info("cfg: {}", cfg.log_summary())
    stats: Dict[str, Any] = _engine.cache.stats() if _engine is not None else {}
    return {"status": "ok", "cache": stats}


async def _feed_call(kind: str, req: FeedRequest) -> FeedResponse:
    try:
        engine = get_engine()
        profile = req.profile.to_profile()
        location = req.location.to_coordinate() if req.location else None
        filters = req.filters.to_filters() if req.filters else None
        if kind == "open":
            page = await engine.feed.initial_fetch(profile, location, filters, req.now)
        elif kind == "more":
            page = await engine.feed.load_more(profile, location, filters, req.now)
        else:
            page = await engine.feed.refresh(profile, location, filters, req.now)
        return _page_response(engine, profile.user_id, page, req.now)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("feed {} failed: {}", kind, exc)
        raise HTTPException(status_code=500, detail="internal error")


@app.post("/feed", response_model=FeedResponse)
async def open_feed(req: FeedRequest) -> FeedResponse:
    return await _feed_call("open", req)


@app.post("/feed/more", response_model=FeedResponse)
async def load_more(req: FeedRequest) -> FeedResponse:
    return await _feed_call("more", req)


@app.post("/feed/refresh", response_model=FeedResponse)
async def refresh_feed(req: FeedRequest) -> FeedResponse:
    return await _feed_call("refresh", req)


@app.post("/schedule/events")
async def add_event(req: ScheduleEventRequest) -> dict:
    engine = get_engine()
    if req.end_time <= req.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    await engine.calendar.add(
        ScheduledEvent(
            id=req.id,
            user_id=req.user_id,
            start_time=req.start_time,
            end_time=req.end_time,
            title=req.title,
            coordinate=req.location.to_coordinate() if req.location else None,
        )
    )
    return {"ok": True}


@app.post("/schedule/check")
async def check_schedule(req: ScheduleCheckRequest) -> dict:
    engine = get_engine()
    try:
        decision = await engine.conflicts.check(
            req.user_id,
            req.start_time,
            req.end_time,
            req.location.to_coordinate() if req.location else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return describe(decision)


@app.post("/feedback")
async def submit_feedback(req: FeedbackRequest) -> dict:
    engine = get_engine()
    record = FeedbackRecord(
        user_id=req.user_id,
        venue_id=req.venue_id,
        rating=req.rating,
        completed_at=req.completed_at or datetime.now(),
        category=_single_category(req.category),
        recommendation_id=req.recommendation_id,
        price_level=req.price_level,
        tags=list(req.tags),
        notes=req.notes,
    )
    try:
        saved = await engine.feedback.submit(record)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"feedback_id": saved.feedback_id}


@app.get("/feedback/{user_id}/stats")
async def feedback_stats(user_id: str) -> dict:
    return await get_engine().feedback.stats(user_id)


@app.post("/signals")
async def record_signal(req: SignalRequest) -> dict:
    engine = get_engine()
    signal = await engine.feedback.record_signal(
        req.user_id, req.venue_id, _single_category(req.category), req.status
    )
    return {"ok": True, "status": signal.status}


@app.post("/blocked")
async def block_venue(req: BlockRequest) -> dict:
    engine = get_engine()
    venue = await engine.cache.block(req.user_id, req.provider_id, req.name, req.reason)
    return {"provider_id": venue.provider_id, "blocked_at": venue.blocked_at.isoformat()}


@app.delete("/blocked/{user_id}/{provider_id}")
async def unblock_venue(user_id: str, provider_id: str) -> dict:
    removed = await get_engine().cache.unblock(user_id, provider_id)
    if not removed:
        raise HTTPException(status_code=404, detail="venue is not blocked")
    return {"ok": True}


@app.get("/blocked/{user_id}")
async def list_blocked(user_id: str) -> List[dict]:
    blocked = await get_engine().cache.list_blocked(user_id)
    return [
        {
            "provider_id": b.provider_id,
            "name": b.name,
            "reason": b.reason,
            "blocked_at": b.blocked_at.isoformat(),
        }
        for b in blocked
    ]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8010, reload=True)
