from __future__ import annotations

import asyncio

import pytest

from fakes import DALLAS, MONDAY_NOON, FakeSource, make_candidate, make_config, make_controller, make_profile
from models import FeedFilters
from services.feed import next_radius
from services.scoring import ScoringContext, ScoringEngine
from services.session import FeedStatus


def _ids(page) -> set[str]:
    return {r.provider_id for r in page.recommendations}


def test_next_radius_ladder() -> None:
    assert next_radius(10, 31) == 20
    assert next_radius(15, 31) == 30
    assert next_radius(20, 31) == 30
    assert next_radius(30, 31) == 31
    assert next_radius(31, 31) == 31
    assert next_radius(10, 15) == 15


def test_dallas_load_more_expands_radius() -> None:
    first = [make_candidate(pid) for pid in ("A", "B", "C")]
    wider = first + [make_candidate(pid, lat=32.9, lon=-96.9) for pid in ("D", "E", "F")]
    source = FakeSource(by_radius={10.0: first, 20.0: wider})
    controller, store, cache = make_controller(source)
    profile = make_profile()

    async def run():
        page = await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        assert _ids(page) == {"A", "B", "C"}
        assert page.radius_miles == 10

        more = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        assert more is not None
        assert _ids(more) == {"D", "E", "F"}
        assert more.radius_miles == 20
        assert not more.exhausted

        session = controller.sessions.get("u1")
        assert session.current_radius_miles == 20
        assert session.shown_provider_ids == {"A", "B", "C", "D", "E", "F"}
        assert await store.get("radius:u1") == 20
        assert profile.last_search_radius_miles == 20

        batch = await cache.load("u1")
        assert batch is not None
        assert len(batch.recommendations) == 6

    asyncio.run(run())
    assert [r.radius_miles for r in source.requests] == [10, 10, 20]


def test_pages_never_repeat_a_venue() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C", "D")])
    controller, _, _ = make_controller(source, make_config(batch_size=2, min_new_per_attempt=1))
    profile = make_profile()

    async def run():
        pages = [await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)]
        pages.append(await controller.load_more(profile, DALLAS, now=MONDAY_NOON))
        return pages

    first, second = asyncio.run(run())
    assert len(first.recommendations) == 2
    assert len(second.recommendations) == 2
    assert not (_ids(first) & _ids(second))


def test_exhaustion_without_filter_is_not_permanent() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, _ = make_controller(source)
    profile = make_profile()

    async def run():
        await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        first = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        second = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        return first, second

    first, second = asyncio.run(run())
    assert first.exhausted and not first.recommendations
    assert first.radius_miles == 31
    assert first.attempts == 4
    # later calls keep searching at the ceiling
    assert second is not None
    assert second.exhausted
    assert second.attempts == 3
    session = controller.sessions.get("u1")
    assert session.exhausted is False
    assert session.status == FeedStatus.READY


def test_exhaustion_with_distance_filter_is_permanent() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, _ = make_controller(source)
    profile = make_profile()
    filters = FeedFilters(max_distance_miles=15)

    async def run():
        opened = await controller.initial_fetch(profile, DALLAS, filters, now=MONDAY_NOON)
        assert opened.radius_miles == 15
        first = await controller.load_more(profile, DALLAS, filters, now=MONDAY_NOON)
        calls = len(source.requests)
        second = await controller.load_more(profile, DALLAS, filters, now=MONDAY_NOON)
        assert len(source.requests) == calls
        refreshed = await controller.refresh(profile, DALLAS, filters, now=MONDAY_NOON)
        return first, second, refreshed

    first, second, refreshed = asyncio.run(run())
    assert first.exhausted and second.exhausted
    assert _ids(refreshed) == {"A", "B", "C"}
    assert not refreshed.exhausted
    assert controller.status("u1") == FeedStatus.READY


def test_load_more_cooldown_follows_previous_load_more() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, _ = make_controller(source, make_config(load_more_cooldown_sec=60))
    profile = make_profile()

    async def run():
        await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        # opening the feed does not start the cooldown
        first = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        calls = len(source.requests)
        second = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        return first, second, calls

    first, second, calls = asyncio.run(run())
    assert first is not None
    assert second is None
    assert len(source.requests) == calls


def test_load_more_ignored_while_in_flight() -> None:
    source = FakeSource(by_radius={10.0: [make_candidate(pid) for pid in ("A", "B", "C")]})
    controller, _, _ = make_controller(source)
    profile = make_profile()

    async def run():
        source.gate = asyncio.Event()
        source.entered = asyncio.Event()
        first = asyncio.create_task(controller.load_more(profile, DALLAS, now=MONDAY_NOON))
        await source.entered.wait()
        assert controller.status("u1") == FeedStatus.SOURCING
        concurrent = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        source.gate.set()
        return concurrent, await first

    concurrent, first = asyncio.run(run())
    assert concurrent is None
    assert _ids(first) == {"A", "B", "C"}


def test_provider_failure_is_reported_not_raised() -> None:
    source = FakeSource(fail=True)
    controller, _, cache = make_controller(source)

    async def run():
        page = await controller.initial_fetch(make_profile(), DALLAS, now=MONDAY_NOON)
        return page, await cache.load("u1")

    page, cached = asyncio.run(run())
    assert page.provider_unavailable
    assert page.recommendations == []
    assert cached is None


def test_initial_fetch_serves_valid_cache_without_blocked() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, cache = make_controller(source)
    profile = make_profile()

    async def run():
        await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        await cache.block("u1", "B", "Venue B", "not my thing")
        return await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)

    page = asyncio.run(run())
    assert page.from_cache
    assert _ids(page) == {"A", "C"}
    assert len(source.requests) == 1


def test_blocked_venues_are_never_sourced() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C", "D")])
    controller, _, cache = make_controller(source)

    async def run():
        await cache.block("u1", "C")
        return await controller.refresh(make_profile(), DALLAS, now=MONDAY_NOON)

    page = asyncio.run(run())
    assert "C" not in _ids(page)
    assert "C" in source.requests[0].exclude_provider_ids


def test_persisted_radius_seeds_next_session() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, store, _ = make_controller(source)

    async def run():
        await store.set("radius:u1", 30)
        return await controller.initial_fetch(make_profile(), DALLAS, now=MONDAY_NOON)

    page = asyncio.run(run())
    assert page.radius_miles == 30
    assert source.requests[0].radius_miles == 30


def test_missing_location_is_rejected() -> None:
    controller, _, _ = make_controller(FakeSource())
    with pytest.raises(ValueError):
        asyncio.run(controller.initial_fetch(make_profile(), None))


def test_similar_users_feedback_reaches_collaborative_score() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, _ = make_controller(source)

    async def run():
        await controller.initial_fetch(make_profile("bob", interests=["dining"]), DALLAS, now=MONDAY_NOON)
        await controller.feedback.record_signal("bob", "A", None, "accepted")
        page = await controller.refresh(make_profile("alice", interests=["dining"]), DALLAS, now=MONDAY_NOON)
        return {r.provider_id: r.score.collaborative_score for r in page.recommendations}

    scores = asyncio.run(run())
    assert scores["A"] == pytest.approx(200 / 3, abs=1e-3)
    assert scores["B"] == 50.0


def test_refresh_returns_to_default_radius() -> None:
    first = [make_candidate(pid) for pid in ("A", "B", "C")]
    wider = first + [make_candidate(pid, lat=32.9, lon=-96.9) for pid in ("D", "E", "F")]
    source = FakeSource(by_radius={10.0: first, 20.0: wider})
    controller, store, _ = make_controller(source)
    profile = make_profile()

    async def run():
        await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        refreshed = await controller.refresh(profile, DALLAS, now=MONDAY_NOON)
        return refreshed, await store.get("radius:u1")

    refreshed, saved = asyncio.run(run())
    assert refreshed.radius_miles == 10
    assert source.requests[-1].radius_miles == 10
    assert _ids(refreshed) == {"A", "B", "C"}
    # the saved preference still seeds the next opening
    assert saved == 20


def test_expired_session_does_not_repeat_cached_venues() -> None:
    first = [make_candidate(pid) for pid in ("A", "B", "C")]
    wider = first + [make_candidate(pid, lat=32.9, lon=-96.9) for pid in ("D", "E", "F")]
    source = FakeSource(by_radius={10.0: first, 20.0: wider})
    controller, _, _ = make_controller(source)
    profile = make_profile()

    async def run():
        opened = await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        controller.sessions.reset("u1")
        more = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        return opened, more

    opened, more = asyncio.run(run())
    assert _ids(opened) == {"A", "B", "C"}
    assert _ids(more) == {"D", "E", "F"}
    assert {"A", "B", "C"} <= source.requests[-1].exclude_provider_ids


def test_cached_batch_skips_venues_with_signals() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C", "D")])
    controller, _, _ = make_controller(source)
    profile = make_profile()

    async def run():
        await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        await controller.feedback.record_signal("u1", "A", None, "not_interested")
        await controller.feedback.record_signal("u1", "B", None, "accepted")
        await controller.feedback.record_signal("u1", "C", None, "declined")
        return await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)

    page = asyncio.run(run())
    assert page.from_cache
    assert _ids(page) == {"D"}
    assert len(source.requests) == 1


def test_stale_cached_batch_is_sourced_again() -> None:
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, _ = make_controller(source, make_config(cache_max_age_hours=0))

    async def run():
        await controller.initial_fetch(make_profile(), DALLAS, now=MONDAY_NOON)
        return await controller.initial_fetch(make_profile(), DALLAS, now=MONDAY_NOON)

    page = asyncio.run(run())
    assert not page.from_cache
    assert len(source.requests) == 2


def test_batch_below_photo_threshold_is_replaced() -> None:
    good = "https://places.googleapis.com/v1/places/{pid}/photos/p1/media?key=k"
    stale = [make_candidate(f"old{idx}") for idx in range(100)]
    source = FakeSource(default=[make_candidate(pid) for pid in ("A", "B", "C")])
    controller, _, cache = make_controller(source)
    context = ScoringContext(profile=make_profile(), location=DALLAS, now=MONDAY_NOON)

    async def run():
        recs = [ScoringEngine().score(c, context) for c in stale]
        for idx, rec in enumerate(recs):
            rec.photo_url = good.format(pid=rec.provider_id) if idx < 69 else None
        await cache.save("u1", recs)
        page = await controller.initial_fetch(make_profile(), DALLAS, now=MONDAY_NOON)
        await cache.drain()
        return page, await cache.load("u1")

    page, batch = asyncio.run(run())
    assert not page.from_cache
    assert len(source.requests) == 1
    assert _ids(page) == {"A", "B", "C"}
    assert {r.provider_id for r in batch.recommendations} == {"A", "B", "C"}
    assert cache.stats()["invalid"] == 1


def test_same_three_venues_trigger_one_expansion() -> None:
    nearby = [make_candidate(pid) for pid in ("A", "B", "C")]
    farther = [make_candidate(pid, lat=32.9, lon=-96.9) for pid in ("D", "E", "F")]
    source = FakeSource(by_radius={10.0: nearby, 20.0: nearby + farther})
    controller, _, _ = make_controller(source)
    profile = make_profile()

    async def run():
        opened = await controller.initial_fetch(profile, DALLAS, now=MONDAY_NOON)
        more = await controller.load_more(profile, DALLAS, now=MONDAY_NOON)
        return opened, more

    opened, more = asyncio.run(run())
    assert _ids(opened) == {"A", "B", "C"}
    assert [r.radius_miles for r in source.requests] == [10, 10, 20]
    assert more.radius_miles == 20
    assert _ids(more) == {"D", "E", "F"}
    assert not more.exhausted
