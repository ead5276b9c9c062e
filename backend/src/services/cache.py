from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from loguru import logger

from models import BlockedVenue, CachedRecommendationBatch, ScoredRecommendation
from services.places import is_malformed_photo_url, is_wellformed_photo_url
from services.storage import KeyValueStore, dump, load


class InvalidCachedBatch(Exception):
    pass


def _batch_key(user_id: str) -> str:
    return f"feed:{user_id}"


def _blocked_key(user_id: str) -> str:
    return f"blocked:{user_id}"


class RecommendationCache:
    """Per-user batches of scored recommendations plus the blocked-venue list."""

    def __init__(self, store: KeyValueStore, photo_valid_ratio: float = 0.7, max_age_hours: float = 24.0) -> None:
        self.store = store
        self.photo_valid_ratio = photo_valid_ratio
        self.max_age = timedelta(hours=max_age_hours)
        self._pending: Set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0
        self._invalid = 0
        self._purged = 0

    def validate(self, batch: CachedRecommendationBatch) -> None:
        recs = batch.recommendations
        if not recs:
            raise InvalidCachedBatch("empty batch")
        malformed = sum(1 for r in recs if is_malformed_photo_url(r.photo_url))
        if malformed:
            raise InvalidCachedBatch(f"{malformed} double-encoded photo urls")
        well_formed = sum(1 for r in recs if is_wellformed_photo_url(r.photo_url))
        if well_formed / len(recs) < self.photo_valid_ratio:
            raise InvalidCachedBatch(f"only {well_formed}/{len(recs)} valid photo urls")

    async def _read(self, user_id: str) -> Optional[CachedRecommendationBatch]:
        raw = await self.store.get(_batch_key(user_id))
        if raw is None:
            return None
        return load(CachedRecommendationBatch, raw)

    async def _write(self, batch: CachedRecommendationBatch) -> None:
        await self.store.set(_batch_key(batch.user_id), dump(CachedRecommendationBatch, batch))

    async def load(self, user_id: str, now: Optional[datetime] = None) -> Optional[CachedRecommendationBatch]:
        """Return a usable batch with blocked venues removed, or None on a miss."""
        batch = await self._read(user_id)
        if batch is None or not batch.recommendations:
            self._misses += 1
            return None
        now = now or datetime.now()
        if now - batch.generated_at > self.max_age:
            self._misses += 1
            logger.info("cached batch for {} is stale (generated {})", user_id, batch.generated_at)
            return None
        try:
            self.validate(batch)
        except InvalidCachedBatch as exc:
            self._misses += 1
            self._invalid += 1
            logger.info("cached batch for {} rejected: {}", user_id, exc)
            self._schedule(self.purge_malformed(user_id))
            return None

        blocked = await self.blocked_ids(user_id)
        if blocked:
            batch.recommendations = [r for r in batch.recommendations if r.provider_id not in blocked]
        self._hits += 1
        return batch

    async def save(
        self,
        user_id: str,
        recommendations: Iterable[ScoredRecommendation],
        mode: str = "replace",
    ) -> CachedRecommendationBatch:
        if mode not in ("replace", "append"):
            raise ValueError(f"unknown save mode: {mode}")
        recs = list(recommendations)
        if mode == "append":
            existing = await self._read(user_id)
            if existing is not None:
                seen = {r.provider_id for r in existing.recommendations}
                recs = existing.recommendations + [r for r in recs if r.provider_id not in seen]
        batch = CachedRecommendationBatch(user_id=user_id, recommendations=recs, generated_at=datetime.now())
        await self._write(batch)
        logger.debug("cached {} recommendations for {} ({})", len(recs), user_id, mode)
        return batch

    async def clear(self, user_id: str) -> None:
        await self.store.delete(_batch_key(user_id))

    async def cached_ids(self, user_id: str) -> Set[str]:
        """Provider ids in the stored batch, valid or not."""
        batch = await self._read(user_id)
        return {r.provider_id for r in batch.recommendations} if batch else set()

    async def purge_malformed(self, user_id: str) -> int:
        batch = await self._read(user_id)
        if batch is None:
            return 0
        kept = [r for r in batch.recommendations if not is_malformed_photo_url(r.photo_url)]
        removed = len(batch.recommendations) - len(kept)
        if not removed:
            return 0
        current = await self._read(user_id)
        if current is None or current.generated_at != batch.generated_at:
            logger.debug("batch for {} changed during purge, skipping", user_id)
            return 0
        if kept:
            batch.recommendations = kept
            await self._write(batch)
        else:
            await self.clear(user_id)
        self._purged += removed
        logger.info("purged {} malformed cached entries for {}", removed, user_id)
        return removed

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("cache cleanup failed: {}", task.exception())

    async def drain(self) -> None:
        """Wait for background cleanup tasks."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_blocked(self, user_id: str) -> List[BlockedVenue]:
        raw = await self.store.get(_blocked_key(user_id))
        if not raw:
            return []
        return load(List[BlockedVenue], raw)

    async def blocked_ids(self, user_id: str) -> Set[str]:
        return {b.provider_id for b in await self.list_blocked(user_id)}

    async def block(self, user_id: str, provider_id: str, name: str = "", reason: str = "") -> BlockedVenue:
        blocked = [b for b in await self.list_blocked(user_id) if b.provider_id != provider_id]
        venue = BlockedVenue(
            user_id=user_id,
            provider_id=provider_id,
            name=name,
            reason=reason,
            blocked_at=datetime.now(),
        )
        blocked.append(venue)
        await self.store.set(_blocked_key(user_id), dump(List[BlockedVenue], blocked))

        batch = await self._read(user_id)
        if batch is not None and any(r.provider_id == provider_id for r in batch.recommendations):
            batch.recommendations = [r for r in batch.recommendations if r.provider_id != provider_id]
            await self._write(batch)
        logger.info("user {} blocked {}", user_id, provider_id)
        return venue

    async def unblock(self, user_id: str, provider_id: str) -> bool:
        blocked = await self.list_blocked(user_id)
        kept = [b for b in blocked if b.provider_id != provider_id]
        if len(kept) == len(blocked):
            return False
        await self.store.set(_blocked_key(user_id), dump(List[BlockedVenue], kept))
        return True

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "invalid": self._invalid,
            "purged": self._purged,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }
