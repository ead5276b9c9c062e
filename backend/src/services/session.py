from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Set


class FeedStatus(str, Enum):
    IDLE = "idle"
    SOURCING = "sourcing"
    READY = "ready"
    EXHAUSTED = "exhausted"


@dataclass
class FeedSession:
    user_id: str
    current_radius_miles: float
    shown_provider_ids: Set[str] = field(default_factory=set)
    exhausted: bool = False
    status: FeedStatus = FeedStatus.IDLE
    in_flight: bool = False
    last_load_more: Optional[float] = None  # time.monotonic()
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def in_cooldown(self, cooldown_sec: float, now: Optional[float] = None) -> bool:
        if self.last_load_more is None or cooldown_sec <= 0:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_load_more < cooldown_sec

    def reset(self, radius_miles: float) -> None:
        self.shown_provider_ids = set()
        self.current_radius_miles = radius_miles
        self.exhausted = False
        self.status = FeedStatus.IDLE


class SessionManager:
    """In-memory registry of per-user feed sessions."""

    def __init__(self, ttl_sec: int = 3600) -> None:
        self._sessions: Dict[str, FeedSession] = {}
        self._last_access: Dict[str, float] = {}
        self.ttl_sec = ttl_sec

    def get(self, user_id: str) -> Optional[FeedSession]:
        self._cleanup()
        session = self._sessions.get(user_id)
        if session is not None:
            self._last_access[user_id] = time.time()
        return session

    def get_or_create(self, user_id: str, radius_miles: float) -> FeedSession:
        if not user_id:
            raise ValueError("user_id is required")
        session = self.get(user_id)
        if session is None:
            session = FeedSession(user_id=user_id, current_radius_miles=radius_miles)
            self._sessions[user_id] = session
            self._last_access[user_id] = time.time()
        return session

    def reset(self, user_id: str) -> None:
        """Drop a user's session."""
        self._sessions.pop(user_id, None)
        self._last_access.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def _cleanup(self) -> None:
        """Remove expired sessions that are not mid-fetch."""
        now = time.time()
        expired = [
            uid for uid, last in self._last_access.items()
            if now - last > self.ttl_sec and not self._sessions[uid].in_flight
        ]
        for uid in expired:
            del self._sessions[uid]
            del self._last_access[uid]
