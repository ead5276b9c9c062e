from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, Field

from utils import mask_secret


class Configuration(BaseModel):
    # Places provider
    places_api_key: Optional[str] = Field(default=None)
    places_base_url: str = Field(default="https://places.googleapis.com")
    places_timeout: int = Field(default=15)
    places_max_results: int = Field(default=20)
    fetch_missing_hours: bool = Field(default=False)

    # Feed pagination
    default_radius_miles: float = Field(default=10.0)
    max_radius_miles: float = Field(default=31.0)  # ~50 km, provider circle limit
    batch_size: int = Field(default=20)
    min_new_per_attempt: int = Field(default=3)
    max_attempts: int = Field(default=6)
    min_attempts_at_ceiling: int = Field(default=3)
    load_more_cooldown_sec: float = Field(default=2.0)
    session_ttl_sec: int = Field(default=3600)

    # Cache
    photo_valid_ratio: float = Field(default=0.7)
    cache_max_age_hours: float = Field(default=24.0)
    cache_dir: Optional[str] = Field(default=None)

    @classmethod
    def from_env(cls, overrides: Optional[dict[str, Any]] = None) -> "Configuration":
        raw: dict[str, Any] = {}

        env_map = {
            "places_api_key": os.getenv("PLACES_API_KEY"),
            "places_base_url": os.getenv("PLACES_BASE_URL"),
            "places_timeout": os.getenv("PLACES_TIMEOUT"),
            "places_max_results": os.getenv("PLACES_MAX_RESULTS"),
            "fetch_missing_hours": os.getenv("FETCH_MISSING_HOURS"),
            "default_radius_miles": os.getenv("FEED_DEFAULT_RADIUS_MILES"),
            "max_radius_miles": os.getenv("FEED_MAX_RADIUS_MILES"),
            "batch_size": os.getenv("FEED_BATCH_SIZE"),
            "min_new_per_attempt": os.getenv("FEED_MIN_NEW_PER_ATTEMPT"),
            "max_attempts": os.getenv("FEED_MAX_ATTEMPTS"),
            "min_attempts_at_ceiling": os.getenv("FEED_MIN_ATTEMPTS_AT_CEILING"),
            "load_more_cooldown_sec": os.getenv("FEED_LOAD_MORE_COOLDOWN_SEC"),
            "session_ttl_sec": os.getenv("SESSION_TTL_SEC"),
            "photo_valid_ratio": os.getenv("CACHE_PHOTO_VALID_RATIO"),
            "cache_max_age_hours": os.getenv("CACHE_MAX_AGE_HOURS"),
            "cache_dir": os.getenv("CACHE_DIR"),
        }

        bool_fields = {"fetch_missing_hours"}

        for k, v in env_map.items():
            if v is None:
                continue
            if k in bool_fields:
                raw[k] = str(v).lower() in {"1", "true", "yes", "on"}
            else:
                raw[k] = v

        if overrides:
            raw.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**raw)

    def require_places(self) -> None:
        if not self.places_api_key:
            raise ValueError("PLACES_API_KEY is required")

    def log_summary(self) -> str:
        return (
            "places=%s base=%s timeout=%s max_results=%s radius=%s..%s batch=%s cache_dir=%s api_key=%s"
            % (
                bool(self.places_api_key),
                self.places_base_url,
                self.places_timeout,
                self.places_max_results,
                self.default_radius_miles,
                self.max_radius_miles,
                self.batch_size,
                self.cache_dir or "memory",
                mask_secret(self.places_api_key),
            )
        )
