from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from loguru import logger

from config import Configuration
from models import Candidate, Category, Coordinate, MalformedCandidate


METERS_PER_MILE = 1609.344
MAX_RADIUS_METERS = 50000.0
FIELD_MASK = ",".join(
    [
        "places.id",
        "places.displayName",
        "places.formattedAddress",
        "places.location",
        "places.types",
        "places.rating",
        "places.userRatingCount",
        "places.priceLevel",
        "places.photos",
        "places.regularOpeningHours",
        "places.websiteUri",
    ]
)

PHOTO_HOST = "https://places.googleapis.com/v1/"
DOUBLE_ENCODED_PHOTO = "https://places.googleapis.com/v1/https://"

PRICE_LEVELS: Dict[str, int] = {
    "PRICE_LEVEL_FREE": 0,
    "PRICE_LEVEL_INEXPENSIVE": 1,
    "PRICE_LEVEL_MODERATE": 2,
    "PRICE_LEVEL_EXPENSIVE": 3,
    "PRICE_LEVEL_VERY_EXPENSIVE": 4,
}

# Provider place type -> taxonomy. Anything unlisted maps to Category.OTHER.
TYPE_TO_CATEGORY: Dict[str, Category] = {
    "restaurant": Category.DINING,
    "cafe": Category.DINING,
    "coffee_shop": Category.DINING,
    "bakery": Category.DINING,
    "meal_takeaway": Category.DINING,
    "breakfast_restaurant": Category.DINING,
    "brunch_restaurant": Category.DINING,
    "bar": Category.SOCIAL,
    "night_club": Category.SOCIAL,
    "pub": Category.SOCIAL,
    "event_venue": Category.SOCIAL,
    "movie_theater": Category.ENTERTAINMENT,
    "bowling_alley": Category.ENTERTAINMENT,
    "amusement_park": Category.ENTERTAINMENT,
    "performing_arts_theater": Category.ENTERTAINMENT,
    "museum": Category.ENTERTAINMENT,
    "art_gallery": Category.ENTERTAINMENT,
    "stadium": Category.ENTERTAINMENT,
    "gym": Category.FITNESS,
    "fitness_center": Category.FITNESS,
    "yoga_studio": Category.FITNESS,
    "sports_complex": Category.FITNESS,
    "park": Category.FITNESS,
    "hiking_area": Category.FITNESS,
    "coworking_space": Category.WORK,
    "library": Category.WORK,
    "shopping_mall": Category.PERSONAL,
    "store": Category.PERSONAL,
    "clothing_store": Category.PERSONAL,
    "book_store": Category.PERSONAL,
    "beauty_salon": Category.PERSONAL,
    "spa": Category.PERSONAL,
    "tourist_attraction": Category.TRAVEL,
    "lodging": Category.TRAVEL,
    "campground": Category.TRAVEL,
    "national_park": Category.TRAVEL,
}

CATEGORY_TO_TYPES: Dict[Category, List[str]] = {}
for _type, _cat in TYPE_TO_CATEGORY.items():
    CATEGORY_TO_TYPES.setdefault(_cat, []).append(_type)


def map_types_to_category(types: Iterable[str]) -> Category:
    for raw in types:
        category = TYPE_TO_CATEGORY.get(str(raw).strip().lower())
        if category is not None:
            return category
    return Category.OTHER


def is_wellformed_photo_url(url: Optional[str]) -> bool:
    if not url or DOUBLE_ENCODED_PHOTO in url:
        return False
    return url.startswith(PHOTO_HOST + "places/") and "/photos/" in url


def is_malformed_photo_url(url: Optional[str]) -> bool:
    return bool(url) and DOUBLE_ENCODED_PHOTO in url


def build_photo_url(photo_ref: str, api_key: Optional[str]) -> Optional[str]:
    """Media URL for a ``places/<id>/photos/<id>`` reference.

    Full URLs are rejected so an already-built URL is never wrapped twice.
    """
    if not photo_ref or not api_key:
        return None
    if photo_ref.startswith(("http://", "https://")):
        logger.warning("photo reference is already a URL: {}", photo_ref[:100])
        return None
    if not photo_ref.startswith("places/") or "/photos/" not in photo_ref:
        logger.warning("invalid photo reference: {}", photo_ref[:100])
        return None
    return f"{PHOTO_HOST}{photo_ref}/media?key={api_key}&maxHeightPx=400&maxWidthPx=600"


class ProviderUnavailable(RuntimeError):
    pass


@dataclass
class _RetryPolicy:
    retries: int = 2
    base_delay: float = 0.5


@dataclass
class CandidateRequest:
    coordinate: Coordinate
    radius_miles: float
    categories: List[Category] = field(default_factory=list)
    exclude_provider_ids: set[str] = field(default_factory=set)
    max_results: int = 20


def parse_place(place: Dict[str, Any]) -> Candidate:
    provider_id = place.get("id")
    location = place.get("location") or {}
    lat = location.get("latitude")
    lon = location.get("longitude")
    if not provider_id:
        raise MalformedCandidate("place without id")
    if lat is None or lon is None:
        raise MalformedCandidate(f"place {provider_id} without location")

    display = place.get("displayName")
    if isinstance(display, dict):
        name = display.get("text") or "Unknown Place"
    else:
        name = display or "Unknown Place"

    types = tuple(str(t) for t in (place.get("types") or []))
    rating = place.get("rating") if isinstance(place.get("rating"), (int, float)) else None
    price_raw = place.get("priceLevel")
    if isinstance(price_raw, int):
        price_level: Optional[int] = price_raw
    else:
        price_level = PRICE_LEVELS.get(str(price_raw)) if price_raw else None
    photos = tuple(
        str(p.get("name")) for p in (place.get("photos") or []) if isinstance(p, dict) and p.get("name")
    )

    return Candidate(
        provider_id=str(provider_id),
        name=str(name),
        coordinate=Coordinate(latitude=float(lat), longitude=float(lon)),
        category=map_types_to_category(types),
        raw_provider_hours=place.get("regularOpeningHours") or place.get("currentOpeningHours"),
        rating=float(rating) if rating is not None else None,
        review_count=int(place.get("userRatingCount") or 0),
        price_level=price_level,
        photo_refs=photos,
        address=place.get("formattedAddress") or None,
        provider_types=types,
        website=place.get("websiteUri") or None,
    )


def parse_places(places: List[Dict[str, Any]]) -> List[Candidate]:
    results: list[Candidate] = []
    for place in places:
        try:
            results.append(parse_place(place))
        except MalformedCandidate as exc:
            logger.warning("dropping malformed candidate: {}", exc)
    return results


class PlacesClient:
    def __init__(self, cfg: Configuration) -> None:
        self.cfg = cfg
        self.base = cfg.places_base_url.rstrip("/")
        self.session = requests.Session()
        self._cache_ttl = 60 * 30  # 30 minutes
        self._cache_max = 128
        self._nearby_cache: OrderedDict[str, Tuple[float, List[Candidate]]] = OrderedDict()
        self._details_cache: OrderedDict[str, Tuple[float, Any]] = OrderedDict()
        # hours lookups run in worker threads and share these caches
        self._cache_lock = threading.Lock()

    def _cache_get(self, cache: OrderedDict[str, Tuple[float, Any]], key: str):  # type: ignore[valid-type]
        with self._cache_lock:
            entry = cache.get(key)
            if not entry:
                return None
            ts, value = entry
            if time.time() - ts > self._cache_ttl:
                cache.pop(key, None)
                return None
            cache.move_to_end(key)
            return value

    def _cache_set(self, cache: OrderedDict[str, Tuple[float, Any]], key: str, value):  # type: ignore[valid-type]
        with self._cache_lock:
            if key not in cache and len(cache) >= self._cache_max:
                cache.popitem(last=False)
            cache[key] = (time.time(), value)
            cache.move_to_end(key)

    def _request(self, method: str, path: str, *, field_mask: str, body: Optional[dict] = None) -> dict:
        url = f"{self.base}{path}"
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.cfg.places_api_key or "",
            "X-Goog-FieldMask": field_mask,
        }
        policy = _RetryPolicy()
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(
                    method, url, headers=headers, json=body, timeout=self.cfg.places_timeout
                )
            except requests.RequestException as exc:  # network error or timeout
                if attempt <= policy.retries:
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise ProviderUnavailable(f"request error: {exc}")

            if resp.status_code in (429, 500, 502, 503, 504):
                if attempt <= policy.retries:
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise ProviderUnavailable(f"upstream {resp.status_code}: {resp.text[:300]}")

            if not resp.ok:
                raise ProviderUnavailable(f"upstream {resp.status_code}: {resp.text[:300]}")

            try:
                return resp.json()
            except ValueError:
                raise ProviderUnavailable("invalid json response")

    def search_nearby(
        self,
        coordinate: Coordinate,
        *,
        radius_miles: float,
        included_types: Optional[List[str]] = None,
        limit: int = 20,
    ) -> List[Candidate]:
        radius_m = min(max(radius_miles, 0.1) * METERS_PER_MILE, MAX_RADIUS_METERS)
        types_key = ",".join(sorted(included_types or [])) or "*"
        key = f"nearby:{types_key}:{coordinate.latitude:.4f},{coordinate.longitude:.4f}:{radius_m:.0f}:{limit}"
        cached = self._cache_get(self._nearby_cache, key)
        if cached is not None:
            return list(cached)
        body: Dict[str, Any] = {
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": coordinate.latitude, "longitude": coordinate.longitude},
                    "radius": radius_m,
                }
            },
            "maxResultCount": min(limit, 20),
        }
        if included_types:
            body["includedTypes"] = included_types
        payload = self._request("POST", "/v1/places:searchNearby", field_mask=FIELD_MASK, body=body)
        results = parse_places(payload.get("places") or [])
        self._cache_set(self._nearby_cache, key, list(results))
        return results

    def place_hours(self, provider_id: str) -> Any:
        cached = self._cache_get(self._details_cache, provider_id)
        if cached is not None:
            return cached
        payload = self._request("GET", f"/v1/places/{provider_id}", field_mask="regularOpeningHours")
        hours = payload.get("regularOpeningHours")
        self._cache_set(self._details_cache, provider_id, hours)
        return hours


class CandidateSource:
    """Async boundary over the places provider."""

    def __init__(self, cfg: Configuration, client: Optional[PlacesClient] = None) -> None:
        self.cfg = cfg
        self.client = client or PlacesClient(cfg)

    def photo_url(self, candidate: Candidate) -> Optional[str]:
        if not candidate.photo_refs:
            return None
        return build_photo_url(candidate.photo_refs[0], self.cfg.places_api_key)

    async def fetch(self, request: CandidateRequest) -> List[Candidate]:
        """Raises ProviderUnavailable; an empty list is a normal result."""
        included: List[str] = []
        for category in request.categories:
            included.extend(CATEGORY_TO_TYPES.get(category, []))
        places = await asyncio.to_thread(
            self.client.search_nearby,
            request.coordinate,
            radius_miles=request.radius_miles,
            included_types=included or None,
            limit=request.max_results,
        )
        return [p for p in places if p.provider_id not in request.exclude_provider_ids]

    async def fetch_hours(self, candidates: List[Candidate]) -> Dict[str, Any]:
        """Look up opening hours concurrently for candidates the search returned without them."""
        missing = [c for c in candidates if not c.raw_provider_hours]
        if not missing:
            return {}

        async def _one(candidate: Candidate) -> Tuple[str, Any]:
            try:
                hours = await asyncio.to_thread(self.client.place_hours, candidate.provider_id)
            except ProviderUnavailable as exc:
                logger.warning("hours lookup failed for {}: {}", candidate.provider_id, exc)
                hours = None
            return candidate.provider_id, hours

        pairs = await asyncio.gather(*(_one(c) for c in missing))
        return {pid: hours for pid, hours in pairs if hours}
