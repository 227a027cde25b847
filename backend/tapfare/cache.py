"""
Caching layer for station lookups.

Every tap resolves a station by code. Stations change rarely, so lookups go
through a two-level cache:
1. In-memory TTL cache (process level)
2. Redis cache (shared across processes, when REDIS_URL is configured)
3. Database (source of truth)

Entries are plain snapshots, never ORM objects, so they can be shared across
sessions and threads.
"""

import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import redis
import structlog

from tapfare import repository
from tapfare.database import DatabaseManager, StationStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StationInfo:
    """Read-only view of a station as the journey engine needs it."""

    id: int
    station_code: str
    name: str
    zone_number: int
    status: StationStatus

    @property
    def is_operational(self) -> bool:
        return self.status is StationStatus.ACTIVE

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw) -> "StationInfo":
        data = json.loads(raw)
        data["status"] = StationStatus(data["status"])
        return cls(**data)


class StationCache:
    """Multi-level station cache keyed by station code."""

    def __init__(self, redis_url: Optional[str] = None, ttl: int = 60):
        """
        Initialize cache with optional Redis connection.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379)
            ttl: Time to live in seconds; 0 disables caching
        """
        self.ttl = ttl
        self.redis_client = None

        self._lock = threading.Lock()
        self._memory_cache: Dict[str, StationInfo] = {}
        self._cache_timestamps: Dict[str, float] = {}

        if redis_url and ttl > 0:
            try:
                self.redis_client = redis.from_url(redis_url)
                self.redis_client.ping()
                logger.info("station_cache_redis_connected", redis_url=redis_url)
            except redis.RedisError as e:
                logger.warning("station_cache_redis_unavailable", error=str(e))
                self.redis_client = None

    def _make_key(self, station_code: str) -> str:
        return f"station:{station_code}"

    def _is_memory_cache_valid(self, key: str) -> bool:
        if key not in self._cache_timestamps:
            return False
        return (time.monotonic() - self._cache_timestamps[key]) < self.ttl

    def get(self, station_code: str) -> Optional[StationInfo]:
        """Cached station, or None on a miss at every level."""
        if self.ttl <= 0:
            return None
        key = self._make_key(station_code)

        with self._lock:
            if key in self._memory_cache and self._is_memory_cache_valid(key):
                return self._memory_cache[key]

        if self.redis_client:
            try:
                cached_value = self.redis_client.get(key)
            except redis.RedisError as e:
                logger.warning("station_cache_redis_get_failed", key=key, error=str(e))
                cached_value = None
            if cached_value:
                station = StationInfo.from_json(cached_value)
                self._remember(key, station)
                return station

        return None

    def set(self, station: StationInfo):
        """Store a station in all cache levels."""
        if self.ttl <= 0:
            return
        key = self._make_key(station.station_code)
        self._remember(key, station)

        if self.redis_client:
            try:
                self.redis_client.setex(key, self.ttl, station.to_json())
            except redis.RedisError as e:
                logger.warning("station_cache_redis_set_failed", key=key, error=str(e))

    def invalidate(self, station_code: Optional[str] = None):
        """
        Invalidate cache entries.
        If a station code is given, drop that entry; otherwise drop everything.
        """
        with self._lock:
            if station_code:
                key = self._make_key(station_code)
                self._memory_cache.pop(key, None)
                self._cache_timestamps.pop(key, None)
            else:
                self._memory_cache.clear()
                self._cache_timestamps.clear()

        if self.redis_client:
            try:
                if station_code:
                    self.redis_client.delete(self._make_key(station_code))
                else:
                    for key in self.redis_client.scan_iter("station:*"):
                        self.redis_client.delete(key)
            except redis.RedisError as e:
                logger.warning("station_cache_redis_clear_failed", error=str(e))

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._memory_cache),
                "ttl_seconds": self.ttl,
                "redis": self.redis_client is not None,
            }

    def _remember(self, key: str, station: StationInfo):
        with self._lock:
            self._memory_cache[key] = station
            self._cache_timestamps[key] = time.monotonic()


class StationDirectory:
    """Station lookup by code, cache first, database on a miss."""

    def __init__(self, db_manager: DatabaseManager, cache: StationCache):
        self.db_manager = db_manager
        self.cache = cache

    def find(self, station_code: str) -> Optional[StationInfo]:
        station = self.cache.get(station_code)
        if station is not None:
            return station

        session = self.db_manager.get_session()
        try:
            row = repository.find_station_by_code(session, station_code)
        finally:
            session.close()

        if row is None:
            return None

        station = StationInfo(
            id=row.id,
            station_code=row.station_code,
            name=row.name,
            zone_number=row.zone_number,
            status=row.status,
        )
        self.cache.set(station)
        return station

    def set_status(self, station_code: str, status: StationStatus) -> Optional[StationInfo]:
        """Persist a status change and drop the stale cache entry."""
        row = self.db_manager.set_station_status(station_code, status)
        self.cache.invalidate(station_code)
        if row is None:
            return None
        logger.info("station_status_changed", station_code=station_code, status=status.value)
        return self.find(station_code)
