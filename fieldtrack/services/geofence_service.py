"""Geofence zone configuration from the workforce API, with a TTL cache."""
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import requests
from loguru import logger

from ..configurations.config import Config
from ..models.location_models import ZONE_TYPES, GeofenceZone


class GeofenceProvider(ABC):
    @abstractmethod
    def list_zones(self) -> List[GeofenceZone]:
        """Every configured zone, owned or shared."""


def parse_zone(record: Dict[str, Any]) -> GeofenceZone:
    """Build a GeofenceZone from an API record (camelCase or snake_case keys)."""
    zone_type = record.get("zoneType") or record.get("zone_type") or record.get("type") or "office"
    if zone_type not in ZONE_TYPES:
        zone_type = "office"
    owner = record.get("ownerWorkerId") or record.get("owner_worker_id") or record.get("workerId")
    return GeofenceZone(
        zone_id=str(record.get("zoneId") or record.get("zone_id") or record["id"]),
        name=record.get("name") or "",
        center_lat=float(record.get("centerLat", record.get("center_lat", record.get("latitude")))),
        center_lng=float(record.get("centerLng", record.get("center_lng", record.get("longitude")))),
        radius_meters=float(record.get("radiusMeters", record.get("radius_meters", record.get("radius")))),
        zone_type=zone_type,
        owner_worker_id=str(owner) if owner is not None else None,
    )


class HttpGeofenceProvider(GeofenceProvider):
    def __init__(self, base_url: str = None, token: str = None, timeout: float = None):
        self.base_url = (base_url or Config.FIELDTRACK_API_BASE_URL).rstrip("/")
        self.token = token if token is not None else Config.FIELDTRACK_API_TOKEN
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS

    def _get_headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def list_zones(self) -> List[GeofenceZone]:
        url = f"{self.base_url}/api/geofences"
        response = requests.get(url, headers=self._get_headers(), timeout=self.timeout)
        response.raise_for_status()

        data = response.json()
        if isinstance(data, dict):
            data = data.get("geofences") or data.get("data") or data.get("content") or []

        zones = []
        for record in data:
            if record.get("isActive") is False or record.get("active") is False:
                continue
            try:
                zones.append(parse_zone(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"⚠️ Skipping malformed geofence record {record.get('id')}: {e}")

        logger.success(f"Loaded {len(zones)} geofence zones")
        return zones


class StaticGeofenceProvider(GeofenceProvider):
    """Fixed zone list, for local runs without a geofence API and for tests."""

    def __init__(self, zones: Sequence[GeofenceZone] = ()):
        self.zones = list(zones)

    @classmethod
    def from_file(cls, path: str) -> "StaticGeofenceProvider":
        """Load zones from a JSON file holding a list of zone records."""
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        if isinstance(records, dict):
            records = records.get("geofences") or records.get("data") or []
        zones = [parse_zone(record) for record in records if record.get("isActive", True)]
        logger.info(f"Loaded {len(zones)} geofence zones from {path}")
        return cls(zones)

    def list_zones(self):
        return list(self.zones)


class CachedGeofenceProvider(GeofenceProvider):
    """Caches zone lists for ``ttl_seconds``.

    If a refresh fails the last good list is served (stale beats empty); with no
    cached list at all the failure degrades to an empty list, which the detector
    reports as missing configuration.
    """

    def __init__(self, provider: GeofenceProvider, ttl_seconds: float = None, clock=time.monotonic):
        self.provider = provider
        self.ttl_seconds = Config.GEOFENCE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._zones: Optional[List[GeofenceZone]] = None
        self._loaded_at: Optional[float] = None

    def list_zones(self):
        with self._lock:
            if self._loaded_at is not None and self._clock() - self._loaded_at < self.ttl_seconds:
                return list(self._zones)
            try:
                self._zones = self.provider.list_zones()
                self._loaded_at = self._clock()
            except Exception as e:
                if self._zones is None:
                    logger.error(f"❌ Geofence configuration unavailable and nothing cached: {e}")
                    return []
                logger.warning(f"⚠️ Geofence refresh failed, serving cached zones: {e}")
            return list(self._zones)

    def invalidate(self) -> None:
        """Force a reload on the next call; the current list stays as the stale fallback."""
        with self._lock:
            self._loaded_at = None
