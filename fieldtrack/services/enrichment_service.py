"""Reverse-geocoding providers (lat/lng -> place name and type).

Providers are called only by the enrichment rate limiter; they do no pacing of
their own. Public reverse-geocoding services are rate-limited, so set a
descriptive User-Agent when pointing at Nominatim.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict

import requests
from loguru import logger

from ..configurations.config import Config
from ..models.errors import EnrichmentProviderFailure
from ..models.location_models import PlaceResolution


class EnrichmentProvider(ABC):
    @abstractmethod
    def resolve(self, latitude: float, longitude: float) -> PlaceResolution:
        """Resolve one coordinate or raise EnrichmentProviderFailure."""


class NominatimEnrichmentProvider(EnrichmentProvider):
    def __init__(self, base_url: str = None, user_agent: str = None, language: str = None,
                 timeout: float = None, zoom: int = 18):
        self.base_url = (base_url or Config.ENRICHMENT_BASE_URL).rstrip("/")
        self.user_agent = user_agent or Config.ENRICHMENT_USER_AGENT
        self.language = language or Config.ENRICHMENT_LANGUAGE
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.zoom = zoom
        self.session = requests.Session()

        logger.info(f"NominatimEnrichmentProvider initialized with base URL: {self.base_url}")

    def _params(self, latitude: float, longitude: float) -> Dict[str, Any]:
        return {
            "format": "jsonv2",
            "lat": f"{latitude:.8f}",
            "lon": f"{longitude:.8f}",
            "zoom": str(self.zoom),
            "addressdetails": "1",
            "accept-language": self.language,
        }

    def resolve(self, latitude, longitude):
        url = self.base_url if self.base_url.endswith("/reverse") else f"{self.base_url}/reverse"
        try:
            response = self.session.get(
                url,
                params=self._params(latitude, longitude),
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EnrichmentProviderFailure(f"Reverse geocode request failed for ({latitude}, {longitude}): {e}") from e

        if response.status_code != 200:
            raise EnrichmentProviderFailure(
                f"Reverse geocode returned status {response.status_code} for ({latitude}, {longitude})"
            )
        try:
            raw = response.json()
        except ValueError as e:
            raise EnrichmentProviderFailure(f"Reverse geocode returned invalid JSON: {e}") from e

        if not isinstance(raw, dict) or raw.get("error"):
            raise EnrichmentProviderFailure(f"No place found for ({latitude}, {longitude})")

        place_name = str(raw.get("display_name", "") or raw.get("name", "") or "")
        if not place_name:
            raise EnrichmentProviderFailure(f"Empty place name for ({latitude}, {longitude})")
        place_type = str(raw.get("type") or raw.get("category") or raw.get("addresstype") or "unknown")
        return PlaceResolution(place_name=place_name, place_type=place_type)


class PlaceholderEnrichmentProvider(EnrichmentProvider):
    """Coordinate-only names, used when no provider URL is configured."""

    def resolve(self, latitude, longitude):
        return PlaceResolution(place_name=f"Location {latitude:.4f}, {longitude:.4f}", place_type="unknown")


def build_enrichment_provider() -> EnrichmentProvider:
    if Config.ENRICHMENT_BASE_URL:
        return NominatimEnrichmentProvider()
    logger.warning("⚠️ ENRICHMENT_BASE_URL not set, using placeholder place names")
    return PlaceholderEnrichmentProvider()
