"""Workforce API client: active roster and latest device location per worker."""
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List

import requests
from loguru import logger

from ..configurations.config import Config
from ..models.errors import MemberPollFailure, RosterUnavailable
from ..models.location_models import LocationSample

ACTIVE_STATUSES = {"ACTIVE", "ONLINE", "ON_DUTY", "WORKING"}

# API field name -> LocationSample field name
SAMPLE_FIELD_MAPPINGS = {
    "latitude": "latitude",
    "lat": "latitude",
    "longitude": "longitude",
    "lng": "longitude",
    "lon": "longitude",
    "accuracy": "accuracy_meters",
    "accuracyMeters": "accuracy_meters",
    "accuracy_meters": "accuracy_meters",
    "timestamp": "captured_at",
    "capturedAt": "captured_at",
    "captured_at": "captured_at",
    "altitude": "altitude",
    "heading": "heading",
    "speed": "speed",
    "deviceInfo": "device_meta",
    "device_meta": "device_meta",
}


class RosterProvider(ABC):
    @abstractmethod
    def list_active_worker_ids(self) -> List[str]:
        """Ids of workers that should be polled; inactive or stopped workers excluded."""


class IngestionClient(ABC):
    @abstractmethod
    def fetch_latest_sample(self, worker_id: str) -> LocationSample:
        """Latest sample for one worker, or raise MemberPollFailure."""


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict):
        for key in ("content", "data", "workers", "items"):
            if key in payload:
                return payload[key]
    return payload


def parse_sample(worker_id: str, payload: Dict[str, Any]) -> LocationSample:
    """Build a LocationSample from a loosely-shaped API record."""
    data = {}
    for old_name, new_name in SAMPLE_FIELD_MAPPINGS.items():
        if old_name in payload and new_name not in data:
            data[new_name] = payload[old_name]

    # a fix without an accuracy figure cannot be judged reliable
    missing = [f for f in ("latitude", "longitude", "accuracy_meters", "captured_at") if data.get(f) is None]
    if missing:
        raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, f"Sample for {worker_id} missing {missing}")

    captured_at = data["captured_at"]
    if isinstance(captured_at, (int, float)):
        # epoch milliseconds
        captured_at = datetime.fromtimestamp(captured_at / 1000.0, tz=timezone.utc)
    elif isinstance(captured_at, str):
        captured_at = datetime.fromisoformat(captured_at.replace("Z", "+00:00"))

    sample = LocationSample(
        worker_id=worker_id,
        captured_at=captured_at,
        latitude=float(data["latitude"]),
        longitude=float(data["longitude"]),
        accuracy_meters=float(data["accuracy_meters"]),
        altitude=float(data["altitude"]) if data.get("altitude") is not None else None,
        heading=float(data["heading"]) if data.get("heading") is not None else None,
        speed=float(data["speed"]) if data.get("speed") is not None else None,
        device_meta=data.get("device_meta"),
    )
    if not all(math.isfinite(v) for v in (sample.latitude, sample.longitude, sample.accuracy_meters)):
        raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, f"Non-finite coordinates for {worker_id}")
    return sample


class WorkforceApiService(RosterProvider, IngestionClient):
    def __init__(self, base_url: str = None, token: str = None, timeout: float = None):
        self.base_url = (base_url or Config.FIELDTRACK_API_BASE_URL).rstrip("/")
        self.token = token if token is not None else Config.FIELDTRACK_API_TOKEN
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.session = requests.Session()

        logger.info(f"WorkforceApiService initialized with base URL: {self.base_url}")

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def list_active_worker_ids(self) -> List[str]:
        url = f"{self.base_url}/api/workers/active"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise RosterUnavailable(f"Roster request failed: {e}") from e

        if response.status_code != 200:
            raise RosterUnavailable(f"Roster API returned status {response.status_code}: {response.text[:200]}")

        records = _unwrap(response.json())
        if not isinstance(records, list):
            raise RosterUnavailable("Roster API returned an unexpected payload")

        worker_ids = []
        for record in records:
            if isinstance(record, dict):
                status = str(record.get("status", "ACTIVE")).upper()
                if status not in ACTIVE_STATUSES or record.get("active") is False:
                    continue
                worker_id = record.get("workerId") or record.get("worker_id") or record.get("employeeCode") or record.get("id")
            else:
                worker_id = record
            if worker_id is not None:
                worker_ids.append(str(worker_id))

        logger.success(f"Loaded {len(worker_ids)} active workers from roster API")
        return worker_ids

    def fetch_latest_sample(self, worker_id: str) -> LocationSample:
        url = f"{self.base_url}/api/workers/{worker_id}/location/latest"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise MemberPollFailure(worker_id, MemberPollFailure.TIMEOUT, str(e)) from e
        except requests.RequestException as e:
            raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, str(e)) from e

        if response.status_code in (204, 404):
            raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, f"No location for {worker_id}")
        if response.status_code == 504:
            raise MemberPollFailure(worker_id, MemberPollFailure.TIMEOUT, f"Device timeout for {worker_id}")
        if response.status_code != 200:
            raise MemberPollFailure(
                worker_id, MemberPollFailure.UNAVAILABLE, f"Location API returned status {response.status_code}"
            )

        payload = _unwrap(response.json())
        if not isinstance(payload, dict):
            raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, "Unexpected location payload")
        try:
            return parse_sample(worker_id, payload)
        except (TypeError, ValueError) as e:
            raise MemberPollFailure(worker_id, MemberPollFailure.UNAVAILABLE, f"Malformed sample: {e}") from e
