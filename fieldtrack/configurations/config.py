"""Configuration settings for the field location tracking engine."""
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from ..models.errors import ConfigurationError

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Config:
    # External collaborator APIs
    FIELDTRACK_API_BASE_URL: str = os.getenv("FIELDTRACK_API_BASE_URL") or ""
    FIELDTRACK_API_TOKEN: str = os.getenv("FIELDTRACK_API_TOKEN") or ""
    ENRICHMENT_BASE_URL: str = os.getenv("ENRICHMENT_BASE_URL") or ""
    ENRICHMENT_USER_AGENT: str = os.getenv("ENRICHMENT_USER_AGENT", "fieldtrack/1.0 (reverse-geocode)")
    ENRICHMENT_LANGUAGE: str = os.getenv("ENRICHMENT_LANGUAGE", "en")
    HTTP_TIMEOUT_SECONDS: float = _env_float("HTTP_TIMEOUT_SECONDS", 15.0)

    # Server Configuration
    PORT: int = _env_int("PORT", 8000)
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")

    # Storage
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "sqlite")  # sqlite | memory
    SQLITE_PATH: str = os.getenv("SQLITE_PATH", "data/fieldtrack.db")

    # Polling coordinator
    POLLING_INTERVAL_MS: int = _env_int("POLLING_INTERVAL_MS", 3 * 60 * 1000)
    MIN_POLLING_INTERVAL_MS: int = 30 * 1000
    MAX_POLLING_INTERVAL_MS: int = 30 * 60 * 1000
    ROSTER_RETRY_SECONDS: float = _env_float("ROSTER_RETRY_SECONDS", 30.0)
    BATCH_SIZE: int = _env_int("BATCH_SIZE", 50)

    # Worker pool
    MAX_CONCURRENT_BATCHES: int = _env_int("MAX_CONCURRENT_BATCHES", 6)
    BATCH_MAX_RETRIES: int = _env_int("BATCH_MAX_RETRIES", 3)
    BATCH_RETRY_BACKOFF_SECONDS: float = _env_float("BATCH_RETRY_BACKOFF_SECONDS", 10.0)

    # Geofence detector
    SIGNIFICANT_MOVEMENT_METERS: float = _env_float("SIGNIFICANT_MOVEMENT_METERS", 500.0)
    UNRELIABLE_ACCURACY_METERS: float = _env_float("UNRELIABLE_ACCURACY_METERS", 1000.0)
    GEOFENCE_CACHE_TTL_SECONDS: float = _env_float("GEOFENCE_CACHE_TTL_SECONDS", 300.0)
    # JSON zone list used instead of the geofence API when set
    GEOFENCE_ZONES_FILE: str = os.getenv("GEOFENCE_ZONES_FILE") or ""

    # Cluster batcher / rate limiter
    CLUSTER_RADIUS_METERS: float = _env_float("CLUSTER_RADIUS_METERS", 100.0)
    CLUSTER_STRATEGY: str = os.getenv("CLUSTER_STRATEGY", "greedy")  # greedy | balltree
    CLUSTER_RUN_MINUTE: str = os.getenv("CLUSTER_RUN_MINUTE", "0")
    ENRICHMENT_SUB_BATCH_SIZE: int = _env_int("ENRICHMENT_SUB_BATCH_SIZE", 50)
    ENRICHMENT_PAUSE_SECONDS: float = _env_float("ENRICHMENT_PAUSE_SECONDS", 1.0)
    ENRICHMENT_MAX_CALLS_PER_RUN: Optional[int] = (
        int(os.environ["ENRICHMENT_MAX_CALLS_PER_RUN"]) if os.getenv("ENRICHMENT_MAX_CALLS_PER_RUN") else None
    )

    # Retention
    DATA_RETENTION_DAYS: int = _env_int("DATA_RETENTION_DAYS", 90)
    RETENTION_RUN_HOUR: str = os.getenv("RETENTION_RUN_HOUR", "3")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE") or ""

    @classmethod
    def validate(cls):
        try:
            required = ["FIELDTRACK_API_BASE_URL"]
            missing = [var for var in required if not getattr(cls, var)]
            if missing:
                raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
            if cls.STORAGE_BACKEND not in ("sqlite", "memory"):
                raise ConfigurationError(f"Unknown STORAGE_BACKEND: {cls.STORAGE_BACKEND}")
            if cls.CLUSTER_STRATEGY not in ("greedy", "balltree"):
                raise ConfigurationError(f"Unknown CLUSTER_STRATEGY: {cls.CLUSTER_STRATEGY}")
            if cls.DATA_RETENTION_DAYS < 1:
                raise ConfigurationError("DATA_RETENTION_DAYS must be at least 1")
            EngineSettings.from_config().validate()
        except AttributeError as e:
            raise ConfigurationError(f"Configuration error: {e}")


# (min, max) bounds for runtime tunables; None means unbounded on that side
_BOUNDS: Dict[str, tuple] = {
    "polling_interval_ms": (Config.MIN_POLLING_INTERVAL_MS, Config.MAX_POLLING_INTERVAL_MS),
    "batch_size": (1, 1000),
    "max_concurrent_batches": (1, 64),
    "max_retries": (0, 10),
    "retry_backoff_seconds": (0, 3600),
    "roster_retry_seconds": (1, 3600),
    "cluster_radius_meters": (0, 5000),
    "sub_batch_size": (1, 1000),
    "pause_seconds": (0, 60),
    "significant_movement_meters": (0, None),
    "unreliable_accuracy_meters": (0, None),
}

# Bounds that exclude their lower limit
_EXCLUSIVE_MIN = {"cluster_radius_meters", "significant_movement_meters", "unreliable_accuracy_meters"}

_INT_FIELDS = ("polling_interval_ms", "batch_size", "max_concurrent_batches", "max_retries", "sub_batch_size")


@dataclass
class EngineSettings:
    """Runtime tunables of the engine.

    Every change goes through ``update`` which validates the complete new value set
    before applying anything, so a rejected change never takes effect.
    """

    polling_interval_ms: int = Config.POLLING_INTERVAL_MS
    batch_size: int = Config.BATCH_SIZE
    max_concurrent_batches: int = Config.MAX_CONCURRENT_BATCHES
    max_retries: int = Config.BATCH_MAX_RETRIES
    retry_backoff_seconds: float = Config.BATCH_RETRY_BACKOFF_SECONDS
    roster_retry_seconds: float = Config.ROSTER_RETRY_SECONDS
    cluster_radius_meters: float = Config.CLUSTER_RADIUS_METERS
    sub_batch_size: int = Config.ENRICHMENT_SUB_BATCH_SIZE
    pause_seconds: float = Config.ENRICHMENT_PAUSE_SECONDS
    max_calls_per_run: Optional[int] = Config.ENRICHMENT_MAX_CALLS_PER_RUN
    significant_movement_meters: float = Config.SIGNIFICANT_MOVEMENT_METERS
    unreliable_accuracy_meters: float = Config.UNRELIABLE_ACCURACY_METERS

    @classmethod
    def from_config(cls) -> "EngineSettings":
        return cls(
            polling_interval_ms=Config.POLLING_INTERVAL_MS,
            batch_size=Config.BATCH_SIZE,
            max_concurrent_batches=Config.MAX_CONCURRENT_BATCHES,
            max_retries=Config.BATCH_MAX_RETRIES,
            retry_backoff_seconds=Config.BATCH_RETRY_BACKOFF_SECONDS,
            roster_retry_seconds=Config.ROSTER_RETRY_SECONDS,
            cluster_radius_meters=Config.CLUSTER_RADIUS_METERS,
            sub_batch_size=Config.ENRICHMENT_SUB_BATCH_SIZE,
            pause_seconds=Config.ENRICHMENT_PAUSE_SECONDS,
            max_calls_per_run=Config.ENRICHMENT_MAX_CALLS_PER_RUN,
            significant_movement_meters=Config.SIGNIFICANT_MOVEMENT_METERS,
            unreliable_accuracy_meters=Config.UNRELIABLE_ACCURACY_METERS,
        )

    @staticmethod
    def check(name: str, value: Any) -> None:
        """Raise ConfigurationError if ``value`` is not acceptable for ``name``."""
        if name == "max_calls_per_run":
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
                raise ConfigurationError("max_calls_per_run must be a positive integer or null")
            return
        if name not in _BOUNDS:
            raise ConfigurationError(f"Unknown setting: {name}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{name} must be a number, got {value!r}")
        low, high = _BOUNDS[name]
        if low is not None:
            if name in _EXCLUSIVE_MIN and value <= low:
                raise ConfigurationError(f"{name} must be greater than {low}, got {value}")
            if name not in _EXCLUSIVE_MIN and value < low:
                raise ConfigurationError(f"{name} cannot be less than {low}, got {value}")
        if high is not None and value > high:
            raise ConfigurationError(f"{name} cannot be more than {high}, got {value}")

    def validate(self) -> None:
        for name, value in asdict(self).items():
            self.check(name, value)

    def update(self, **changes: Any) -> Dict[str, Any]:
        """Validate all changes first, then apply them. Returns the applied changes."""
        for name, value in changes.items():
            self.check(name, value)
        for name in _INT_FIELDS:
            if name in changes and not float(changes[name]).is_integer():
                raise ConfigurationError(f"{name} must be a whole number, got {changes[name]}")
        for name, value in changes.items():
            setattr(self, name, int(value) if name in _INT_FIELDS else value)
        return changes

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
