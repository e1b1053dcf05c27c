"""Raw sample log, processed location store, validation log and enrichment backlog."""
import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from loguru import logger

from ..models.errors import BatchPersistenceFailure
from ..models.location_models import (
    ClusterBatchEntry,
    LocationSample,
    ProcessedLocation,
    RawSampleRecord,
    ValidationLogEntry,
    as_utc,
    utcnow,
)

PROCESSED_COLUMNS = [
    "worker_id",
    "captured_at",
    "latitude",
    "longitude",
    "resolved_place_name",
    "place_type",
    "enriched_at",
    "source",
]


def _in_window(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and value < as_utc(start):
        return False
    if end is not None and value > as_utc(end):
        return False
    return True


class LocationStore(ABC):
    """The only component that touches durable storage.

    Time windows are inclusive on both ends; ``None`` leaves that side open.
    """

    @abstractmethod
    def append_raw_sample(self, sample: LocationSample, validation_status: str = "valid") -> int:
        """Append a sample to the raw log and return its reference."""

    @abstractmethod
    def append_processed_location(self, location: ProcessedLocation) -> None:
        """Insert or replace the row keyed by ``(worker_id, captured_at)``."""

    @abstractmethod
    def append_validation_log_entry(self, entry: ValidationLogEntry) -> None:
        pass

    @abstractmethod
    def query_raw_samples(self, worker_id: str, start: datetime = None, end: datetime = None,
                          include_invalid: bool = False) -> List[RawSampleRecord]:
        pass

    @abstractmethod
    def query_processed_locations(self, worker_id: str, start: datetime = None,
                                  end: datetime = None) -> List[ProcessedLocation]:
        pass

    @abstractmethod
    def query_validation_log(self, worker_id: str, start: datetime = None,
                             end: datetime = None) -> List[ValidationLogEntry]:
        pass

    @abstractmethod
    def enqueue_pending(self, entry: ClusterBatchEntry) -> None:
        pass

    @abstractmethod
    def list_pending(self, limit: int = None) -> List[ClusterBatchEntry]:
        """Pending enrichment entries, oldest first."""

    @abstractmethod
    def remove_pending(self, entry_ids: Iterable[str]) -> int:
        pass

    @abstractmethod
    def pending_count(self) -> int:
        pass

    @abstractmethod
    def find_unprocessed_samples(self, start: datetime, end: datetime,
                                 worker_id: str = None) -> List[RawSampleRecord]:
        """Valid raw samples in the window with neither a processed row nor a pending entry."""

    @abstractmethod
    def purge_before(self, cutoff: datetime) -> Dict[str, int]:
        """Drop raw samples captured and validation entries written before ``cutoff``.

        Processed locations and the enrichment backlog are kept.
        """

    def processed_frame(self, worker_ids: Sequence[str], start: datetime = None, end: datetime = None) -> pd.DataFrame:
        """Processed locations of several workers as one DataFrame, newest first."""
        rows = []
        for worker_id in worker_ids:
            rows.extend(loc.to_dict() for loc in self.query_processed_locations(worker_id, start, end))
        df = pd.DataFrame(rows, columns=PROCESSED_COLUMNS)
        if not df.empty:
            df["captured_at"] = pd.to_datetime(df["captured_at"], utc=True)
            df["enriched_at"] = pd.to_datetime(df["enriched_at"], utc=True)
            df = df.sort_values("captured_at", ascending=False).reset_index(drop=True)
        return df


class InMemoryLocationStore(LocationStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._raw: List[RawSampleRecord] = []
        self._processed: Dict[Tuple[str, datetime], ProcessedLocation] = {}
        self._validation: List[ValidationLogEntry] = []
        self._pending: Dict[str, ClusterBatchEntry] = {}
        self._next_ref = 1

    def append_raw_sample(self, sample, validation_status="valid"):
        with self._lock:
            record = RawSampleRecord(sample_ref=self._next_ref, sample=sample, validation_status=validation_status)
            self._next_ref += 1
            self._raw.append(record)
            return record.sample_ref

    def append_processed_location(self, location):
        with self._lock:
            self._processed[location.key] = location

    def append_validation_log_entry(self, entry):
        with self._lock:
            self._validation.append(entry)

    def query_raw_samples(self, worker_id, start=None, end=None, include_invalid=False):
        with self._lock:
            return [
                r for r in self._raw
                if r.sample.worker_id == worker_id
                and _in_window(r.sample.captured_at, start, end)
                and (include_invalid or r.validation_status == "valid")
            ]

    def query_processed_locations(self, worker_id, start=None, end=None):
        with self._lock:
            rows = [
                loc for loc in self._processed.values()
                if loc.worker_id == worker_id and _in_window(loc.captured_at, start, end)
            ]
        return sorted(rows, key=lambda loc: loc.captured_at)

    def query_validation_log(self, worker_id, start=None, end=None):
        with self._lock:
            return [
                e for e in self._validation
                if e.worker_id == worker_id and _in_window(e.validated_at, start, end)
            ]

    def enqueue_pending(self, entry):
        with self._lock:
            self._pending[entry.entry_id] = entry

    def list_pending(self, limit=None):
        with self._lock:
            entries = sorted(self._pending.values(), key=lambda e: e.enqueued_at)
        return entries[:limit] if limit else entries

    def remove_pending(self, entry_ids):
        removed = 0
        with self._lock:
            for entry_id in entry_ids:
                if self._pending.pop(entry_id, None) is not None:
                    removed += 1
        return removed

    def pending_count(self):
        with self._lock:
            return len(self._pending)

    def find_unprocessed_samples(self, start, end, worker_id=None):
        with self._lock:
            pending_keys = {(e.sample.worker_id, e.sample.captured_at) for e in self._pending.values()}
            return [
                r for r in self._raw
                if r.validation_status == "valid"
                and (worker_id is None or r.sample.worker_id == worker_id)
                and _in_window(r.sample.captured_at, start, end)
                and (r.sample.worker_id, r.sample.captured_at) not in self._processed
                and (r.sample.worker_id, r.sample.captured_at) not in pending_keys
            ]

    def purge_before(self, cutoff):
        cutoff = as_utc(cutoff)
        with self._lock:
            raw_before, validation_before = len(self._raw), len(self._validation)
            self._raw = [r for r in self._raw if r.sample.captured_at >= cutoff]
            self._validation = [e for e in self._validation if e.validated_at >= cutoff]
            return {
                "raw_samples": raw_before - len(self._raw),
                "validation_entries": validation_before - len(self._validation),
            }


def _ts(value: datetime) -> str:
    # fixed width so that lexical order equals chronological order
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


def _sample_from_row(row: sqlite3.Row) -> LocationSample:
    return LocationSample(
        worker_id=row["worker_id"],
        captured_at=_parse_ts(row["captured_at"]),
        latitude=row["latitude"],
        longitude=row["longitude"],
        accuracy_meters=row["accuracy_meters"],
        altitude=row["altitude"],
        heading=row["heading"],
        speed=row["speed"],
        device_meta=json.loads(row["device_meta"]) if row["device_meta"] else None,
    )


class SQLiteLocationStore(LocationStore):
    """SQLite-backed store; one connection guarded by a lock."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:" and os.path.dirname(db_path):
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()
        logger.info(f"SQLiteLocationStore initialized at {db_path}")

    def _init_db(self):
        with self._tx() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS locations_raw (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    worker_id TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    accuracy_meters REAL NOT NULL,
                    altitude REAL,
                    heading REAL,
                    speed REAL,
                    device_meta TEXT,
                    validation_status TEXT NOT NULL DEFAULT 'valid',
                    received_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_raw_worker_time ON locations_raw(worker_id, captured_at)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS locations_processed (
                    worker_id TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    resolved_place_name TEXT NOT NULL,
                    place_type TEXT NOT NULL,
                    enriched_at TEXT NOT NULL,
                    source TEXT NOT NULL,
                    PRIMARY KEY (worker_id, captured_at)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS location_validation_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sample_ref INTEGER NOT NULL,
                    worker_id TEXT NOT NULL,
                    validation_type TEXT NOT NULL,
                    validation_result TEXT NOT NULL,
                    validation_details TEXT NOT NULL,
                    validated_by TEXT,
                    validated_at TEXT NOT NULL,
                    action_taken TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_validation_worker_time "
                "ON location_validation_log(worker_id, validated_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS enrichment_backlog (
                    entry_id TEXT PRIMARY KEY,
                    enqueued_at TEXT NOT NULL,
                    sample TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_backlog_enqueued ON enrichment_backlog(enqueued_at)")

    @contextmanager
    def _tx(self):
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                logger.error(f"❌ Location store error: {e}")
                raise BatchPersistenceFailure(str(e)) from e

    def append_raw_sample(self, sample, validation_status="valid"):
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO locations_raw (worker_id, captured_at, latitude, longitude, accuracy_meters, "
                "altitude, heading, speed, device_meta, validation_status, received_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    sample.worker_id, _ts(sample.captured_at), sample.latitude, sample.longitude,
                    sample.accuracy_meters, sample.altitude, sample.heading, sample.speed,
                    json.dumps(sample.device_meta) if sample.device_meta is not None else None,
                    validation_status, _ts(utcnow()),
                ),
            )
            return cur.lastrowid

    def append_processed_location(self, location):
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO locations_processed (worker_id, captured_at, latitude, longitude, "
                "resolved_place_name, place_type, enriched_at, source) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (worker_id, captured_at) DO UPDATE SET "
                "resolved_place_name = excluded.resolved_place_name, place_type = excluded.place_type, "
                "enriched_at = excluded.enriched_at, source = excluded.source",
                (
                    location.worker_id, _ts(location.captured_at), location.latitude, location.longitude,
                    location.resolved_place_name, location.place_type, _ts(location.enriched_at), location.source,
                ),
            )

    def append_validation_log_entry(self, entry):
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO location_validation_log (sample_ref, worker_id, validation_type, validation_result, "
                "validation_details, validated_by, validated_at, action_taken) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.sample_ref, entry.worker_id, entry.validation_type, entry.result,
                    json.dumps(entry.details, default=str), entry.validated_by, _ts(entry.validated_at),
                    entry.action_taken,
                ),
            )

    @staticmethod
    def _window_sql(column: str, start, end) -> Tuple[str, list]:
        clauses, params = [], []
        if start is not None:
            clauses.append(f"{column} >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append(f"{column} <= ?")
            params.append(_ts(end))
        return "".join(f" AND {c}" for c in clauses), params

    def query_raw_samples(self, worker_id, start=None, end=None, include_invalid=False):
        window, params = self._window_sql("captured_at", start, end)
        status = "" if include_invalid else " AND validation_status = 'valid'"
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT * FROM locations_raw WHERE worker_id = ?{window}{status} ORDER BY captured_at, id",
                [worker_id] + params,
            ).fetchall()
        return [
            RawSampleRecord(
                sample_ref=row["id"],
                sample=_sample_from_row(row),
                validation_status=row["validation_status"],
                received_at=_parse_ts(row["received_at"]),
            )
            for row in rows
        ]

    def query_processed_locations(self, worker_id, start=None, end=None):
        window, params = self._window_sql("captured_at", start, end)
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT * FROM locations_processed WHERE worker_id = ?{window} ORDER BY captured_at",
                [worker_id] + params,
            ).fetchall()
        return [
            ProcessedLocation(
                worker_id=row["worker_id"],
                captured_at=_parse_ts(row["captured_at"]),
                latitude=row["latitude"],
                longitude=row["longitude"],
                resolved_place_name=row["resolved_place_name"],
                place_type=row["place_type"],
                enriched_at=_parse_ts(row["enriched_at"]),
                source=row["source"],
            )
            for row in rows
        ]

    def query_validation_log(self, worker_id, start=None, end=None):
        window, params = self._window_sql("validated_at", start, end)
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT * FROM location_validation_log WHERE worker_id = ?{window} ORDER BY validated_at, id",
                [worker_id] + params,
            ).fetchall()
        return [
            ValidationLogEntry(
                sample_ref=row["sample_ref"],
                worker_id=row["worker_id"],
                result=row["validation_result"],
                details=json.loads(row["validation_details"]),
                validation_type=row["validation_type"],
                validated_by=row["validated_by"],
                action_taken=row["action_taken"],
                validated_at=_parse_ts(row["validated_at"]),
            )
            for row in rows
        ]

    def enqueue_pending(self, entry):
        with self._tx() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO enrichment_backlog (entry_id, enqueued_at, sample) VALUES (?, ?, ?)",
                (entry.entry_id, _ts(entry.enqueued_at), json.dumps(entry.sample.to_dict())),
            )

    def list_pending(self, limit=None):
        sql = "SELECT * FROM enrichment_backlog ORDER BY enqueued_at, rowid"
        params = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        entries = []
        for row in rows:
            data = json.loads(row["sample"])
            data["captured_at"] = datetime.fromisoformat(data["captured_at"])
            entries.append(
                ClusterBatchEntry(
                    sample=LocationSample(**data),
                    enqueued_at=_parse_ts(row["enqueued_at"]),
                    entry_id=row["entry_id"],
                )
            )
        return entries

    def remove_pending(self, entry_ids):
        ids = list(entry_ids)
        if not ids:
            return 0
        with self._tx() as conn:
            cur = conn.executemany("DELETE FROM enrichment_backlog WHERE entry_id = ?", [(i,) for i in ids])
            return cur.rowcount

    def pending_count(self):
        with self._tx() as conn:
            return conn.execute("SELECT COUNT(*) FROM enrichment_backlog").fetchone()[0]

    def find_unprocessed_samples(self, start, end, worker_id=None):
        window, params = self._window_sql("r.captured_at", start, end)
        worker_clause = ""
        if worker_id is not None:
            worker_clause = " AND r.worker_id = ?"
            params.append(worker_id)
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT r.* FROM locations_raw r "
                "LEFT JOIN locations_processed p ON p.worker_id = r.worker_id AND p.captured_at = r.captured_at "
                f"WHERE r.validation_status = 'valid' AND p.worker_id IS NULL{window}{worker_clause} "
                "ORDER BY r.captured_at, r.id",
                params,
            ).fetchall()
        pending_keys = {(e.sample.worker_id, e.sample.captured_at) for e in self.list_pending()}
        records = []
        for row in rows:
            sample = _sample_from_row(row)
            if (sample.worker_id, sample.captured_at) in pending_keys:
                continue
            records.append(RawSampleRecord(
                sample_ref=row["id"],
                sample=sample,
                validation_status=row["validation_status"],
                received_at=_parse_ts(row["received_at"]),
            ))
        return records

    def purge_before(self, cutoff):
        with self._tx() as conn:
            raw = conn.execute("DELETE FROM locations_raw WHERE captured_at < ?", (_ts(cutoff),)).rowcount
            validation = conn.execute(
                "DELETE FROM location_validation_log WHERE validated_at < ?", (_ts(cutoff),)
            ).rowcount
        return {"raw_samples": raw, "validation_entries": validation}

    def close(self):
        with self._lock:
            self._conn.close()
