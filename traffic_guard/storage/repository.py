"""
Repository pattern for data access.

Handles the per-cell traffic cache and the API usage counters.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List

from traffic_guard.core.errors import StorageError
from .db import DEFAULT_DB_PATH, get_connection
from .models import RoadType, TrafficSnapshot, UsageRecord, UsageTotals

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Stay well below SQLite's bound-parameter limit for IN (...) lookups
_LOOKUP_CHUNK_SIZE = 500


def _timestamp(value: datetime) -> str:
    # Fixed-width ISO text so lexical comparison in SQL matches time order
    return value.isoformat(timespec="microseconds")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the traffic cache and usage tables if they don't exist.

    Args:
        db_path: Path to SQLite database file

    Raises:
        StorageError: If the database cannot be opened or written
    """
    try:
        _create_tables(db_path)
    except sqlite3.Error as e:
        raise StorageError(f"Could not initialize database {db_path}: {e}") from e


def _create_tables(db_path: str) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS traffic_cache (
                grid_cell TEXT PRIMARY KEY,
                lat_min REAL NOT NULL,
                lat_max REAL NOT NULL,
                lon_min REAL NOT NULL,
                lon_max REAL NOT NULL,
                traffic_data TEXT NOT NULL,
                road_type TEXT NOT NULL,
                cache_ttl_seconds INTEGER NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_traffic_cache_expires
            ON traffic_cache(expires_at)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_usage (
                date TEXT NOT NULL,
                hour INTEGER NOT NULL,
                budget_type TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (date, hour, budget_type)
            )
        """)
        conn.commit()
    finally:
        conn.close()


class TrafficCacheRepository:
    """Expiring key-value store of traffic snapshots keyed by grid cell.

    Storage failures never propagate: reads degrade to cache misses and
    writes are logged and dropped, since a lost write only costs a future
    redundant fetch.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Clock = datetime.now):
        self.db_path = db_path
        self.clock = clock

    def get_many(self, cell_ids: Iterable[str]) -> Dict[str, TrafficSnapshot]:
        """Fetch unexpired snapshots for the given cells.

        Args:
            cell_ids: Grid cell ids to look up

        Returns:
            Mapping of cell id to snapshot; absent or expired cells are omitted
        """
        cell_ids = list(dict.fromkeys(cell_ids))
        if not cell_ids:
            return {}

        now = _timestamp(self.clock())
        snapshots: Dict[str, TrafficSnapshot] = {}
        try:
            conn = get_connection(self.db_path)
            try:
                for start in range(0, len(cell_ids), _LOOKUP_CHUNK_SIZE):
                    chunk = cell_ids[start:start + _LOOKUP_CHUNK_SIZE]
                    placeholders = ",".join("?" for _ in chunk)
                    cursor = conn.execute(f"""
                        SELECT grid_cell, traffic_data, road_type,
                               cache_ttl_seconds, expires_at
                        FROM traffic_cache
                        WHERE grid_cell IN ({placeholders})
                        AND expires_at > ?
                    """, [*chunk, now])
                    for row in cursor.fetchall():
                        snapshots[row[0]] = _row_to_snapshot(row)
            finally:
                conn.close()
        except (sqlite3.Error, ValueError) as e:
            logger.error("Cache retrieval error, treating %d cells as misses: %s", len(cell_ids), e)
            return {}

        return snapshots

    def put(self, cell_id: str, bounds, snapshot: TrafficSnapshot) -> TrafficSnapshot:
        """Upsert a snapshot for a cell; the last write wins.

        Args:
            cell_id: Grid cell id
            bounds: Cell rectangle (anything with lat_min/lat_max/lon_min/lon_max)
            snapshot: Snapshot to store; its ttl_seconds drives the expiry

        Returns:
            The snapshot as stored, with expires_at set to now + ttl
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=snapshot.ttl_seconds)
        stored = TrafficSnapshot(
            cell_id=cell_id,
            flow=snapshot.flow,
            incidents=snapshot.incidents,
            captured_at=snapshot.captured_at,
            road_type=snapshot.road_type,
            ttl_seconds=snapshot.ttl_seconds,
            expires_at=expires_at,
        )

        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute("""
                    INSERT INTO traffic_cache
                    (grid_cell, lat_min, lat_max, lon_min, lon_max, traffic_data,
                     road_type, cache_ttl_seconds, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (grid_cell) DO UPDATE SET
                        traffic_data = excluded.traffic_data,
                        road_type = excluded.road_type,
                        cache_ttl_seconds = excluded.cache_ttl_seconds,
                        expires_at = excluded.expires_at,
                        created_at = excluded.created_at
                """, (
                    cell_id,
                    bounds.lat_min,
                    bounds.lat_max,
                    bounds.lon_min,
                    bounds.lon_max,
                    json.dumps(stored.payload()),
                    stored.road_type.value,
                    stored.ttl_seconds,
                    _timestamp(expires_at),
                    _timestamp(now),
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Cache storage error for cell %s: %s", cell_id, e)

        return stored

    def evict_expired(self) -> int:
        """Delete every snapshot whose expiry has passed.

        Returns:
            Number of rows removed (0 on storage failure)
        """
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "DELETE FROM traffic_cache WHERE expires_at <= ?",
                    (_timestamp(self.clock()),),
                )
                conn.commit()
                removed = cursor.rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Cache cleanup error: %s", e)
            return 0

        logger.info("Cleaned %d expired cache entries", removed)
        return removed

    def count(self) -> int:
        """Number of rows currently stored, expired or not."""
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM traffic_cache").fetchone()[0]
        finally:
            conn.close()


def _row_to_snapshot(row) -> TrafficSnapshot:
    cell_id, traffic_data, road_type, ttl, expires_at = row
    data = json.loads(traffic_data)
    return TrafficSnapshot(
        cell_id=cell_id,
        flow=data.get("flow") or {},
        incidents=data.get("incidents") or [],
        captured_at=datetime.fromisoformat(data["timestamp"]),
        road_type=RoadType(road_type),
        ttl_seconds=ttl,
        expires_at=datetime.fromisoformat(expires_at),
    )


class UsageRepository:
    """Aggregate API request counters keyed by (date, hour, budget type).

    Unlike the cache, errors here propagate; the budget ledger decides how
    to degrade.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def increment(self, date: str, hour: int, category: str, count: int) -> None:
        """Add ``count`` to a counter row inside the database.

        The upsert-increment runs as a single statement so concurrent
        recorders accumulate instead of overwriting each other.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO api_usage (date, hour, budget_type, request_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (date, hour, budget_type)
                DO UPDATE SET request_count = request_count + excluded.request_count
            """, (date, hour, category, count))
            conn.commit()
        finally:
            conn.close()

    def totals(self, date: str, hour: int) -> UsageTotals:
        """Daily, hourly and per-category sums for one admission check."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT budget_type,
                       SUM(request_count),
                       SUM(CASE WHEN hour = ? THEN request_count ELSE 0 END)
                FROM api_usage
                WHERE date = ?
                GROUP BY budget_type
            """, (hour, date))
            totals = UsageTotals()
            for category, day_count, hour_count in cursor.fetchall():
                totals.per_category[category] = day_count or 0
                totals.daily += day_count or 0
                totals.hourly += hour_count or 0
            return totals
        finally:
            conn.close()

    def records_for_date(self, date: str) -> List[UsageRecord]:
        """All counter rows for a day, ordered by hour then budget type."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT date, hour, budget_type, request_count
                FROM api_usage
                WHERE date = ?
                ORDER BY hour, budget_type
            """, (date,))
            return [
                UsageRecord(date=row[0], hour=row[1], category=row[2], request_count=row[3])
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
