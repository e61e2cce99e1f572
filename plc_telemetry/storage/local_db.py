"""
Local SQLite Database

Time-series store with two shapes sharing one file:
- raw_samples: append-only (timestamp, point, value, label) log
- daily_energy: one row per date with 24 hourly columns (h0..h23)

Every statement runs on its own short-lived connection; sqlite3 errors
are raised as StorageError.
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from ..common.config import DEFAULT_DB_PATH
from ..common.exceptions import StorageError, ValidationError
from ..common.logging_setup import get_service_logger
from ..common.timestamp import now_ms

logger = get_service_logger("storage.local_db")

HOURS_PER_DAY = 24
HOUR_COLUMNS = [f"h{h}" for h in range(HOURS_PER_DAY)]


@dataclass(frozen=True)
class RawSample:
    """One immutable observation"""
    timestamp: int  # epoch ms
    point_id: str
    value: float
    label: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "point_id": self.point_id,
            "value": self.value,
            "label": self.label,
        }


@dataclass
class DailyRow:
    """One date's hourly accumulator values"""
    date: str
    hours: list[float] = field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    last_update: int = 0

    @property
    def total(self) -> float:
        return sum(self.hours)

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "hours": list(self.hours),
            "last_update": self.last_update,
        }


def _row_to_daily(row: sqlite3.Row) -> DailyRow:
    return DailyRow(
        date=row["date"],
        hours=[float(row[col] or 0) for col in HOUR_COLUMNS],
        last_update=row["last_update"] or 0,
    )


def _hour_column(hour: int) -> str:
    if not 0 <= hour < HOURS_PER_DAY:
        raise ValidationError(f"Hour must be 0..23, got {hour}", field="hour")
    return HOUR_COLUMNS[hour]


class LocalDatabase:
    """
    SQLite database for samples and daily energy rows.

    Features:
    - WAL journal, one connection per operation
    - Index on (point_id, timestamp DESC) for history lookups
    - Single-statement hour upsert (ON CONFLICT(date))
    - Chunked batch inserts
    """

    # Chunk size for batch inserts (reduces lock duration)
    BATCH_CHUNK_SIZE = 1000

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema"""
        hour_columns = ",\n".join(f"{col} REAL DEFAULT 0" for col in HOUR_COLUMNS)

        with self._get_connection("init") as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS raw_samples (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    point_id TEXT NOT NULL,
                    value REAL NOT NULL,
                    label TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_samples_point_timestamp
                ON raw_samples(point_id, timestamp DESC)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_samples_timestamp
                ON raw_samples(timestamp)
            """)

            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS daily_energy (
                    date TEXT PRIMARY KEY,
                    {hour_columns},
                    last_update INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.commit()

        logger.info(f"Database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Get database connection; sqlite3 errors surface as StorageError"""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}", operation=operation)

        conn.row_factory = sqlite3.Row

        try:
            # WAL keeps readers off the writer's lock; NORMAL sync is safe with WAL
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            conn.execute("PRAGMA cache_size=-2000")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed: {e}", operation=operation)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Raw samples
    # ------------------------------------------------------------------

    def insert_samples(self, samples: list[RawSample]) -> int:
        """
        Append samples in chunked batches.

        Returns:
            Number of rows inserted

        Raises:
            StorageError: on any SQLite failure
        """
        if not samples:
            return 0

        total_inserted = 0
        for chunk_start in range(0, len(samples), self.BATCH_CHUNK_SIZE):
            chunk = samples[chunk_start:chunk_start + self.BATCH_CHUNK_SIZE]
            with self._get_connection("insert_samples") as conn:
                cursor = conn.cursor()
                cursor.executemany("""
                    INSERT INTO raw_samples (timestamp, point_id, value, label)
                    VALUES (?, ?, ?, ?)
                """, [(s.timestamp, s.point_id, s.value, s.label) for s in chunk])
                conn.commit()
                total_inserted += cursor.rowcount

        return total_inserted

    def fetch_samples(
        self,
        point_id: str | None = None,
        start_ms: int | None = None,
        end_ms: int | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[RawSample]:
        """Samples matching the filters, ordered by timestamp"""
        clauses = []
        params: list = []
        if point_id is not None:
            clauses.append("point_id = ?")
            params.append(point_id)
        if start_ms is not None:
            clauses.append("timestamp >= ?")
            params.append(start_ms)
        if end_ms is not None:
            clauses.append("timestamp <= ?")
            params.append(end_ms)

        sql = "SELECT timestamp, point_id, value, label FROM raw_samples"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, id DESC" if newest_first else " ORDER BY timestamp ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection("fetch_samples") as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            RawSample(
                timestamp=row["timestamp"],
                point_id=row["point_id"],
                value=row["value"],
                label=row["label"],
            )
            for row in rows
        ]

    def delete_samples(self, start_ms: int, end_ms: int, point_id: str | None = None) -> int:
        """Delete samples with start_ms <= timestamp <= end_ms"""
        sql = "DELETE FROM raw_samples WHERE timestamp >= ? AND timestamp <= ?"
        params: list = [start_ms, end_ms]
        if point_id is not None:
            sql += " AND point_id = ?"
            params.append(point_id)

        with self._get_connection("delete_samples") as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    def delete_samples_before(self, cutoff_ms: int) -> int:
        """Delete samples strictly older than cutoff_ms"""
        with self._get_connection("delete_samples_before") as conn:
            cursor = conn.execute(
                "DELETE FROM raw_samples WHERE timestamp < ?", (cutoff_ms,)
            )
            conn.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Deleted {deleted} samples older than {cutoff_ms}")
        return deleted

    def distinct_points(self) -> list[str]:
        with self._get_connection("distinct_points") as conn:
            rows = conn.execute(
                "SELECT DISTINCT point_id FROM raw_samples ORDER BY point_id"
            ).fetchall()
        return [row["point_id"] for row in rows]

    # ------------------------------------------------------------------
    # Daily energy rows
    # ------------------------------------------------------------------

    def upsert_hour(self, date: str, hour: int, value: float, timestamp: int | None = None) -> None:
        """
        Write one hour column of a date row.

        Creates the row with only that column set, or updates only that
        column and last_update on an existing row.
        """
        column = _hour_column(hour)
        ts = timestamp if timestamp is not None else now_ms()

        with self._get_connection("upsert_hour") as conn:
            conn.execute(f"""
                INSERT INTO daily_energy (date, {column}, last_update)
                VALUES (?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET {column} = excluded.{column},
                    last_update = excluded.last_update
            """, (date, value, ts))
            conn.commit()

    def replace_day(self, date: str, hours: list[float], timestamp: int | None = None) -> None:
        """Insert or overwrite all 24 columns of a date row"""
        if len(hours) != HOURS_PER_DAY:
            raise ValidationError(f"Expected 24 hourly values, got {len(hours)}", field="hours")

        ts = timestamp if timestamp is not None else now_ms()
        columns = ", ".join(HOUR_COLUMNS)
        placeholders = ", ".join("?" for _ in HOUR_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in HOUR_COLUMNS)

        with self._get_connection("replace_day") as conn:
            conn.execute(f"""
                INSERT INTO daily_energy (date, {columns}, last_update)
                VALUES (?, {placeholders}, ?)
                ON CONFLICT(date) DO UPDATE SET {updates}, last_update = excluded.last_update
            """, (date, *hours, ts))
            conn.commit()

    def fetch_day(self, date: str) -> DailyRow | None:
        with self._get_connection("fetch_day") as conn:
            row = conn.execute(
                "SELECT * FROM daily_energy WHERE date = ?", (date,)
            ).fetchone()
        return _row_to_daily(row) if row else None

    def fetch_days(self, from_date: str, to_date: str) -> list[DailyRow]:
        """Rows present in [from_date, to_date], oldest first"""
        with self._get_connection("fetch_days") as conn:
            rows = conn.execute("""
                SELECT * FROM daily_energy
                WHERE date >= ? AND date <= ?
                ORDER BY date ASC
            """, (from_date, to_date)).fetchall()
        return [_row_to_daily(row) for row in rows]

    def fetch_daily_totals(self, from_date: str, to_date: str) -> dict[str, float]:
        """Sum of the 24 columns per stored date"""
        total_expr = " + ".join(f"COALESCE({col}, 0)" for col in HOUR_COLUMNS)
        with self._get_connection("fetch_daily_totals") as conn:
            rows = conn.execute(f"""
                SELECT date, ({total_expr}) AS total
                FROM daily_energy
                WHERE date >= ? AND date <= ?
                ORDER BY date ASC
            """, (from_date, to_date)).fetchall()
        return {row["date"]: float(row["total"]) for row in rows}

    def delete_days(self, from_date: str, to_date: str) -> int:
        with self._get_connection("delete_days") as conn:
            cursor = conn.execute(
                "DELETE FROM daily_energy WHERE date >= ? AND date <= ?",
                (from_date, to_date),
            )
            conn.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Get database statistics"""
        with self._get_connection("get_stats") as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM raw_samples")
            total_samples, oldest, newest = cursor.fetchone()

            cursor.execute("SELECT COUNT(DISTINCT point_id) FROM raw_samples")
            total_points = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*), MIN(date), MAX(date) FROM daily_energy")
            total_days, first_day, last_day = cursor.fetchone()

        return {
            "total_samples": total_samples,
            "total_points": total_points,
            "oldest_sample": oldest,
            "newest_sample": newest,
            "total_days": total_days,
            "first_day": first_day,
            "last_day": last_day,
            "db_size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
        }

    def reset(self) -> dict:
        """Delete every sample and daily row"""
        with self._get_connection("reset") as conn:
            samples = conn.execute("DELETE FROM raw_samples").rowcount
            days = conn.execute("DELETE FROM daily_energy").rowcount
            conn.commit()
            conn.execute("VACUUM")

        logger.warning(f"Database reset: removed {samples} samples and {days} daily rows")
        return {"samples_deleted": samples, "days_deleted": days}
