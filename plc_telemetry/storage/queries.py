"""
History Queries

Read-side aggregation over LocalDatabase: day rows, date ranges,
30-day energy summary, point history and range deletes.

Read queries never raise on storage failure; they log and return an
empty or zero-filled result. Deletes raise StorageError so callers can
report how many rows were actually removed.
"""

import random
from datetime import timedelta

from ..common.exceptions import StorageError, ValidationError
from ..common.logging_setup import get_service_logger
from ..common.timestamp import (
    Clock,
    day_bounds_ms,
    format_date,
    last_n_dates,
    parse_date,
    system_clock,
    to_ms,
)
from .local_db import HOURS_PER_DAY, DailyRow, LocalDatabase, RawSample

logger = get_service_logger("storage.queries")

SUMMARY_DAYS = 30
WEEK_DAYS = 7
MAX_RETENTION_DAYS = 365
DEFAULT_HISTORY_LIMIT = 20


class HistoryQueries:
    """Aggregation and query layer. Reads only from the store."""

    def __init__(self, db: LocalDatabase, clock: Clock | None = None):
        self.db = db
        self.clock = clock or system_clock

    def today(self) -> str:
        return format_date(self.clock())

    def get_day_data(self, date: str) -> DailyRow | None:
        """One date row with 24 zero-filled hours, or None if absent"""
        parse_date(date)
        try:
            return self.db.fetch_day(date)
        except StorageError as e:
            logger.error(f"Failed to get day data for {date}: {e}")
            return None

    def get_date_range_data(self, from_date: str, to_date: str) -> list[DailyRow]:
        """
        Rows for dates in [from_date, to_date] that exist in the store.

        Missing dates are not filled in.
        """
        if parse_date(to_date, "to") < parse_date(from_date, "from"):
            raise ValidationError(f"Range end {to_date} is before start {from_date}", field="to")
        try:
            return self.db.fetch_days(from_date, to_date)
        except StorageError as e:
            logger.error(f"Failed to get range {from_date}..{to_date}: {e}")
            return []

    def get_energy_summary(self) -> dict:
        """
        Totals over the last 30 calendar dates ending today.

        Every date in the window is walked; a date without a row
        contributes 0 to the totals and appears in daily_totals.

        Returns:
            {"today", "weekly", "monthly", "daily_totals": [{"date", "total"}]}
        """
        today = self.clock().date()
        dates = last_n_dates(today, SUMMARY_DAYS)
        week_start = format_date(today - timedelta(days=WEEK_DAYS - 1))
        today_str = format_date(today)

        try:
            totals = self.db.fetch_daily_totals(dates[0], dates[-1])
        except StorageError as e:
            logger.error(f"Failed to get energy summary: {e}")
            return {"today": 0.0, "weekly": 0.0, "monthly": 0.0, "daily_totals": []}

        daily_totals = []
        today_total = weekly_total = monthly_total = 0.0
        for date in dates:
            total = totals.get(date, 0.0)
            daily_totals.append({"date": date, "total": total})

            monthly_total += total
            if date >= week_start:
                weekly_total += total
            if date == today_str:
                today_total = total

        return {
            "today": today_total,
            "weekly": weekly_total,
            "monthly": monthly_total,
            "daily_totals": daily_totals,
        }

    def get_point_history(
        self,
        point_id: str,
        hours_back: float | None = None,
        limit: int | None = None,
    ) -> list[RawSample]:
        """
        Recent samples of one point, oldest first.

        With hours_back, returns everything newer than now - hours_back
        (capped by limit if given). Without it, returns the newest
        `limit` samples (default 20).
        """
        if hours_back is not None and hours_back <= 0:
            raise ValidationError(f"hours_back must be positive, got {hours_back}", field="hours_back")
        if limit is not None and limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}", field="limit")

        start_ms = None
        if hours_back is not None:
            start_ms = to_ms(self.clock() - timedelta(hours=hours_back))
        elif limit is None:
            limit = DEFAULT_HISTORY_LIMIT

        try:
            rows = self.db.fetch_samples(
                point_id=point_id,
                start_ms=start_ms,
                limit=limit,
                newest_first=True,
            )
        except StorageError as e:
            logger.error(f"Failed to get history for {point_id}: {e}")
            return []

        rows.reverse()
        return rows

    def query_samples(
        self,
        from_date: str,
        to_date: str,
        point_id: str | None = None,
        limit: int | None = None,
    ) -> list[RawSample]:
        """Samples inside whole local days [from_date, to_date]"""
        start_ms, end_ms = day_bounds_ms(from_date, to_date)
        try:
            return self.db.fetch_samples(
                point_id=point_id,
                start_ms=start_ms,
                end_ms=end_ms,
                limit=limit,
            )
        except StorageError as e:
            logger.error(f"Failed to query samples {from_date}..{to_date}: {e}")
            return []

    def delete_by_range(
        self,
        from_date: str,
        to_date: str,
        point_id: str | None = None,
        kind: str = "samples",
    ) -> int:
        """
        Delete data inside [start of from_date, end of to_date].

        Args:
            kind: "samples" for the raw log, "daily" for daily energy rows

        Returns:
            Number of rows deleted

        Raises:
            ValidationError: bad dates or kind
            StorageError: delete failed
        """
        start_ms, end_ms = day_bounds_ms(from_date, to_date)

        if kind == "samples":
            deleted = self.db.delete_samples(start_ms, end_ms, point_id)
        elif kind == "daily":
            if point_id is not None:
                raise ValidationError("Daily rows are not stored per point", field="point_id")
            deleted = self.db.delete_days(from_date, to_date)
        else:
            raise ValidationError(f"Unknown delete kind '{kind}'", field="kind")

        logger.info(
            f"Deleted {deleted} {kind} rows in {from_date}..{to_date}"
            + (f" for {point_id}" if point_id else "")
        )
        return deleted

    def cleanup_older_than(self, days: int) -> int:
        """
        Delete raw samples older than `days` days.

        Daily energy rows are not touched.
        """
        if not 1 <= days <= MAX_RETENTION_DAYS:
            raise ValidationError(f"days must be 1..{MAX_RETENTION_DAYS}, got {days}", field="days")

        cutoff_ms = to_ms(self.clock() - timedelta(days=days))
        return self.db.delete_samples_before(cutoff_ms)

    def seed_demo_day(self, date: str, rng: random.Random | None = None) -> DailyRow:
        """Fill a date row with 500..1500 Wh per hour for demos"""
        parse_date(date)
        rng = rng or random.Random()
        hours = [float(round(500 + rng.random() * 1000)) for _ in range(HOURS_PER_DAY)]
        ts = to_ms(self.clock())
        self.db.replace_day(date, hours, ts)
        return DailyRow(date=date, hours=hours, last_update=ts)
