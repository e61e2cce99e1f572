"""
Storage

- local_db.py - SQLite store (raw samples + daily energy rows)
- queries.py - Aggregation and query layer
"""

from .local_db import DailyRow, LocalDatabase, RawSample
from .queries import HistoryQueries

__all__ = [
    "DailyRow",
    "LocalDatabase",
    "RawSample",
    "HistoryQueries",
]
