"""Reference persistence layer.

SQLite database management and a typed read/write store for account
events, snapshots and recompute results.
"""

from pnl_engine.data.database import AnalyticsDatabase
from pnl_engine.data.store import AnalyticsStore

__all__ = [
    "AnalyticsDatabase",
    "AnalyticsStore",
]
