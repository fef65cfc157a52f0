"""Event ingestion: raw payload normalization and the deduplicating event log."""

from pnl_engine.ingest.event_log import EventLog
from pnl_engine.ingest.normalize import (
    event_from_record,
    event_to_record,
    margin_snapshot_from_record,
    mark_snapshot_from_record,
    normalize_account,
    normalize_batch,
    normalize_hyperliquid_fill,
    normalize_hyperliquid_funding,
    to_day,
    to_decimal,
    to_timestamp,
)

__all__ = [
    "EventLog",
    "event_from_record",
    "event_to_record",
    "margin_snapshot_from_record",
    "mark_snapshot_from_record",
    "normalize_account",
    "normalize_batch",
    "normalize_hyperliquid_fill",
    "normalize_hyperliquid_funding",
    "to_day",
    "to_decimal",
    "to_timestamp",
]
