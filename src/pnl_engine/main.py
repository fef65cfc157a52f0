"""Command-line entry point for the P&L reconstruction engine.

Subcommands:
  ingest <file.json>     normalize raw exchange payloads and append them to the store
  recompute <account>    rebuild an account's analytics from its full history
  summary <account>      print the stored analytics for an account

The ingest file holds one payload object or a list of them:

  {"account": "0x...", "fills": [...], "funding": [...], "events": [...],
   "margin_snapshots": [...], "mark_snapshots": [...]}
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from pnl_engine.config import AppSettings
from pnl_engine.data.database import AnalyticsDatabase
from pnl_engine.data.store import AnalyticsStore
from pnl_engine.engine import RecomputeService
from pnl_engine.exceptions import EngineError
from pnl_engine.ingest.normalize import (
    margin_snapshot_from_record,
    mark_snapshot_from_record,
    normalize_account,
    normalize_batch,
)
from pnl_engine.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def ingest(store: AnalyticsStore, payloads: list[dict]) -> dict[str, int]:
    """Normalize and store every payload.

    Returns:
        Counts of inserted events and snapshots.
    """
    totals = {"events": 0, "duplicates": 0, "margin_snapshots": 0, "mark_snapshots": 0}
    for payload in payloads:
        account = normalize_account(payload.get("account"))
        events = normalize_batch(account, payload)
        inserted = await store.insert_events(events)
        totals["events"] += inserted
        totals["duplicates"] += len(events) - inserted
        totals["margin_snapshots"] += await store.insert_margin_snapshots(
            account,
            [margin_snapshot_from_record(r) for r in payload.get("margin_snapshots") or []],
        )
        totals["mark_snapshots"] += await store.insert_mark_snapshots(
            [mark_snapshot_from_record(r) for r in payload.get("mark_snapshots") or []]
        )
        logger.info("payload_ingested", account=account, inserted=inserted)
    return totals


async def summary(store: AnalyticsStore, account: str) -> dict[str, Any]:
    """Stored analytics for an account, ready for JSON output."""
    account = normalize_account(account)
    equity = await store.get_equity_curve(account)
    return {
        "account": account,
        "equity": str(equity[-1].cumulative_equity) if equity else None,
        "closed_trades": [t.to_dict() for t in await store.get_closed_trades(account)],
        "market_stats": [s.to_dict() for s in await store.get_market_stats(account)],
        "drawdowns": [d.to_dict() for d in await store.get_drawdowns(account)],
        "monthly_pnl": [m.to_dict() for m in await store.get_monthly_pnl(account)],
    }


def _load_payloads(path: str) -> list[dict]:
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    return data if isinstance(data, list) else [data]


async def run(args: argparse.Namespace, settings: AppSettings) -> dict[str, Any]:
    """Execute one subcommand against the configured store."""
    async with AnalyticsDatabase(args.db or settings.store.db_path) as database:
        store = AnalyticsStore(database)

        if args.command == "ingest":
            return await ingest(store, _load_payloads(args.file))

        if args.command == "recompute":
            service = RecomputeService(store, settings.engine)
            outcome = await service.recompute(args.account)
            body: dict[str, Any] = {"account": outcome.account, "status": outcome.status}
            if outcome.result is not None:
                body.update(outcome.result.summary())
            return body

        return await summary(store, args.account)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pnl-engine",
        description="Reconstruct trades, equity and drawdowns from exchange event logs.",
    )
    parser.add_argument("--db", default=None, help="SQLite path (overrides STORE__DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest_parser = sub.add_parser("ingest", help="Ingest a JSON file of raw payloads")
    ingest_parser.add_argument("file")

    recompute_parser = sub.add_parser("recompute", help="Recompute an account from scratch")
    recompute_parser.add_argument("account")

    summary_parser = sub.add_parser("summary", help="Print stored analytics for an account")
    summary_parser.add_argument("account")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry point."""
    args = build_parser().parse_args(argv)
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)

    try:
        output = asyncio.run(run(args, settings))
    except (EngineError, OSError, json.JSONDecodeError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        sys.exit(1)

    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
