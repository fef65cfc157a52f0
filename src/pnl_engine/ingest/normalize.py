"""Normalization of raw exchange payloads into typed events.

Two shapes are accepted:
  - Hyperliquid-style user fills and funding deltas (as returned by the
    info endpoint: px/sz/side/dir/startPosition/closedPnl, delta.usdc ...)
  - Flat engine records ({"type": "perp_fill", "ts": ..., ...}), which is
    also the shape the store and the CLI read and write.

Malformed numeric fields are coerced to zero and logged; one bad field
must not throw away an account's history. Records that cannot be placed
in time or typed at all raise, and normalize_batch() skips them.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from pnl_engine.exceptions import (
    InvalidAccountError,
    MalformedEventError,
    UnknownEventTypeError,
)
from pnl_engine.logging import get_logger
from pnl_engine.models import (
    EVENT_CLASSES,
    ZERO,
    Event,
    EventType,
    FillDirection,
    MarginSnapshot,
    MarkSnapshot,
    PerpFill,
    PerpFunding,
    SpotBuy,
    SpotSell,
    from_ms,
    to_ms,
    utc_day,
)

logger = get_logger(__name__)

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Beyond 10**30 in any field, products in the fold can overflow the Decimal context.
_MAX_ADJUSTED_EXPONENT = 30


def normalize_account(account: str | None) -> str:
    """Trim and lowercase an account id; EVM-style addresses are validated.

    Raises:
        InvalidAccountError: If the id is empty, or looks like a hex address but is not one.
    """
    cleaned = (account or "").strip().lower()
    if not cleaned:
        raise InvalidAccountError("account id is empty")
    if cleaned.startswith("0x") and not _WALLET_RE.match(cleaned):
        raise InvalidAccountError(f"invalid wallet address: {account!r}")
    return cleaned


def to_decimal(value: Any, field_name: str = "", default: Decimal = ZERO) -> Decimal:
    """Coerce a raw numeric field to Decimal.

    Missing values return the default silently; unparseable, non-finite or
    absurdly large values return the default with a warning.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # str() first so floats keep their shortest repr, not binary noise
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            logger.warning("malformed_numeric_field", field=field_name, value=repr(value))
            return default
    if not result.is_finite() or result.adjusted() > _MAX_ADJUSTED_EXPONENT:
        logger.warning("malformed_numeric_field", field=field_name, value=repr(value))
        return default
    return result


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return to_decimal(value, field_name)


def _from_raw_ms(value: int | float) -> datetime:
    try:
        return from_ms(int(value))
    except (ValueError, OverflowError) as exc:
        raise MalformedEventError(f"timestamp out of range: {value!r}") from exc


def to_timestamp(value: Any) -> datetime:
    """Parse Unix milliseconds or an ISO-8601 string into a UTC datetime.

    Raises:
        MalformedEventError: If the value cannot be interpreted as a time.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_raw_ms(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return _from_raw_ms(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedEventError(f"unparseable timestamp: {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEventError(f"missing or invalid timestamp: {value!r}")


def parse_direction(
    raw_dir: str | None,
    size: Decimal,
    start_position: Decimal | None,
) -> FillDirection:
    """Map a venue direction label ("Open Long", "Close Short", "Long > Short") to a FillDirection.

    "Open" becomes ADD when the fill lands on an existing position, and
    "Close" becomes REDUCE when it leaves some of the position open.
    """
    text = (raw_dir or "").strip().lower()
    if not text:
        return FillDirection.UNKNOWN
    if ">" in text:
        return FillDirection.FLIP
    if text.startswith("open"):
        if start_position is not None and start_position != ZERO:
            return FillDirection.ADD
        return FillDirection.OPEN
    if text.startswith("close"):
        if start_position is not None and abs(size) < abs(start_position):
            return FillDirection.REDUCE
        return FillDirection.CLOSE
    try:
        return FillDirection(text)
    except ValueError:
        return FillDirection.UNKNOWN


def normalize_hyperliquid_fill(account: str, fill: dict) -> Event:
    """Normalize one Hyperliquid user fill.

    Spot fills carry dir "Buy"/"Sell"; everything else is a perp fill.
    The trade id (tid) is preferred for dedupe since partial fills of one
    order share an oid.
    """
    ts = to_timestamp(fill.get("time"))
    instrument = str(fill.get("coin") or "UNKNOWN")
    size = abs(to_decimal(fill.get("sz"), "sz"))
    price = to_decimal(fill.get("px"), "px")
    fee = to_decimal(fill.get("fee"), "fee")
    raw_dir = fill.get("dir") or ""
    exchange_id = fill.get("tid") or fill.get("oid")
    exchange_id = str(exchange_id) if exchange_id is not None else None
    is_buy = str(fill.get("side", "B")).upper() in ("B", "BUY")

    if raw_dir in ("Buy", "Sell"):
        spot_cls = SpotBuy if raw_dir == "Buy" else SpotSell
        return spot_cls(
            account,
            ts,
            instrument,
            qty=size,
            price=price,
            fee=fee,
            exchange_id=exchange_id,
        )

    signed_size = size if is_buy else -size
    start_position = _optional_decimal(fill.get("startPosition"), "startPosition")
    return PerpFill(
        account,
        ts,
        instrument,
        size=signed_size,
        price=price,
        direction=parse_direction(raw_dir, signed_size, start_position),
        start_position=start_position,
        closed_pnl=_optional_decimal(fill.get("closedPnl"), "closedPnl"),
        fee=fee,
        exchange_id=exchange_id,
    )


def normalize_hyperliquid_funding(account: str, funding: dict) -> PerpFunding:
    """Normalize one Hyperliquid funding delta (nested "delta" or flat)."""
    delta = funding.get("delta") or {}
    instrument = str(delta.get("coin") or funding.get("coin") or "UNKNOWN")
    usdc = delta.get("usdc", funding.get("usdc"))
    return PerpFunding(
        account,
        to_timestamp(funding.get("time")),
        instrument,
        amount=to_decimal(usdc, "usdc"),
    )


def event_from_record(record: dict) -> Event:
    """Build an event from a flat engine record.

    Raises:
        UnknownEventTypeError: If record["type"] is not a modelled event type.
        MalformedEventError: If the timestamp is unusable.
    """
    try:
        event_type = EventType(str(record.get("type", "")).lower())
    except ValueError as exc:
        raise UnknownEventTypeError(f"unknown event type: {record.get('type')!r}") from exc

    cls = EVENT_CLASSES[event_type]
    common: dict[str, Any] = {
        "fee": to_decimal(record.get("fee"), "fee"),
        "source": str(record.get("source") or "hypercore"),
        "exchange_id": (
            str(record["exchange_id"]) if record.get("exchange_id") not in (None, "") else None
        ),
    }
    account = str(record.get("account") or "")
    ts = to_timestamp(record.get("ts"))
    instrument = str(record.get("instrument") or "UNKNOWN")

    if event_type is EventType.PERP_FILL:
        size = to_decimal(record.get("size"), "size")
        start_position = _optional_decimal(record.get("start_position"), "start_position")
        raw_direction = record.get("direction")
        try:
            direction = FillDirection(raw_direction) if raw_direction else FillDirection.UNKNOWN
        except ValueError:
            direction = parse_direction(str(raw_direction), size, start_position)
        return PerpFill(
            account,
            ts,
            instrument,
            size=size,
            price=to_decimal(record.get("price"), "price"),
            direction=direction,
            start_position=start_position,
            closed_pnl=_optional_decimal(record.get("closed_pnl"), "closed_pnl"),
            **common,
        )
    if event_type is EventType.PERP_FUNDING:
        return PerpFunding(
            account, ts, instrument, amount=to_decimal(record.get("amount"), "amount"), **common
        )
    if event_type is EventType.PERP_FEE:
        return cls(account, ts, instrument, **common)
    return cls(
        account,
        ts,
        instrument,
        qty=abs(to_decimal(record.get("qty"), "qty")),
        price=to_decimal(record.get("price"), "price"),
        **common,
    )


def event_to_record(event: Event) -> dict:
    """Serialize an event to a flat record; Decimals as strings."""
    record: dict[str, Any] = {
        "type": event.kind.value,
        "account": event.account,
        "ts": to_ms(event.ts),
        "instrument": event.instrument,
        "fee": str(event.fee),
        "source": event.source,
        "exchange_id": event.exchange_id,
        "dedupe_key": event.dedupe_key,
    }
    if isinstance(event, PerpFill):
        record.update(
            size=str(event.size),
            price=str(event.price),
            direction=event.direction.value,
            start_position=(
                str(event.start_position) if event.start_position is not None else None
            ),
            closed_pnl=str(event.closed_pnl) if event.closed_pnl is not None else None,
        )
    elif isinstance(event, PerpFunding):
        record["amount"] = str(event.amount)
    elif hasattr(event, "qty"):
        record.update(qty=str(event.qty), price=str(event.price))
    return record


def normalize_batch(account: str, payload: dict) -> list[Event]:
    """Normalize a payload of {"fills": [...], "funding": [...], "events": [...]}.

    Unusable records are logged and skipped; the rest of the batch survives.
    """
    events: list[Event] = []
    skipped = 0

    sources: Iterable[tuple[str, list]] = (
        ("fills", payload.get("fills") or []),
        ("funding", payload.get("funding") or []),
        ("events", payload.get("events") or []),
    )
    for section, items in sources:
        for item in items:
            if not isinstance(item, dict):
                skipped += 1
                logger.warning("raw_event_skipped", section=section, reason="not an object")
                continue
            try:
                if section == "fills":
                    events.append(normalize_hyperliquid_fill(account, item))
                elif section == "funding":
                    events.append(normalize_hyperliquid_funding(account, item))
                else:
                    events.append(event_from_record({"account": account, **item}))
            except (UnknownEventTypeError, MalformedEventError) as exc:
                skipped += 1
                logger.warning("raw_event_skipped", section=section, reason=str(exc))

    logger.info("batch_normalized", account=account, events=len(events), skipped=skipped)
    return events


def to_day(value: Any) -> date:
    """Parse a calendar day from "YYYY-MM-DD" or anything to_timestamp() accepts.

    Raises:
        MalformedEventError: If the value is not a day or a timestamp.
    """
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise MalformedEventError(f"unparseable day: {value!r}") from exc
    return utc_day(to_timestamp(value))


def margin_snapshot_from_record(record: dict) -> MarginSnapshot:
    """Build a MarginSnapshot from {"day", "account_value", "total_margin_used"}."""
    return MarginSnapshot(
        day=to_day(record.get("day")),
        account_value=to_decimal(record.get("account_value"), "account_value"),
        total_margin_used=to_decimal(record.get("total_margin_used"), "total_margin_used"),
    )


def mark_snapshot_from_record(record: dict) -> MarkSnapshot:
    """Build a MarkSnapshot from {"day", "instrument", "mark_price"}."""
    return MarkSnapshot(
        day=to_day(record.get("day")),
        instrument=str(record.get("instrument") or "UNKNOWN"),
        mark_price=to_decimal(record.get("mark_price"), "mark_price"),
    )
