from __future__ import annotations

import re
from datetime import datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Literal
from zoneinfo import ZoneInfo

from journal_ingest.models import SIDE_LONG, SIDE_SHORT

Kind = Literal["number", "date", "side", "symbol"]

_NUMBER_NOISE = re.compile(r"[\s$,]")
_LONG_WORDS = {"buy", "b", "long", "bot", "bought"}
_SHORT_WORDS = {"sell", "s", "short", "sld", "sold"}
_DATE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%y %H:%M:%S",
    "%m/%d/%y %H:%M",
    "%m/%d/%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%Y%m%d %H:%M:%S",
    "%Y%m%d",
    "%d-%b-%Y %H:%M:%S",
    "%b %d, %Y %I:%M:%S %p",
)
# Anything numeric below this is a broker date code, not an epoch.
_EPOCH_FLOOR = 1e9


def normalize(raw: Any, kind: Kind, *, tz: tzinfo | str | None = None) -> Any:
    """Convert one raw cell into a typed value.

    Blank cells are ``None`` for every kind. Numbers are lenient: a cell that
    does not parse becomes ``Decimal(0)``. Dates and sides that do not parse are
    ``None``.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    if kind == "number":
        try:
            return parse_number(text)
        except ValueError:
            return Decimal("0")
    if kind == "date":
        return parse_timestamp(text, tz=tz)
    if kind == "side":
        return normalize_side(text)
    if kind == "symbol":
        return normalize_symbol(text)
    raise ValueError(f"Unknown value kind: {kind}")


def parse_number(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = _NUMBER_NOISE.sub("", str(value))
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if not text:
        raise ValueError("Empty numeric value")
    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"Invalid numeric value: {value!r}")
    return -number if negative else number


def normalize_side(value: str) -> str | None:
    text = value.strip().lower()
    if text in _LONG_WORDS:
        return SIDE_LONG
    if text in _SHORT_WORDS:
        return SIDE_SHORT
    has_long = "buy" in text or "long" in text
    has_short = "sell" in text or "short" in text
    if has_long and not has_short:
        return SIDE_LONG
    if has_short and not has_long:
        return SIDE_SHORT
    return None


def normalize_symbol(value: str) -> str:
    return value.strip().upper()


def parse_timestamp(value: Any, *, tz: tzinfo | str | None = None) -> datetime | None:
    zone = resolve_tz(tz)
    if isinstance(value, datetime):
        return _localize(value, zone)
    if isinstance(value, (int, float)):
        return _timestamp_from_number(float(value))

    text = str(value).strip()
    if not text:
        return None

    try:
        numeric = float(text)
    except ValueError:
        numeric = None
    if numeric is not None and numeric >= _EPOCH_FLOOR:
        return _timestamp_from_number(numeric)

    iso_text = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return _localize(datetime.fromisoformat(iso_text), zone)
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return _localize(datetime.strptime(text, fmt), zone)
        except ValueError:
            continue
    return None


def resolve_tz(tz: tzinfo | str | None) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        if tz.strip().lower() == "utc":
            return timezone.utc
        return ZoneInfo(tz)
    return tz


def _localize(value: datetime, zone: tzinfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value


def _timestamp_from_number(value: float) -> datetime:
    seconds = value / 1000.0 if value > 1e12 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
