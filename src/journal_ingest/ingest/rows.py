from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from journal_ingest.config.app_config import IngestSettings
from journal_ingest.ingest.normalize import (
    normalize_side,
    normalize_symbol,
    parse_number,
    parse_timestamp,
)
from journal_ingest.models import MappingSpec, ParseFailure, TradeCandidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestOptions:
    source_timezone: str = "UTC"
    trade_date_timezone: str = "UTC"
    strict_numbers: bool = False
    detect_threshold: int = 4

    @classmethod
    def from_settings(cls, settings: IngestSettings) -> "IngestOptions":
        return cls(
            source_timezone=settings.source_timezone,
            trade_date_timezone=settings.trade_date_timezone,
            strict_numbers=settings.strict_numbers,
            detect_threshold=settings.detect_threshold,
        )


class _RowRejected(ValueError):
    pass


def parse_row(
    record: Mapping[str, Any],
    mapping: MappingSpec,
    *,
    options: IngestOptions | None = None,
) -> TradeCandidate | ParseFailure:
    options = options or IngestOptions()
    try:
        candidate = _parse(record, mapping, options)
    except _RowRejected as exc:
        logger.debug("Rejected row: %s", exc)
        return ParseFailure(reason=str(exc), raw=dict(record))
    return candidate


def _parse(record: Mapping[str, Any], mapping: MappingSpec, options: IngestOptions) -> TradeCandidate:
    symbol_raw = _required(record, mapping.symbol, "symbol")
    side_raw = _required(record, mapping.side, "side")
    qty_raw = _required(record, mapping.qty, "quantity")
    entry_price_raw = _required(record, mapping.entry_price, "entry price")
    entry_time_raw = _required(record, mapping.entry_time, "entry time")

    side = normalize_side(side_raw)
    if side is None:
        raise _RowRejected(f"Unrecognized side {side_raw!r}")

    quantity = _strict_number(qty_raw, "quantity")
    if quantity <= 0:
        raise _RowRejected(f"Quantity must be positive, got {qty_raw!r}")
    entry_price = _strict_number(entry_price_raw, "entry price")

    entry_time = parse_timestamp(entry_time_raw, tz=options.source_timezone)
    if entry_time is None:
        raise _RowRejected(f"Unparseable entry time {entry_time_raw!r}")

    exit_price = _optional_number(record, mapping.exit_price, "exit price", options)
    fees = _optional_number(record, mapping.fees, "fees", options)
    pnl = _optional_number(record, mapping.pnl, "pnl", options)

    exit_time = None
    exit_time_raw = _optional(record, mapping.exit_time)
    if exit_time_raw is not None:
        exit_time = parse_timestamp(exit_time_raw, tz=options.source_timezone)
        if exit_time is None and options.strict_numbers:
            raise _RowRejected(f"Unparseable exit time {exit_time_raw!r}")

    return TradeCandidate(
        symbol=normalize_symbol(symbol_raw),
        side=side,
        quantity=quantity,
        entry_price=entry_price,
        entry_time=entry_time,
        exit_price=exit_price,
        exit_time=exit_time,
        fees=fees if fees is not None else Decimal("0"),
        pnl=pnl,
        broker_execution_id=_optional(record, mapping.broker_execution_id),
    )


def _required(record: Mapping[str, Any], column: str, label: str) -> str:
    value = _optional(record, column)
    if value is None:
        raise _RowRejected(f"Missing {label} (column {column!r})")
    return value


def _optional(record: Mapping[str, Any], column: str | None) -> str | None:
    if not column:
        return None
    value = record.get(column)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _strict_number(value: str, label: str) -> Decimal:
    try:
        return parse_number(value)
    except ValueError as exc:
        raise _RowRejected(f"Invalid {label} {value!r}") from exc


def _optional_number(
    record: Mapping[str, Any],
    column: str | None,
    label: str,
    options: IngestOptions,
) -> Decimal | None:
    value = _optional(record, column)
    if value is None:
        return None
    try:
        return parse_number(value)
    except ValueError:
        if options.strict_numbers:
            raise _RowRejected(f"Invalid {label} {value!r}") from None
        return Decimal("0")
