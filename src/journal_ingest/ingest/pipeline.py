from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from journal_ingest.errors import FormatNotDetected
from journal_ingest.ingest.detect import detect_format
from journal_ingest.ingest.fingerprint import external_fingerprint, fingerprint
from journal_ingest.ingest.normalize import resolve_tz
from journal_ingest.ingest.rows import IngestOptions, parse_row
from journal_ingest.metrics.daily import recompute_day
from journal_ingest.models import (
    SOURCE_CSV,
    ImportResult,
    LedgerRow,
    MappingSpec,
    ParseFailure,
    TradeCandidate,
)
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)

_SNIFF_DELIMITERS = ",;\t|"
_SNIFF_SAMPLE_CHARS = 4096


@dataclass(frozen=True)
class ExternalSave:
    row: LedgerRow
    created: bool
    dates: tuple[date, ...] = field(default_factory=tuple)


def trade_date_for(entry_time: datetime, tz: str = "UTC") -> date:
    return entry_time.astimezone(resolve_tz(tz)).date()


def import_batch(
    stores: Stores,
    user_id: str,
    account_id: str,
    records: Iterable[Mapping[str, Any]],
    mapping: MappingSpec,
    source: str = SOURCE_CSV,
    *,
    options: IngestOptions | None = None,
) -> ImportResult:
    """Parse, fingerprint and save each record in order, then rebuild touched days.

    Bad rows are reported in ``ImportResult.errors`` and never raised. A
    ``StorageError`` aborts the batch.
    """
    options = options or IngestOptions()
    result = ImportResult()
    touched: set[date] = set()

    for index, record in enumerate(records, start=1):
        parsed = parse_row(record, mapping, options=options)
        if isinstance(parsed, ParseFailure):
            result.errors.append(f"Row {index}: {parsed.reason}: {_raw_json(parsed.raw)}")
            continue

        trade_date = trade_date_for(parsed.entry_time, options.trade_date_timezone)
        row = LedgerRow.from_candidate(
            parsed,
            user_id=user_id,
            account_id=account_id,
            fingerprint=fingerprint(parsed, account_id),
            import_source=source,
            trade_date=trade_date,
        )
        outcome = stores.ledger.save(row)
        if outcome.created:
            result.inserted += 1
        else:
            result.updated += 1
            if outcome.previous is not None:
                touched.add(outcome.previous.trade_date)
        touched.add(trade_date)

    result.dates_touched = sorted(touched)
    for day in result.dates_touched:
        recompute_day(stores, user_id, account_id, day)

    logger.info(
        "Imported %s batch for %s/%s: %d inserted, %d updated, %d rejected",
        source,
        user_id,
        account_id,
        result.inserted,
        result.updated,
        len(result.errors),
    )
    return result


def ingest_external(
    stores: Stores,
    user_id: str,
    account_id: str,
    candidate: TradeCandidate,
    source: str,
    external_id: str,
    *,
    options: IngestOptions | None = None,
) -> ExternalSave:
    """Upsert one candidate keyed by an external id.

    Metrics are left alone; ``dates`` lists the days whose contents changed so
    the caller can recompute or queue them.
    """
    options = options or IngestOptions()
    trade_date = trade_date_for(candidate.entry_time, options.trade_date_timezone)
    row = LedgerRow.from_candidate(
        candidate,
        user_id=user_id,
        account_id=account_id,
        fingerprint=external_fingerprint(account_id, source, external_id),
        import_source=source,
        trade_date=trade_date,
        external_id=external_id,
    )
    outcome = stores.ledger.save(row)
    dates = {trade_date}
    if outcome.previous is not None:
        dates.add(outcome.previous.trade_date)
    return ExternalSave(row=outcome.row, created=outcome.created, dates=tuple(sorted(dates)))


def read_csv_records(text: str, *, delimiter: str | None = None) -> tuple[list[str], list[dict[str, str]]]:
    """Split CSV text into its header row and one dict per non-blank data row."""
    text = text.lstrip("\ufeff")
    if not text.strip():
        return [], []
    if delimiter is None:
        delimiter = _sniff_delimiter(text)

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    headers: list[str] = []
    records: list[dict[str, str]] = []
    for cells in reader:
        if not headers:
            if not any(cell.strip() for cell in cells):
                continue
            headers = [cell.strip() for cell in cells]
            continue
        if not any(cell.strip() for cell in cells):
            continue
        record = {header: (cells[i] if i < len(cells) else "") for i, header in enumerate(headers) if header}
        records.append(record)
    return headers, records


def import_csv_text(
    stores: Stores,
    user_id: str,
    account_id: str,
    text: str,
    *,
    mapping: MappingSpec | None = None,
    source: str = SOURCE_CSV,
    delimiter: str | None = None,
    options: IngestOptions | None = None,
) -> ImportResult:
    options = options or IngestOptions()
    headers, records = read_csv_records(text, delimiter=delimiter)
    detected_source = None
    if mapping is None:
        detected = detect_format(headers, threshold=options.detect_threshold)
        if detected is None:
            raise FormatNotDetected(headers)
        mapping = detected.mapping
        detected_source = detected.source
        logger.info("Detected %s export (%d rows)", detected.source, len(records))
    result = import_batch(stores, user_id, account_id, records, mapping, source, options=options)
    result.detected_source = detected_source
    return result


def _sniff_delimiter(text: str) -> str:
    sample = text[:_SNIFF_SAMPLE_CHARS]
    try:
        return csv.Sniffer().sniff(sample, delimiters=_SNIFF_DELIMITERS).delimiter
    except csv.Error:
        return ","


def _raw_json(raw: Mapping[str, Any]) -> str:
    return json.dumps(dict(raw), default=str)
