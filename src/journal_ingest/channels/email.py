from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Sequence

from bs4 import BeautifulSoup

from journal_ingest.channels.alerts import EmailAlert, EmailAttachment
from journal_ingest.errors import UserNotFound
from journal_ingest.ingest.detect import detect_format, match_profile
from journal_ingest.ingest.pipeline import import_batch, read_csv_records, trade_date_for
from journal_ingest.ingest.rows import IngestOptions
from journal_ingest.models import SOURCE_EMAIL, Attachment, ImportResult, JournalEntry, MappingSpec, TradingAccount
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_TAG = "default"
IMAGE_JOURNAL_TITLE = "TradingView Alert"

_TOKEN_PATTERN = re.compile(r"\+([a-zA-Z0-9]+)@")
# First match wins.
_ACCOUNT_TAG_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"apex.*pa", re.IGNORECASE), "apex-pa"),
    (re.compile(r"apex.*eval", re.IGNORECASE), "apex-eval"),
    (re.compile(r"topstep.*pa", re.IGNORECASE), "topstep-pa"),
    (re.compile(r"topstep.*eval", re.IGNORECASE), "topstep-eval"),
    (re.compile(r"(tpt|take.*profit).*live", re.IGNORECASE), "tpt-live"),
)
# Column order of prop-firm statement tables that carry no recognizable header.
_STATEMENT_FIELDS = ("symbol", "side", "qty", "entry_price", "pnl", "entry_time")


@dataclass
class EmailIngestResult:
    user_id: str
    account_id: str
    account_tag: str
    imports: list[ImportResult] = field(default_factory=list)
    journal_entry_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(item.inserted for item in self.imports)

    @property
    def updated(self) -> int:
        return sum(item.updated for item in self.imports)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "accountTag": self.account_tag,
            "processed": {
                "inserted": self.inserted,
                "updated": self.updated,
                "journalEntries": len(self.journal_entry_ids),
            },
            "imports": [item.to_dict() for item in self.imports],
            "errors": list(self.errors),
            "ignored": list(self.ignored),
        }


def extract_routing_token(address: str | None) -> str | None:
    if not address:
        return None
    match = _TOKEN_PATTERN.search(address)
    return match.group(1) if match else None


def extract_account_tag(subject: str | None, default: str = DEFAULT_ACCOUNT_TAG) -> str:
    for pattern, tag in _ACCOUNT_TAG_PATTERNS:
        if subject and pattern.search(subject):
            return tag
    return default


def resolve_account(stores: Stores, user_id: str, tag: str, default_tag: str = DEFAULT_ACCOUNT_TAG) -> TradingAccount:
    """Account for ``tag``; unknown tags land in the default account, created on first use."""
    account = stores.accounts.resolve_tag(user_id, tag)
    if account is not None:
        return account
    if tag != default_tag:
        logger.info("No account tagged %r for %s; using %r", tag, user_id, default_tag)
    account = stores.accounts.resolve_tag(user_id, default_tag)
    if account is not None:
        return account
    return stores.accounts.register(user_id, default_tag, name="Default")


def ingest_email(
    stores: Stores,
    email: EmailAlert,
    *,
    options: IngestOptions | None = None,
    default_account_tag: str = DEFAULT_ACCOUNT_TAG,
    now: datetime | None = None,
) -> EmailIngestResult:
    options = options or IngestOptions()
    token = extract_routing_token(email.recipient)
    user_id = stores.tokens.resolve_user_by_token(token) if token else None
    if user_id is None:
        logger.warning("Email to %r did not resolve to a user", email.recipient)
        raise UserNotFound()

    tag = extract_account_tag(email.subject, default=default_account_tag)
    account = resolve_account(stores, user_id, tag, default_account_tag)
    result = EmailIngestResult(user_id=user_id, account_id=account.account_id, account_tag=account.tag)
    entry_date = trade_date_for(now or datetime.now(timezone.utc), options.trade_date_timezone)

    for attachment in email.attachments:
        if attachment.is_csv:
            headers, records = read_csv_records(_decode_text(attachment.content))
            _import_records(stores, result, headers, records, attachment.filename, options, positional=False)
        elif attachment.is_image:
            entry = _journal_image(stores, result, email, attachment, entry_date)
            result.journal_entry_ids.append(entry.id or "")
        else:
            logger.info("Ignoring attachment %s (%s)", attachment.filename, attachment.content_type)
            result.ignored.append(attachment.filename)

    if email.html:
        for index, table in enumerate(parse_html_tables(email.html), start=1):
            if len(table) < 2:
                continue
            headers = table[0]
            records = [_record(headers, cells) for cells in table[1:] if any(cell for cell in cells)]
            _import_records(stores, result, headers, records, f"table {index}", options, positional=True)

    logger.info(
        "Email for %s/%s: %d inserted, %d updated, %d journal entries",
        user_id,
        account.tag,
        result.inserted,
        result.updated,
        len(result.journal_entry_ids),
    )
    return result


def parse_html_tables(html: str) -> list[list[list[str]]]:
    """Every ``<table>`` as a list of rows of stripped cell text.

    Nested tables are returned on their own. A row belongs to the nearest
    enclosing table only, and layout rows that wrap a table are dropped.
    """
    soup = BeautifulSoup(html, "html.parser")
    tables: list[list[list[str]]] = []
    for table in soup.find_all("table"):
        rows = []
        for tr in table.find_all("tr"):
            if tr.find_parent("table") is not table or tr.find("table") is not None:
                continue
            cells = [_cell_text(cell) for cell in tr.find_all(["td", "th"], recursive=False)]
            if cells:
                rows.append(cells)
        tables.append(rows)
    return tables


def _import_records(
    stores: Stores,
    result: EmailIngestResult,
    headers: Sequence[str],
    records: list[dict[str, str]],
    label: str,
    options: IngestOptions,
    *,
    positional: bool,
) -> None:
    mapping, source = _mapping_for(stores, result.user_id, headers, options, positional=positional)
    if mapping is None:
        result.errors.append(f"{label}: no known format or saved mapping profile matches the headers")
        return
    batch = import_batch(stores, result.user_id, result.account_id, records, mapping, SOURCE_EMAIL, options=options)
    batch.detected_source = source
    result.imports.append(batch)
    result.errors.extend(f"{label}: {message}" for message in batch.errors)


def _mapping_for(
    stores: Stores,
    user_id: str,
    headers: Sequence[str],
    options: IngestOptions,
    *,
    positional: bool,
) -> tuple[MappingSpec | None, str | None]:
    detected = detect_format(headers, threshold=options.detect_threshold)
    if detected is not None:
        return detected.mapping, detected.source
    profile = match_profile(headers, stores.profiles.list_by_user(user_id))
    if profile is not None:
        return profile.mapping, profile.source
    if positional and len(headers) >= len(_STATEMENT_FIELDS):
        names = list(headers[: len(_STATEMENT_FIELDS)])
        if all(names) and len(set(names)) == len(names):
            return MappingSpec(**dict(zip(_STATEMENT_FIELDS, names))), "statement"
    return None, None


def _journal_image(
    stores: Stores,
    result: EmailIngestResult,
    email: EmailAlert,
    attachment: EmailAttachment,
    entry_date: date,
) -> JournalEntry:
    url = stores.attachments.save(attachment.content, attachment.filename, attachment.content_type)
    entry = JournalEntry(
        user_id=result.user_id,
        account_id=result.account_id,
        entry_date=entry_date,
        title=IMAGE_JOURNAL_TITLE,
        body=f"Alert from: {email.subject}\n\n{email.text}",
        attachments=[
            Attachment(
                type="image",
                url=url,
                filename=attachment.filename,
                meta={"source": "tradingview_email"},
            )
        ],
    )
    return stores.journal.create(entry)


def _record(headers: Sequence[str], cells: Sequence[str]) -> dict[str, str]:
    return {header: (cells[i] if i < len(cells) else "") for i, header in enumerate(headers) if header}


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _cell_text(cell: Any) -> str:
    return " ".join(cell.get_text(" ", strip=True).split())
