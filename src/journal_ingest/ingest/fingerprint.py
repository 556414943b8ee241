from __future__ import annotations

import hashlib
from datetime import datetime
from decimal import Decimal

from journal_ingest.models import TradeCandidate

ABSENT = "-"


def fingerprint(candidate: TradeCandidate, account_id: str) -> str:
    """Dedup key for a fill within one account.

    Fees and P&L are left out so a corrected statement updates the existing
    row instead of adding a second one.
    """
    parts = (
        account_id,
        candidate.symbol,
        candidate.side,
        _decimal_text(candidate.quantity),
        _epoch_text(candidate.entry_time),
        _epoch_text(candidate.exit_time),
        _decimal_text(candidate.entry_price),
        _decimal_text(candidate.exit_price),
    )
    return _digest(parts)


def external_fingerprint(account_id: str, source: str, external_id: str) -> str:
    return _digest(("external", account_id, source, external_id))


def _digest(parts: tuple[str, ...]) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _decimal_text(value: Decimal | None) -> str:
    if value is None:
        return ABSENT
    normalized = value.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")


def _epoch_text(value: datetime | None) -> str:
    if value is None:
        return ABSENT
    return _decimal_text(Decimal(str(value.timestamp())))
