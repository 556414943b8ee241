from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from journal_ingest.channels.alerts import WebhookAlert
from journal_ingest.errors import AccountNotFound, AlertValidationError, AuthenticationFailed, UserNotFound
from journal_ingest.ingest.normalize import normalize_symbol, parse_timestamp
from journal_ingest.ingest.pipeline import ingest_external
from journal_ingest.ingest.rows import IngestOptions
from journal_ingest.models import SOURCE_WEBHOOK, Attachment, JournalEntry, TradeCandidate
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


@dataclass
class WebhookResult:
    trade_id: str
    external_id: str
    created: bool
    journal_entry_id: str | None
    pending_dates: list[date] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "tradeId": self.trade_id,
            "externalId": self.external_id,
            "created": self.created,
            "journalEntryId": self.journal_entry_id,
            "pendingDates": [day.isoformat() for day in self.pending_dates],
            "message": "TradingView alert processed successfully",
        }


def verify_secret(expected: str | None, provided: str | None) -> None:
    if not expected:
        logger.error("Webhook secret is not configured; rejecting alert")
        raise AuthenticationFailed()
    if provided is None or not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        logger.warning("Rejected webhook alert with a bad secret")
        raise AuthenticationFailed()


def ingest_webhook(
    stores: Stores,
    alert: WebhookAlert,
    *,
    expected_secret: str | None,
    provided_secret: str | None,
    options: IngestOptions | None = None,
    now: datetime | None = None,
) -> WebhookResult:
    """Record one TradingView alert as an entry-only trade plus a journal note.

    The secret is checked before anything is read or written. Metrics are not
    recomputed here; the trade day is queued for ``reconcile_pending``.
    """
    verify_secret(expected_secret, provided_secret)
    options = options or IngestOptions()

    user_id = stores.tokens.resolve_user_by_token(alert.user_token)
    if user_id is None:
        logger.warning("Webhook token did not resolve to a user")
        raise UserNotFound()
    account = stores.accounts.resolve_tag(user_id, alert.account_tag)
    if account is None:
        logger.warning("Webhook account tag %r unknown for %s", alert.account_tag, user_id)
        raise AccountNotFound()

    candidate = _candidate(alert, options, now)
    external_id = alert.order_id or f"tv_{uuid.uuid4().hex}"
    saved = ingest_external(
        stores,
        user_id,
        account.account_id,
        candidate,
        SOURCE_WEBHOOK,
        external_id,
        options=options,
    )

    entry = stores.journal.create(
        JournalEntry(
            user_id=user_id,
            account_id=account.account_id,
            trade_id=saved.row.id,
            entry_date=saved.row.trade_date,
            title=f"TradingView Alert - {candidate.symbol}",
            body=alert.alert_text or f"{alert.side} {alert.qty} {alert.symbol} @ {alert.price}",
            attachments=_screenshot(alert),
        )
    )

    for day in saved.dates:
        stores.reconcile.mark(user_id, account.account_id, day, reason=SOURCE_WEBHOOK)

    logger.info(
        "Webhook %s %s %s for %s/%s (%s)",
        candidate.side,
        candidate.quantity,
        candidate.symbol,
        user_id,
        account.tag,
        "created" if saved.created else "updated",
    )
    return WebhookResult(
        trade_id=saved.row.id or "",
        external_id=external_id,
        created=saved.created,
        journal_entry_id=entry.id,
        pending_dates=list(saved.dates),
    )


def _candidate(alert: WebhookAlert, options: IngestOptions, now: datetime | None) -> TradeCandidate:
    if alert.time is None or (isinstance(alert.time, str) and not alert.time.strip()):
        entry_time = now or datetime.now(timezone.utc)
    else:
        entry_time = parse_timestamp(alert.time, tz=options.source_timezone)
        if entry_time is None:
            raise AlertValidationError(
                "Invalid webhook payload",
                [{"loc": ["time"], "msg": f"unparseable time {alert.time!r}", "type": "value_error"}],
            )
    return TradeCandidate(
        symbol=normalize_symbol(alert.symbol),
        side=alert.normalized_side,
        quantity=alert.qty,
        entry_price=alert.price,
        entry_time=entry_time,
        exit_price=None,
        exit_time=None,
        fees=Decimal("0"),
        pnl=None,
    )


def _screenshot(alert: WebhookAlert) -> list[Attachment]:
    if not alert.screenshot_url:
        return []
    return [
        Attachment(
            type="image",
            url=alert.screenshot_url,
            meta={
                "source": "tradingview_webhook",
                "symbol": alert.symbol,
                "side": alert.side,
                "price": str(alert.price),
            },
        )
    ]
