from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from journal_ingest.channels.alerts import WebhookAlert, parse_inbound_alert
from journal_ingest.channels.webhook import ingest_webhook
from journal_ingest.errors import AccountNotFound, AlertValidationError, AuthenticationFailed, UserNotFound
from journal_ingest.models import SOURCE_WEBHOOK, TradingAccount
from journal_ingest.storage.ports import Stores

from builders import USER_ID

SECRET = "s3cret"


def _alert(**overrides: Any) -> WebhookAlert:
    payload: dict[str, Any] = {
        "userToken": "tok123",
        "accountTag": "apex-pa",
        "symbol": "mnq",
        "side": "SELL",
        "qty": "2",
        "price": "17250.5",
        "time": "2024-01-05T14:31:00Z",
        "orderId": "ord-1",
        "screenshotUrl": "https://www.tradingview.com/x/abc/",
    }
    payload.update(overrides)
    alert = parse_inbound_alert(payload, kind="webhook")
    assert isinstance(alert, WebhookAlert)
    return alert


def _ingest(stores: Stores, alert: WebhookAlert, secret: str | None = SECRET):
    return ingest_webhook(stores, alert, expected_secret=SECRET, provided_secret=secret)


def test_sell_alert_becomes_short_entry(stores: Stores, account: TradingAccount, token: str) -> None:
    result = _ingest(stores, _alert())

    assert result.created
    [row] = stores.ledger.list_by_account(USER_ID, account.account_id)
    assert row.side == "short"
    assert row.symbol == "MNQ"
    assert row.quantity == Decimal("2")
    assert row.entry_price == Decimal("17250.5")
    assert row.exit_price is None and row.pnl is None
    assert row.import_source == SOURCE_WEBHOOK
    assert row.external_id == "ord-1"
    assert result.pending_dates == [date(2024, 1, 5)]


def test_buy_alert_becomes_long_entry(stores: Stores, account: TradingAccount, token: str) -> None:
    _ingest(stores, _alert(side="buy", orderId="ord-2"))
    [row] = stores.ledger.list_by_account(USER_ID, account.account_id)
    assert row.side == "long"


def test_resent_order_id_keeps_one_row(stores: Stores, account: TradingAccount, token: str) -> None:
    first = _ingest(stores, _alert())
    second = _ingest(stores, _alert(price="17251"))

    assert first.created and not second.created
    assert first.trade_id == second.trade_id
    [row] = stores.ledger.list_by_account(USER_ID, account.account_id)
    assert row.entry_price == Decimal("17251")


def test_alerts_without_order_id_are_distinct(stores: Stores, account: TradingAccount, token: str) -> None:
    _ingest(stores, _alert(orderId=None))
    _ingest(stores, _alert(orderId=None))
    assert len(stores.ledger.list_by_account(USER_ID, account.account_id)) == 2


@pytest.mark.parametrize("provided", [None, "", "wrong"])
def test_bad_secret_writes_nothing(
    stores: Stores, account: TradingAccount, token: str, provided: str | None
) -> None:
    with pytest.raises(AuthenticationFailed):
        _ingest(stores, _alert(), secret=provided)
    assert stores.ledger.list_by_account(USER_ID, account.account_id) == []
    assert stores.journal.list_by_user(USER_ID) == []


def test_unconfigured_secret_rejects(stores: Stores, account: TradingAccount, token: str) -> None:
    with pytest.raises(AuthenticationFailed):
        ingest_webhook(stores, _alert(), expected_secret=None, provided_secret="anything")


def test_unknown_token(stores: Stores, account: TradingAccount, token: str) -> None:
    with pytest.raises(UserNotFound):
        _ingest(stores, _alert(userToken="nope"))


def test_unknown_account_tag(stores: Stores, account: TradingAccount, token: str) -> None:
    with pytest.raises(AccountNotFound):
        _ingest(stores, _alert(accountTag="topstep-eval"))
    assert stores.ledger.list_by_account(USER_ID, account.account_id) == []


def test_journal_entry_and_pending_mark(stores: Stores, account: TradingAccount, token: str) -> None:
    result = _ingest(stores, _alert(alertText="Breakout short"))

    [entry] = stores.journal.list_by_user(USER_ID)
    assert entry.id == result.journal_entry_id
    assert entry.title == "TradingView Alert - MNQ"
    assert entry.body == "Breakout short"
    assert entry.trade_id == result.trade_id
    assert [item.url for item in entry.attachments] == ["https://www.tradingview.com/x/abc/"]

    [pending] = stores.reconcile.pending(USER_ID)
    assert (pending.account_id, pending.trade_date) == (account.account_id, date(2024, 1, 5))
    assert stores.metrics.find(USER_ID, account.account_id, date(2024, 1, 5)) is None


def test_missing_time_uses_now(stores: Stores, account: TradingAccount, token: str) -> None:
    now = datetime(2024, 2, 1, 15, 0, tzinfo=timezone.utc)
    ingest_webhook(stores, _alert(time=None), expected_secret=SECRET, provided_secret=SECRET, now=now)
    [row] = stores.ledger.list_by_account(USER_ID, account.account_id)
    assert row.entry_time == now


def test_unparseable_time_is_rejected(stores: Stores, account: TradingAccount, token: str) -> None:
    with pytest.raises(AlertValidationError):
        _ingest(stores, _alert(time="whenever"))


@pytest.mark.parametrize(
    "overrides",
    [{"side": "hold"}, {"qty": "0"}, {"qty": "abc"}, {"price": None}, {"symbol": "  "}],
)
def test_invalid_payloads(overrides: dict[str, Any]) -> None:
    with pytest.raises(AlertValidationError) as excinfo:
        _alert(**overrides)
    assert excinfo.value.details
