from __future__ import annotations

import dataclasses
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

from journal_ingest.ingest.fingerprint import fingerprint
from journal_ingest.metrics.daily import KeyedLocks, compute_daily_metrics, recompute_day
from journal_ingest.metrics.reconcile import reconcile_pending
from journal_ingest.models import DailyMetricsRow, LedgerRow, TradeCandidate, TradingAccount
from journal_ingest.storage.ports import MetricsStore, ReconcileQueue, Stores

from builders import USER_ID

DAY = date(2024, 1, 5)


def _row(account_id: str, minute: int, pnl: str | None, fees: str, day: date = DAY) -> LedgerRow:
    candidate = TradeCandidate(
        symbol="ES",
        side="long",
        quantity=Decimal("1"),
        entry_price=Decimal("4500"),
        entry_time=datetime(day.year, day.month, day.day, 14, minute, tzinfo=timezone.utc),
        exit_price=Decimal("4501"),
        exit_time=datetime(day.year, day.month, day.day, 15, minute, tzinfo=timezone.utc),
        fees=Decimal(fees),
        pnl=Decimal(pnl) if pnl is not None else None,
    )
    return LedgerRow.from_candidate(
        candidate,
        user_id=USER_ID,
        account_id=account_id,
        fingerprint=fingerprint(candidate, account_id),
        import_source="csv",
        trade_date=day,
    )


def _seed(stores: Stores, account_id: str) -> None:
    for minute, pnl, fees in ((1, "100", "1"), (2, "-40", "1"), (3, "0", "0"), (4, "-10", "1")):
        stores.ledger.save(_row(account_id, minute, pnl, fees))


def test_daily_aggregation(stores: Stores, account: TradingAccount) -> None:
    _seed(stores, account.account_id)
    metrics = recompute_day(stores, USER_ID, account.account_id, DAY)

    assert metrics is not None
    assert metrics.gross_pnl == Decimal("50")
    assert metrics.net_pnl == Decimal("47")
    assert metrics.win_count == 1
    assert metrics.loss_count == 2
    assert metrics.stats["trade_count"] == 4
    assert metrics.stats["symbols"] == ["ES"]


def test_recompute_is_idempotent(stores: Stores, account: TradingAccount) -> None:
    _seed(stores, account.account_id)
    first = recompute_day(stores, USER_ID, account.account_id, DAY)
    second = recompute_day(stores, USER_ID, account.account_id, DAY)

    assert first == second
    assert stores.metrics.find(USER_ID, account.account_id, DAY) == second
    assert len(stores.metrics.list_for_user(USER_ID)) == 1


def test_other_days_are_not_aggregated(stores: Stores, account: TradingAccount) -> None:
    _seed(stores, account.account_id)
    stores.ledger.save(_row(account.account_id, 5, "999", "0", day=date(2024, 1, 8)))

    metrics = recompute_day(stores, USER_ID, account.account_id, DAY)
    assert metrics is not None and metrics.gross_pnl == Decimal("50")


def test_missing_pnl_counts_as_zero_and_open() -> None:
    rows = [_row("a", 1, None, "2")]
    rows[0].exit_price = None
    rows[0].exit_time = None
    metrics = compute_daily_metrics(USER_ID, "a", DAY, rows)

    assert metrics.gross_pnl == Decimal("0")
    assert metrics.net_pnl == Decimal("-2")
    assert (metrics.win_count, metrics.loss_count) == (0, 0)
    assert metrics.stats["open_count"] == 1


def test_empty_day_removes_metrics_row(stores: Stores, account: TradingAccount) -> None:
    other = stores.accounts.register(USER_ID, "apex-eval")
    _seed(stores, account.account_id)
    recompute_day(stores, USER_ID, account.account_id, DAY)

    assert recompute_day(stores, USER_ID, other.account_id, DAY) is None
    assert stores.metrics.find(USER_ID, other.account_id, DAY) is None
    assert stores.metrics.find(USER_ID, account.account_id, DAY) is not None


def test_keyed_locks_serialize_same_key() -> None:
    locks = KeyedLocks()
    active: list[int] = []
    overlaps: list[int] = []

    def work() -> None:
        with locks.hold(("u", "a", DAY)):
            active.append(1)
            if len(active) > 1:
                overlaps.append(1)
            threading.Event().wait(0.01)
            active.pop()

    threads = [threading.Thread(target=work) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert len(locks) == 0


def test_reconcile_drains_pending_days(stores: Stores, account: TradingAccount) -> None:
    _seed(stores, account.account_id)
    stores.reconcile.mark(USER_ID, account.account_id, DAY, reason="tradingview-webhook")
    stores.reconcile.mark(USER_ID, account.account_id, date(2024, 1, 9), reason="tradingview-webhook")

    result = reconcile_pending(stores, USER_ID)

    assert result.recomputed == [(account.account_id, DAY)]
    assert result.cleared == [(account.account_id, date(2024, 1, 9))]
    assert stores.reconcile.pending(USER_ID) == []
    assert stores.metrics.find(USER_ID, account.account_id, DAY) is not None


class RemarkingMetrics:
    """Re-marks the day right after its metrics row is written, like a webhook arriving mid-reconcile."""

    def __init__(self, inner: MetricsStore, queue: ReconcileQueue) -> None:
        self.inner = inner
        self.queue = queue

    def upsert(self, row: DailyMetricsRow) -> None:
        self.inner.upsert(row)
        self.queue.mark(row.user_id, row.account_id, row.trade_date, reason="tradingview-webhook")

    def __getattr__(self, name: str) -> object:
        return getattr(self.inner, name)


def test_reconcile_keeps_days_marked_during_recompute(stores: Stores, account: TradingAccount) -> None:
    _seed(stores, account.account_id)
    stores.reconcile.mark(USER_ID, account.account_id, DAY, reason="tradingview-webhook")
    racing = dataclasses.replace(stores, metrics=RemarkingMetrics(stores.metrics, stores.reconcile))

    result = reconcile_pending(racing, USER_ID)

    assert result.recomputed == [(account.account_id, DAY)]
    [still_pending] = stores.reconcile.pending(USER_ID)
    assert still_pending.trade_date == DAY

    reconcile_pending(stores, USER_ID)
    assert stores.reconcile.pending(USER_ID) == []


def test_clear_respects_marked_before(stores: Stores, account: TradingAccount) -> None:
    stores.reconcile.mark(USER_ID, account.account_id, DAY, reason="tradingview-webhook")
    [item] = stores.reconcile.pending(USER_ID)

    stale = datetime(2000, 1, 1, tzinfo=timezone.utc)
    stores.reconcile.clear(USER_ID, account.account_id, DAY, marked_before=stale)
    assert len(stores.reconcile.pending(USER_ID)) == 1

    stores.reconcile.clear(USER_ID, account.account_id, DAY, marked_before=item.marked_at)
    assert stores.reconcile.pending(USER_ID) == []
