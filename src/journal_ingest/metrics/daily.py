from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Hashable, Iterable, Iterator

from journal_ingest.models import DailyMetricsRow, LedgerRow
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] <= 0:
                    self._users.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_DAY_LOCKS = KeyedLocks()


def compute_daily_metrics(
    user_id: str, account_id: str, day: date, rows: Iterable[LedgerRow]
) -> DailyMetricsRow:
    gross = Decimal("0")
    fees = Decimal("0")
    wins = 0
    losses = 0
    trade_count = 0
    open_count = 0
    symbols: set[str] = set()
    for row in rows:
        trade_count += 1
        pnl = row.pnl if row.pnl is not None else Decimal("0")
        gross += pnl
        fees += row.fees
        if pnl > 0:
            wins += 1
        elif pnl < 0:
            losses += 1
        if row.exit_time is None and row.exit_price is None:
            open_count += 1
        symbols.add(row.symbol)

    stats: dict[str, Any] = {
        "trade_count": trade_count,
        "fees": str(fees),
        "open_count": open_count,
        "symbols": sorted(symbols),
    }
    return DailyMetricsRow(
        user_id=user_id,
        account_id=account_id,
        trade_date=day,
        gross_pnl=gross,
        net_pnl=gross - fees,
        win_count=wins,
        loss_count=losses,
        stats=stats,
    )


def recompute_day(
    stores: Stores,
    user_id: str,
    account_id: str,
    day: date,
    *,
    locks: KeyedLocks | None = None,
) -> DailyMetricsRow | None:
    """Rebuild the metrics row for one account day from the ledger.

    Returns ``None`` and removes any stored row when the day has no trades.
    """
    registry = locks if locks is not None else _DAY_LOCKS
    with registry.hold((user_id, account_id, day)):
        rows = stores.ledger.list_by_account(user_id, account_id, start=day, end=day)
        rows = [row for row in rows if row.trade_date == day]
        if not rows:
            stores.metrics.delete(user_id, account_id, day)
            logger.info("Cleared metrics for %s/%s on %s", user_id, account_id, day.isoformat())
            return None
        metrics = compute_daily_metrics(user_id, account_id, day, rows)
        stores.metrics.upsert(metrics)
    logger.debug(
        "Recomputed %s/%s on %s: %d trades, net %s",
        user_id,
        account_id,
        day.isoformat(),
        metrics.stats["trade_count"],
        metrics.net_pnl,
    )
    return metrics
