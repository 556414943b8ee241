from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from journal_ingest.metrics.daily import recompute_day
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    recomputed: list[tuple[str, date]] = field(default_factory=list)
    cleared: list[tuple[str, date]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "recomputed": [
                {"accountId": account_id, "date": day.isoformat()} for account_id, day in self.recomputed
            ],
            "cleared": [{"accountId": account_id, "date": day.isoformat()} for account_id, day in self.cleared],
        }


def reconcile_pending(stores: Stores, user_id: str | None = None) -> ReconcileResult:
    """Recompute every day the webhook adapter marked pending, then drop the marks."""
    result = ReconcileResult()
    for item in stores.reconcile.pending(user_id):
        metrics = recompute_day(stores, item.user_id, item.account_id, item.trade_date)
        stores.reconcile.clear(item.user_id, item.account_id, item.trade_date, marked_before=item.marked_at)
        key = (item.account_id, item.trade_date)
        if metrics is None:
            result.cleared.append(key)
        else:
            result.recomputed.append(key)
    if result.recomputed or result.cleared:
        logger.info(
            "Reconciled %d day(s), cleared %d", len(result.recomputed), len(result.cleared)
        )
    return result
