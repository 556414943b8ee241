from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from journal_ingest.ingest.fingerprint import external_fingerprint, fingerprint
from journal_ingest.models import TradeCandidate


def _candidate(**overrides: object) -> TradeCandidate:
    base = TradeCandidate(
        symbol="ES",
        side="long",
        quantity=Decimal("2"),
        entry_price=Decimal("4500.25"),
        entry_time=datetime(2024, 1, 5, 9, 31, tzinfo=timezone.utc),
        exit_price=Decimal("4510.00"),
        exit_time=datetime(2024, 1, 5, 9, 45, tzinfo=timezone.utc),
        fees=Decimal("2.50"),
        pnl=Decimal("19.50"),
    )
    return replace(base, **overrides)


def test_fingerprint_is_stable() -> None:
    assert fingerprint(_candidate(), "acct-1") == fingerprint(_candidate(), "acct-1")


def test_equivalent_decimals_agree() -> None:
    assert fingerprint(_candidate(quantity=Decimal("2.00")), "acct-1") == fingerprint(_candidate(), "acct-1")


def test_fees_and_pnl_do_not_change_fingerprint() -> None:
    corrected = _candidate(fees=Decimal("3.10"), pnl=Decimal("18.90"))
    assert fingerprint(corrected, "acct-1") == fingerprint(_candidate(), "acct-1")


def test_same_instant_in_another_zone_agrees() -> None:
    shifted = _candidate(entry_time=_candidate().entry_time.astimezone(timezone(timedelta(hours=-5))))
    assert fingerprint(shifted, "acct-1") == fingerprint(_candidate(), "acct-1")


@pytest.mark.parametrize(
    "overrides",
    [
        {"symbol": "NQ"},
        {"side": "short"},
        {"quantity": Decimal("3")},
        {"entry_price": Decimal("4500.50")},
        {"exit_price": None},
        {"entry_time": datetime(2024, 1, 5, 9, 32, tzinfo=timezone.utc)},
        {"exit_time": None},
    ],
)
def test_fingerprint_is_sensitive_to_identity_fields(overrides: dict[str, object]) -> None:
    assert fingerprint(_candidate(**overrides), "acct-1") != fingerprint(_candidate(), "acct-1")


def test_fingerprint_is_scoped_to_account() -> None:
    assert fingerprint(_candidate(), "acct-1") != fingerprint(_candidate(), "acct-2")


def test_external_fingerprint() -> None:
    key = external_fingerprint("acct-1", "tradingview-webhook", "order-9")
    assert key == external_fingerprint("acct-1", "tradingview-webhook", "order-9")
    assert key != external_fingerprint("acct-1", "broker-sync", "order-9")
    assert len(key) == 64
