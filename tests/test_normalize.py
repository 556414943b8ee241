from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from journal_ingest.ingest.normalize import normalize, parse_number, parse_timestamp


@pytest.mark.parametrize("kind", ["number", "date", "side", "symbol"])
def test_blank_input_is_none_for_every_kind(kind: str) -> None:
    assert normalize("", kind) is None
    assert normalize("   ", kind) is None
    assert normalize(None, kind) is None


def test_number_strips_currency_noise() -> None:
    assert normalize("$1,234.50", "number") == Decimal("1234.50")
    assert normalize(" 19.50 ", "number") == Decimal("19.50")


def test_number_parentheses_are_negative() -> None:
    assert normalize("(12.50)", "number") == Decimal("-12.50")
    assert normalize("$(40)", "number") == Decimal("-40")


def test_number_lenient_failure_is_zero() -> None:
    assert normalize("n/a", "number") == Decimal("0")


def test_parse_number_is_strict() -> None:
    with pytest.raises(ValueError):
        parse_number("n/a")
    with pytest.raises(ValueError):
        parse_number("NaN")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Buy", "long"),
        ("BOT", "long"),
        ("Long", "long"),
        ("b", "long"),
        ("Sell", "short"),
        ("SLD", "short"),
        ("short", "short"),
        ("Sell Short", "short"),
        ("Buy to Cover", "long"),
    ],
)
def test_side_synonyms(raw: str, expected: str) -> None:
    assert normalize(raw, "side") == expected


@pytest.mark.parametrize("raw", ["flat", "x", "buy/sell"])
def test_unrecognized_side_is_none(raw: str) -> None:
    assert normalize(raw, "side") is None


def test_symbol_is_trimmed_and_uppercased() -> None:
    assert normalize(" mnqz4 ", "symbol") == "MNQZ4"


def test_iso_timestamp_with_zulu() -> None:
    assert normalize("2024-03-01T14:30:00Z", "date") == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)


def test_epoch_seconds_and_milliseconds() -> None:
    expected = datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)
    assert parse_timestamp("1709303400") == expected
    assert parse_timestamp("1709303400000") == expected
    assert parse_timestamp(1709303400) == expected


def test_naive_timestamp_uses_source_timezone() -> None:
    parsed = parse_timestamp("03/01/2024 09:30:00", tz="America/New_York")
    assert parsed == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)


def test_naive_timestamp_defaults_to_utc() -> None:
    assert parse_timestamp("2024-03-01 14:30:00") == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)


def test_twelve_hour_clock() -> None:
    parsed = parse_timestamp("03/01/2024 2:30:00 PM")
    assert parsed == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)


def test_unparseable_date_is_none() -> None:
    assert normalize("yesterday-ish", "date") is None
