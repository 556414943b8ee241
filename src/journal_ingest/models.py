from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

SIDE_LONG = "long"
SIDE_SHORT = "short"

SOURCE_CSV = "csv"
SOURCE_EMAIL = "email"
SOURCE_WEBHOOK = "tradingview-webhook"
SOURCE_MANUAL = "manual"
SOURCE_BROKER_SYNC = "broker-sync"

IMPORT_SOURCES = (SOURCE_CSV, SOURCE_EMAIL, SOURCE_WEBHOOK, SOURCE_MANUAL, SOURCE_BROKER_SYNC)


@dataclass(frozen=True)
class MappingSpec:
    symbol: str
    side: str
    qty: str
    entry_price: str
    entry_time: str
    exit_price: str | None = None
    exit_time: str | None = None
    fees: str | None = None
    pnl: str | None = None
    broker_execution_id: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MappingSpec":
        missing = [name for name in MANDATORY_MAPPING_FIELDS if not raw.get(name)]
        if missing:
            raise ValueError(f"Mapping is missing required columns: {', '.join(missing)}")
        return cls(**{name: _optional_text(raw.get(name)) for name in MAPPING_FIELDS})

    def to_dict(self) -> dict[str, str]:
        output: dict[str, str] = {}
        for name in MAPPING_FIELDS:
            value = getattr(self, name)
            if value is not None:
                output[name] = value
        return output

    def mandatory_columns(self) -> list[str]:
        return [getattr(self, name) for name in MANDATORY_MAPPING_FIELDS]


MANDATORY_MAPPING_FIELDS = ("symbol", "side", "qty", "entry_price", "entry_time")
MAPPING_FIELDS = MANDATORY_MAPPING_FIELDS + (
    "exit_price",
    "exit_time",
    "fees",
    "pnl",
    "broker_execution_id",
)


@dataclass
class TradeCandidate:
    symbol: str
    side: str
    quantity: Decimal
    entry_price: Decimal
    entry_time: datetime
    exit_price: Decimal | None = None
    exit_time: datetime | None = None
    fees: Decimal = Decimal("0")
    pnl: Decimal | None = None
    broker_execution_id: str | None = None


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class LedgerRow:
    user_id: str
    account_id: str
    fingerprint: str
    import_source: str
    trade_date: date
    symbol: str
    side: str
    quantity: Decimal
    entry_price: Decimal
    entry_time: datetime
    exit_price: Decimal | None = None
    exit_time: datetime | None = None
    fees: Decimal = Decimal("0")
    pnl: Decimal | None = None
    broker_execution_id: str | None = None
    external_id: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_candidate(
        cls,
        candidate: TradeCandidate,
        *,
        user_id: str,
        account_id: str,
        fingerprint: str,
        import_source: str,
        trade_date: date,
        external_id: str | None = None,
    ) -> "LedgerRow":
        return cls(
            user_id=user_id,
            account_id=account_id,
            fingerprint=fingerprint,
            import_source=import_source,
            trade_date=trade_date,
            symbol=candidate.symbol,
            side=candidate.side,
            quantity=candidate.quantity,
            entry_price=candidate.entry_price,
            entry_time=candidate.entry_time,
            exit_price=candidate.exit_price,
            exit_time=candidate.exit_time,
            fees=candidate.fees,
            pnl=candidate.pnl,
            broker_execution_id=candidate.broker_execution_id,
            external_id=external_id,
        )

    @property
    def net_pnl(self) -> Decimal:
        return (self.pnl or Decimal("0")) - self.fees


@dataclass(frozen=True)
class DailyMetricsRow:
    user_id: str
    account_id: str
    trade_date: date
    gross_pnl: Decimal
    net_pnl: Decimal
    win_count: int
    loss_count: int
    stats: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MappingProfile:
    id: str
    user_id: str
    name: str
    source: str
    mapping: MappingSpec
    created_at: datetime | None = None


@dataclass(frozen=True)
class IngestionToken:
    user_id: str
    token: str
    active: bool
    created_at: datetime | None = None


@dataclass(frozen=True)
class TradingAccount:
    account_id: str
    user_id: str
    tag: str
    name: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class Attachment:
    type: str
    url: str
    filename: str | None = None
    meta: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "url": self.url, "meta": dict(self.meta)}
        if self.filename is not None:
            payload["filename"] = self.filename
        return payload


@dataclass
class JournalEntry:
    user_id: str
    entry_date: date
    title: str
    body: str
    account_id: str | None = None
    trade_id: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PendingReconcile:
    user_id: str
    account_id: str
    trade_date: date
    reason: str
    marked_at: datetime | None = None


@dataclass
class ImportResult:
    inserted: int = 0
    updated: int = 0
    dates_touched: list[date] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    detected_source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "inserted": self.inserted,
            "updated": self.updated,
            "dates_touched": [day.isoformat() for day in self.dates_touched],
            "errors": list(self.errors),
        }
        if self.detected_source is not None:
            payload["detected_source"] = self.detected_source
        return payload


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None
