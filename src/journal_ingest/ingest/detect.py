from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from journal_ingest.models import MappingProfile, MappingSpec

DEFAULT_THRESHOLD = 4


@dataclass(frozen=True)
class SourceSignature:
    source: str
    headers: tuple[str, ...]
    mapping: MappingSpec


@dataclass(frozen=True)
class DetectedFormat:
    source: str
    mapping: MappingSpec


APEX = SourceSignature(
    source="apex",
    headers=("Entry Time", "Exit Time", "Contract", "P/L", "Commissions", "Side"),
    mapping=MappingSpec(
        symbol="Contract",
        side="Side",
        qty="Qty",
        entry_price="Entry Price",
        exit_price="Exit Price",
        entry_time="Entry Time",
        exit_time="Exit Time",
        fees="Commissions",
        pnl="P/L",
    ),
)

TOPSTEP = SourceSignature(
    source="topstep",
    headers=("Instrument", "Quantity", "Buy/Sell", "PnL", "Fees"),
    mapping=MappingSpec(
        symbol="Instrument",
        side="Buy/Sell",
        qty="Quantity",
        entry_price="Entry Price",
        exit_price="Exit Price",
        entry_time="Time",
        exit_time="Exit Time",
        fees="Fees",
        pnl="PnL",
    ),
)

TPT = SourceSignature(
    source="tpt",
    headers=("Symbol", "Side", "Filled Qty", "Avg Price", "Realized PnL"),
    mapping=MappingSpec(
        symbol="Symbol",
        side="Side",
        qty="Filled Qty",
        entry_price="Avg Price",
        exit_price="Exit Price",
        entry_time="Time",
        exit_time="Exit Time",
        fees="Fees",
        pnl="Realized PnL",
    ),
)

# Priority order: first signature over the threshold wins.
SIGNATURES: tuple[SourceSignature, ...] = (APEX, TOPSTEP, TPT)


def detect_format(
    headers: Iterable[str],
    *,
    threshold: int = DEFAULT_THRESHOLD,
    signatures: Sequence[SourceSignature] = SIGNATURES,
) -> DetectedFormat | None:
    header_set = {str(header).strip().lower() for header in headers}
    for signature in signatures:
        matches = sum(1 for header in signature.headers if header.lower() in header_set)
        if matches >= threshold:
            return DetectedFormat(source=signature.source, mapping=signature.mapping)
    return None


def match_profile(headers: Iterable[str], profiles: Iterable[MappingProfile]) -> MappingProfile | None:
    available = {str(header) for header in headers}
    for profile in profiles:
        if all(column in available for column in profile.mapping.mandatory_columns()):
            return profile
    return None
