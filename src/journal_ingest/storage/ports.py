from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping, Protocol

from journal_ingest.models import (
    DailyMetricsRow,
    JournalEntry,
    LedgerRow,
    MappingProfile,
    MappingSpec,
    PendingReconcile,
    TradingAccount,
)


@dataclass(frozen=True)
class SaveOutcome:
    created: bool
    row: LedgerRow
    previous: LedgerRow | None = None


class LedgerStore(Protocol):
    def find_by_fingerprint(self, user_id: str, account_id: str, fingerprint: str) -> LedgerRow | None: ...

    def find_by_external_id(
        self, user_id: str, account_id: str, source: str, external_id: str
    ) -> LedgerRow | None: ...

    def insert(self, row: LedgerRow) -> LedgerRow: ...

    def update(self, row_id: str, fields: Mapping[str, Any]) -> None: ...

    def save(self, row: LedgerRow) -> SaveOutcome: ...

    def list_by_account(
        self,
        user_id: str,
        account_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[LedgerRow]: ...


class MetricsStore(Protocol):
    def find(self, user_id: str, account_id: str, day: date) -> DailyMetricsRow | None: ...

    def upsert(self, row: DailyMetricsRow) -> None: ...

    def delete(self, user_id: str, account_id: str, day: date) -> None: ...

    def list_for_user(
        self,
        user_id: str,
        account_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DailyMetricsRow]: ...


class MappingProfileStore(Protocol):
    def save(self, user_id: str, name: str, source: str, mapping: MappingSpec) -> MappingProfile: ...

    def list_by_user(self, user_id: str) -> list[MappingProfile]: ...


class TokenResolver(Protocol):
    def resolve_user_by_token(self, token: str) -> str | None: ...


class TokenStore(TokenResolver, Protocol):
    def active_token(self, user_id: str) -> str | None: ...

    def issue(self, user_id: str, token: str) -> None: ...


class AccountStore(Protocol):
    def resolve_tag(self, user_id: str, tag: str) -> TradingAccount | None: ...

    def register(self, user_id: str, tag: str, name: str | None = None) -> TradingAccount: ...

    def list_by_user(self, user_id: str) -> list[TradingAccount]: ...


class JournalStore(Protocol):
    def create(self, entry: JournalEntry) -> JournalEntry: ...

    def list_by_user(
        self, user_id: str, start: date | None = None, end: date | None = None
    ) -> list[JournalEntry]: ...


class AttachmentStore(Protocol):
    def save(self, content: bytes, filename: str, content_type: str | None = None) -> str: ...


class ReconcileQueue(Protocol):
    def mark(self, user_id: str, account_id: str, day: date, reason: str) -> None: ...

    def pending(self, user_id: str | None = None) -> list[PendingReconcile]: ...

    def clear(
        self, user_id: str, account_id: str, day: date, marked_before: datetime | None = None
    ) -> None: ...


@dataclass(frozen=True)
class Stores:
    ledger: LedgerStore
    metrics: MetricsStore
    profiles: MappingProfileStore
    tokens: TokenStore
    accounts: AccountStore
    journal: JournalStore
    attachments: AttachmentStore
    reconcile: ReconcileQueue
