from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Mapping

from journal_ingest.config.app_config import AppConfig
from journal_ingest.errors import StorageError
from journal_ingest.models import (
    Attachment,
    DailyMetricsRow,
    JournalEntry,
    LedgerRow,
    MappingProfile,
    MappingSpec,
    PendingReconcile,
    TradingAccount,
)
from journal_ingest.storage.attachments import LocalAttachmentStore
from journal_ingest.storage.ports import SaveOutcome, Stores

_LEDGER_COLUMNS = (
    "id",
    "user_id",
    "account_id",
    "fingerprint",
    "import_source",
    "external_id",
    "trade_date",
    "symbol",
    "side",
    "quantity",
    "entry_price",
    "exit_price",
    "entry_time",
    "exit_time",
    "fees",
    "pnl",
    "broker_execution_id",
    "created_at",
    "updated_at",
)
# Fields a repeat fingerprint may overwrite.
_LEDGER_MUTABLE = (
    "import_source",
    "external_id",
    "trade_date",
    "symbol",
    "side",
    "quantity",
    "entry_price",
    "exit_price",
    "entry_time",
    "exit_time",
    "fees",
    "pnl",
    "broker_execution_id",
)


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trades (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            fingerprint TEXT NOT NULL,
            import_source TEXT NOT NULL,
            external_id TEXT,
            trade_date TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            quantity TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            exit_price TEXT,
            entry_time TEXT NOT NULL,
            exit_time TEXT,
            fees TEXT NOT NULL,
            pnl TEXT,
            broker_execution_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, account_id, fingerprint)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trades_day ON trades (user_id, account_id, trade_date)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_trades_external
        ON trades (user_id, account_id, import_source, external_id)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_metrics (
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            trade_date TEXT NOT NULL,
            gross_pnl TEXT NOT NULL,
            net_pnl TEXT NOT NULL,
            win_count INTEGER NOT NULL,
            loss_count INTEGER NOT NULL,
            stats_json TEXT NOT NULL,
            PRIMARY KEY (user_id, account_id, trade_date)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS mapping_profiles (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            source TEXT NOT NULL,
            mapping_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, name)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ingest_tokens (
            token TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            active INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_ingest_tokens_active
        ON ingest_tokens (user_id) WHERE active = 1
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trading_accounts (
            account_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            tag TEXT NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, tag)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS journal_entries (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            account_id TEXT,
            trade_id TEXT,
            entry_date TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            attachments_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_reconcile (
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            trade_date TEXT NOT NULL,
            reason TEXT NOT NULL,
            marked_at TEXT NOT NULL,
            PRIMARY KEY (user_id, account_id, trade_date)
        )
        """
    )


class SqliteDatabase:
    """Opens a short-lived connection per operation so worker threads never share one."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        with self.connection() as conn:
            init_db(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = connect(self.db_path)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Cannot open database {self.db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")


class SqliteLedgerStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def find_by_fingerprint(self, user_id: str, account_id: str, fingerprint: str) -> LedgerRow | None:
        with self._db.connection() as conn:
            return _find_trade(conn, user_id, account_id, fingerprint)

    def find_by_external_id(
        self, user_id: str, account_id: str, source: str, external_id: str
    ) -> LedgerRow | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM trades
                WHERE user_id = ? AND account_id = ? AND import_source = ? AND external_id = ?
                """,
                (user_id, account_id, source, external_id),
            ).fetchone()
        return _ledger_from_row(row) if row is not None else None

    def insert(self, row: LedgerRow) -> LedgerRow:
        with self._db.transaction() as conn:
            return _insert_trade(conn, row)

    def update(self, row_id: str, fields: Mapping[str, Any]) -> None:
        with self._db.transaction() as conn:
            _update_trade(conn, row_id, fields)

    def save(self, row: LedgerRow) -> SaveOutcome:
        # Lookup and write share one IMMEDIATE transaction so concurrent imports
        # of the same fingerprint cannot both insert.
        with self._db.transaction() as conn:
            existing = _find_trade(conn, row.user_id, row.account_id, row.fingerprint)
            if existing is None:
                return SaveOutcome(created=True, row=_insert_trade(conn, row))
            fields = {name: getattr(row, name) for name in _LEDGER_MUTABLE}
            _update_trade(conn, existing.id or "", fields)
            updated = _find_trade(conn, row.user_id, row.account_id, row.fingerprint)
        return SaveOutcome(created=False, row=updated or existing, previous=existing)

    def list_by_account(
        self,
        user_id: str,
        account_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[LedgerRow]:
        query = "SELECT * FROM trades WHERE user_id = ? AND account_id = ?"
        params: list[Any] = [user_id, account_id]
        if start is not None:
            query += " AND trade_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND trade_date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY entry_time, id"
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_ledger_from_row(row) for row in rows]


class SqliteMetricsStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def find(self, user_id: str, account_id: str, day: date) -> DailyMetricsRow | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM daily_metrics WHERE user_id = ? AND account_id = ? AND trade_date = ?",
                (user_id, account_id, day.isoformat()),
            ).fetchone()
        return _metrics_from_row(row) if row is not None else None

    def upsert(self, row: DailyMetricsRow) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO daily_metrics (
                    user_id, account_id, trade_date, gross_pnl, net_pnl, win_count, loss_count, stats_json
                )
                VALUES (
                    :user_id, :account_id, :trade_date, :gross_pnl, :net_pnl, :win_count, :loss_count, :stats_json
                )
                ON CONFLICT(user_id, account_id, trade_date) DO UPDATE SET
                    gross_pnl=excluded.gross_pnl,
                    net_pnl=excluded.net_pnl,
                    win_count=excluded.win_count,
                    loss_count=excluded.loss_count,
                    stats_json=excluded.stats_json
                """,
                {
                    "user_id": row.user_id,
                    "account_id": row.account_id,
                    "trade_date": row.trade_date.isoformat(),
                    "gross_pnl": str(row.gross_pnl),
                    "net_pnl": str(row.net_pnl),
                    "win_count": row.win_count,
                    "loss_count": row.loss_count,
                    "stats_json": _json_dump(row.stats),
                },
            )

    def delete(self, user_id: str, account_id: str, day: date) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM daily_metrics WHERE user_id = ? AND account_id = ? AND trade_date = ?",
                (user_id, account_id, day.isoformat()),
            )

    def list_for_user(
        self,
        user_id: str,
        account_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DailyMetricsRow]:
        query = "SELECT * FROM daily_metrics WHERE user_id = ?"
        params: list[Any] = [user_id]
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if start is not None:
            query += " AND trade_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND trade_date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY trade_date, account_id"
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_metrics_from_row(row) for row in rows]


class SqliteMappingProfileStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def save(self, user_id: str, name: str, source: str, mapping: MappingSpec) -> MappingProfile:
        profile_id = str(uuid.uuid4())
        created_at = _utcnow()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO mapping_profiles (id, user_id, name, source, mapping_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, name) DO UPDATE SET
                    source=excluded.source,
                    mapping_json=excluded.mapping_json
                """,
                (profile_id, user_id, name, source, _json_dump(mapping.to_dict()), created_at.isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM mapping_profiles WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
        return _profile_from_row(row)

    def list_by_user(self, user_id: str) -> list[MappingProfile]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM mapping_profiles WHERE user_id = ? ORDER BY created_at, name",
                (user_id,),
            ).fetchall()
        return [_profile_from_row(row) for row in rows]


class SqliteTokenStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def resolve_user_by_token(self, token: str) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT user_id FROM ingest_tokens WHERE token = ? AND active = 1",
                (token,),
            ).fetchone()
        return row["user_id"] if row is not None else None

    def active_token(self, user_id: str) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT token FROM ingest_tokens WHERE user_id = ? AND active = 1",
                (user_id,),
            ).fetchone()
        return row["token"] if row is not None else None

    def issue(self, user_id: str, token: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("UPDATE ingest_tokens SET active = 0 WHERE user_id = ?", (user_id,))
            conn.execute(
                "INSERT INTO ingest_tokens (token, user_id, active, created_at) VALUES (?, ?, 1, ?)",
                (token, user_id, _utcnow().isoformat()),
            )


class SqliteAccountStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def resolve_tag(self, user_id: str, tag: str) -> TradingAccount | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM trading_accounts WHERE user_id = ? AND tag = ?",
                (user_id, _normalize_tag(tag)),
            ).fetchone()
        return _account_from_row(row) if row is not None else None

    def register(self, user_id: str, tag: str, name: str | None = None) -> TradingAccount:
        normalized = _normalize_tag(tag)
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO trading_accounts (account_id, user_id, tag, name, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, tag) DO UPDATE SET name=excluded.name
                """,
                (str(uuid.uuid4()), user_id, normalized, name or normalized, _utcnow().isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM trading_accounts WHERE user_id = ? AND tag = ?",
                (user_id, normalized),
            ).fetchone()
        return _account_from_row(row)

    def list_by_user(self, user_id: str) -> list[TradingAccount]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trading_accounts WHERE user_id = ? ORDER BY tag",
                (user_id,),
            ).fetchall()
        return [_account_from_row(row) for row in rows]


class SqliteJournalStore:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def create(self, entry: JournalEntry) -> JournalEntry:
        entry.id = entry.id or str(uuid.uuid4())
        entry.created_at = entry.created_at or _utcnow()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO journal_entries (
                    id, user_id, account_id, trade_id, entry_date, title, body, attachments_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.account_id,
                    entry.trade_id,
                    entry.entry_date.isoformat(),
                    entry.title,
                    entry.body,
                    json.dumps([item.to_dict() for item in entry.attachments], sort_keys=True),
                    entry.created_at.isoformat(),
                ),
            )
        return entry

    def list_by_user(
        self, user_id: str, start: date | None = None, end: date | None = None
    ) -> list[JournalEntry]:
        query = "SELECT * FROM journal_entries WHERE user_id = ?"
        params: list[Any] = [user_id]
        if start is not None:
            query += " AND entry_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND entry_date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY entry_date, created_at"
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_journal_from_row(row) for row in rows]


class SqliteReconcileQueue:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def mark(self, user_id: str, account_id: str, day: date, reason: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_reconcile (user_id, account_id, trade_date, reason, marked_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, account_id, trade_date) DO UPDATE SET
                    reason=excluded.reason,
                    marked_at=excluded.marked_at
                """,
                (user_id, account_id, day.isoformat(), reason, _utcnow().isoformat(timespec="microseconds")),
            )

    def pending(self, user_id: str | None = None) -> list[PendingReconcile]:
        query = "SELECT * FROM pending_reconcile"
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY user_id, account_id, trade_date"
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PendingReconcile(
                user_id=row["user_id"],
                account_id=row["account_id"],
                trade_date=date.fromisoformat(row["trade_date"]),
                reason=row["reason"],
                marked_at=_parse_iso(row["marked_at"]),
            )
            for row in rows
        ]

    def clear(
        self, user_id: str, account_id: str, day: date, marked_before: datetime | None = None
    ) -> None:
        """Drop a pending day, unless it was marked again after ``marked_before``."""
        query = "DELETE FROM pending_reconcile WHERE user_id = ? AND account_id = ? AND trade_date = ?"
        params: list[Any] = [user_id, account_id, day.isoformat()]
        if marked_before is not None:
            query += " AND marked_at <= ?"
            params.append(marked_before.astimezone(timezone.utc).isoformat(timespec="microseconds"))
        with self._db.transaction() as conn:
            conn.execute(query, params)


def open_sqlite_stores(app_config: AppConfig) -> Stores:
    db = SqliteDatabase(app_config.app.db_path)
    attachments = LocalAttachmentStore(
        app_config.attachments.dir, url_prefix=app_config.attachments.url_prefix
    )
    return sqlite_stores(db, attachments)


def sqlite_stores(db: SqliteDatabase, attachments: LocalAttachmentStore) -> Stores:
    return Stores(
        ledger=SqliteLedgerStore(db),
        metrics=SqliteMetricsStore(db),
        profiles=SqliteMappingProfileStore(db),
        tokens=SqliteTokenStore(db),
        accounts=SqliteAccountStore(db),
        journal=SqliteJournalStore(db),
        attachments=attachments,
        reconcile=SqliteReconcileQueue(db),
    )


def _find_trade(
    conn: sqlite3.Connection, user_id: str, account_id: str, fingerprint: str
) -> LedgerRow | None:
    row = conn.execute(
        "SELECT * FROM trades WHERE user_id = ? AND account_id = ? AND fingerprint = ?",
        (user_id, account_id, fingerprint),
    ).fetchone()
    return _ledger_from_row(row) if row is not None else None


def _insert_trade(conn: sqlite3.Connection, row: LedgerRow) -> LedgerRow:
    now = _utcnow()
    row.id = row.id or str(uuid.uuid4())
    row.created_at = row.created_at or now
    row.updated_at = now
    values = {name: _to_db(getattr(row, name)) for name in _LEDGER_COLUMNS}
    columns = ", ".join(_LEDGER_COLUMNS)
    placeholders = ", ".join(f":{name}" for name in _LEDGER_COLUMNS)
    conn.execute(f"INSERT INTO trades ({columns}) VALUES ({placeholders})", values)
    return row


def _update_trade(conn: sqlite3.Connection, row_id: str, fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(_LEDGER_MUTABLE)
    if unknown:
        raise ValueError(f"Cannot update ledger columns: {', '.join(sorted(unknown))}")
    values = {name: _to_db(value) for name, value in fields.items()}
    values["updated_at"] = _to_db(_utcnow())
    assignments = ", ".join(f"{name}=:{name}" for name in values)
    values["row_id"] = row_id
    conn.execute(f"UPDATE trades SET {assignments} WHERE id = :row_id", values)


def _ledger_from_row(row: sqlite3.Row) -> LedgerRow:
    return LedgerRow(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        fingerprint=row["fingerprint"],
        import_source=row["import_source"],
        external_id=row["external_id"],
        trade_date=date.fromisoformat(row["trade_date"]),
        symbol=row["symbol"],
        side=row["side"],
        quantity=Decimal(row["quantity"]),
        entry_price=Decimal(row["entry_price"]),
        exit_price=_maybe_decimal(row["exit_price"]),
        entry_time=_parse_iso(row["entry_time"]),
        exit_time=_maybe_iso(row["exit_time"]),
        fees=Decimal(row["fees"]),
        pnl=_maybe_decimal(row["pnl"]),
        broker_execution_id=row["broker_execution_id"],
        created_at=_parse_iso(row["created_at"]),
        updated_at=_parse_iso(row["updated_at"]),
    )


def _metrics_from_row(row: sqlite3.Row) -> DailyMetricsRow:
    return DailyMetricsRow(
        user_id=row["user_id"],
        account_id=row["account_id"],
        trade_date=date.fromisoformat(row["trade_date"]),
        gross_pnl=Decimal(row["gross_pnl"]),
        net_pnl=Decimal(row["net_pnl"]),
        win_count=int(row["win_count"]),
        loss_count=int(row["loss_count"]),
        stats=json.loads(row["stats_json"]),
    )


def _profile_from_row(row: sqlite3.Row) -> MappingProfile:
    return MappingProfile(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        source=row["source"],
        mapping=MappingSpec.from_dict(json.loads(row["mapping_json"])),
        created_at=_parse_iso(row["created_at"]),
    )


def _account_from_row(row: sqlite3.Row) -> TradingAccount:
    return TradingAccount(
        account_id=row["account_id"],
        user_id=row["user_id"],
        tag=row["tag"],
        name=row["name"],
        created_at=_parse_iso(row["created_at"]),
    )


def _journal_from_row(row: sqlite3.Row) -> JournalEntry:
    attachments = [
        Attachment(
            type=str(item.get("type", "image")),
            url=str(item.get("url", "")),
            filename=item.get("filename"),
            meta=item.get("meta") or {},
        )
        for item in json.loads(row["attachments_json"] or "[]")
        if isinstance(item, dict)
    ]
    return JournalEntry(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        trade_id=row["trade_id"],
        entry_date=date.fromisoformat(row["entry_date"]),
        title=row["title"],
        body=row["body"],
        attachments=attachments,
        created_at=_parse_iso(row["created_at"]),
    )


def _to_db(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _maybe_decimal(value: str | None) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(value)


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _maybe_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return _parse_iso(value)


def _normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_dump(value: object) -> str:
    if value is None:
        return "{}"
    if hasattr(value, "__dataclass_fields__"):
        value = asdict(value)
    return json.dumps(value, sort_keys=True, default=str)
