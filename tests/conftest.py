from __future__ import annotations

from pathlib import Path

import pytest

from journal_ingest.models import TradingAccount
from journal_ingest.storage.attachments import LocalAttachmentStore
from journal_ingest.storage.ports import Stores
from journal_ingest.storage.sqlite_store import SqliteDatabase, sqlite_stores

from builders import USER_ID


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "journal.sqlite"


@pytest.fixture()
def stores(tmp_path: Path, db_path: Path) -> Stores:
    return sqlite_stores(SqliteDatabase(db_path), LocalAttachmentStore(tmp_path / "attachments"))


@pytest.fixture()
def account(stores: Stores) -> TradingAccount:
    return stores.accounts.register(USER_ID, "apex-pa", name="Apex PA")


@pytest.fixture()
def token(stores: Stores) -> str:
    stores.tokens.issue(USER_ID, "tok123")
    return "tok123"

