from __future__ import annotations

import pytest

from journal_ingest.storage.ports import Stores
from journal_ingest.tokens import TOKEN_LENGTH, ensure_token, ingest_address, new_token, regenerate_token

from builders import USER_ID


def test_new_token_is_alphanumeric() -> None:
    token = new_token()
    assert len(token) == TOKEN_LENGTH
    assert token.isalnum()
    assert new_token() != token


def test_ensure_token_is_stable(stores: Stores) -> None:
    first = ensure_token(stores.tokens, USER_ID)
    assert ensure_token(stores.tokens, USER_ID) == first
    assert stores.tokens.resolve_user_by_token(first) == USER_ID


def test_regenerate_invalidates_previous_token(stores: Stores) -> None:
    old = ensure_token(stores.tokens, USER_ID)
    new = regenerate_token(stores.tokens, USER_ID)

    assert new != old
    assert stores.tokens.resolve_user_by_token(old) is None
    assert stores.tokens.resolve_user_by_token(new) == USER_ID
    assert stores.tokens.active_token(USER_ID) == new


def test_tokens_are_per_user(stores: Stores) -> None:
    mine = ensure_token(stores.tokens, USER_ID)
    theirs = ensure_token(stores.tokens, "user-2")
    regenerate_token(stores.tokens, "user-2")
    assert stores.tokens.resolve_user_by_token(mine) == USER_ID
    assert stores.tokens.resolve_user_by_token(theirs) is None


def test_ingest_address() -> None:
    assert ingest_address("abc123", "trades@inbound.example.com") == "trades+abc123@inbound.example.com"
    with pytest.raises(ValueError):
        ingest_address("abc123", "not-an-address")
