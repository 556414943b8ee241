from __future__ import annotations

import logging
import secrets
import string

from journal_ingest.storage.ports import TokenStore

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
TOKEN_LENGTH = 16


def new_token(length: int = TOKEN_LENGTH) -> str:
    # Alphanumeric only so the token survives as an email sub-address.
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def ensure_token(tokens: TokenStore, user_id: str) -> str:
    current = tokens.active_token(user_id)
    if current is not None:
        return current
    return regenerate_token(tokens, user_id)


def regenerate_token(tokens: TokenStore, user_id: str) -> str:
    token = new_token()
    tokens.issue(user_id, token)
    logger.info("Issued ingestion token for %s", user_id)
    return token


def ingest_address(token: str, mailbox: str) -> str:
    """Sub-address a mailbox (``trades@example.com``) with a routing token."""
    local, sep, domain = mailbox.partition("@")
    if not sep or not local or not domain:
        raise ValueError(f"Invalid mailbox address: {mailbox!r}")
    return f"{local}+{token}@{domain}"
