from __future__ import annotations

from pathlib import Path

import pytest

from journal_ingest.config.app_config import (
    DEFAULT_WEBHOOK_SECRET_ENV,
    config_from_mapping,
    load_app_config,
    load_dotenv,
    resolve_env,
    webhook_secret,
)


def test_defaults_from_empty_mapping() -> None:
    config = config_from_mapping({})
    assert config.app.port == 8000
    assert config.ingest.source_timezone == "UTC"
    assert config.ingest.detect_threshold == 4
    assert config.webhook.secret_env == DEFAULT_WEBHOOK_SECRET_ENV
    assert config.email.default_account_tag == "default"
    assert config.email.inbound_mailbox is None
    assert config.broker.retry_attempts == 3


def test_load_app_config_reads_toml(tmp_path: Path) -> None:
    path = tmp_path / "app.toml"
    path.write_text(
        '[app]\nport = 9001\nlog_level = "debug"\n'
        '[ingest]\nsource_timezone = "America/New_York"\nstrict_numbers = true\n'
        '[email]\ninbound_mailbox = "trades@inbound.example.com"\n',
        encoding="utf-8",
    )
    config = load_app_config(path)
    assert config.app.port == 9001
    assert config.app.log_level == "DEBUG"
    assert config.ingest.source_timezone == "America/New_York"
    assert config.ingest.strict_numbers is True
    assert config.email.inbound_mailbox == "trades@inbound.example.com"


def test_config_path_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "other.toml"
    path.write_text("[app]\nport = 7000\n", encoding="utf-8")
    assert load_app_config(env={"JOURNAL_INGEST_CONFIG": str(path)}).app.port == 7000


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValueError, match="Mars/Olympus"):
        config_from_mapping({"ingest": {"source_timezone": "Mars/Olympus"}})


def test_dotenv_layering(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "# comment\nJOURNAL_INGEST_WEBHOOK_SECRET='from-file'\nTRADOVATE_USERNAME=trader\nbroken line\n",
        encoding="utf-8",
    )
    assert load_dotenv(env_path)["JOURNAL_INGEST_WEBHOOK_SECRET"] == "from-file"

    config = config_from_mapping({"app": {"env_path": str(env_path)}})
    merged = resolve_env(config, {"JOURNAL_INGEST_WEBHOOK_SECRET": "from-env"})
    assert merged["TRADOVATE_USERNAME"] == "trader"
    assert webhook_secret(config, merged) == "from-env"


def test_blank_webhook_secret_is_unset() -> None:
    config = config_from_mapping({})
    assert webhook_secret(config, {DEFAULT_WEBHOOK_SECRET_ENV: "  "}) is None
