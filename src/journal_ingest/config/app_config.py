from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("config/app.toml")
DEFAULT_WEBHOOK_SECRET_ENV = "JOURNAL_INGEST_WEBHOOK_SECRET"


@dataclass(frozen=True)
class AppSettings:
    db_path: Path
    host: str
    port: int
    reload: bool
    env_path: Path
    log_level: str
    public_base_url: str


@dataclass(frozen=True)
class IngestSettings:
    source_timezone: str
    trade_date_timezone: str
    strict_numbers: bool
    detect_threshold: int


@dataclass(frozen=True)
class WebhookSettings:
    secret_env: str


@dataclass(frozen=True)
class EmailSettings:
    default_account_tag: str
    inbound_mailbox: str | None


@dataclass(frozen=True)
class AttachmentSettings:
    dir: Path
    url_prefix: str


@dataclass(frozen=True)
class BrokerSettings:
    base_url: str
    timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float
    lookback_days: int


@dataclass(frozen=True)
class AppConfig:
    app: AppSettings
    ingest: IngestSettings
    webhook: WebhookSettings
    email: EmailSettings
    attachments: AttachmentSettings
    broker: BrokerSettings


def load_app_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if env is None else env
    config_path = Path(path or env.get("JOURNAL_INGEST_CONFIG") or DEFAULT_CONFIG_PATH)
    raw: Mapping[str, Any] = {}
    if config_path.exists():
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    return config_from_mapping(raw)


def config_from_mapping(raw: Mapping[str, Any]) -> AppConfig:
    app_raw = _section(raw, "app")
    ingest_raw = _section(raw, "ingest")
    webhook_raw = _section(raw, "webhook")
    email_raw = _section(raw, "email")
    attachments_raw = _section(raw, "attachments")
    broker_raw = _section(raw, "broker")

    app = AppSettings(
        db_path=Path(app_raw.get("db_path", "data/journal_ingest.sqlite")),
        host=str(app_raw.get("host", "127.0.0.1")),
        port=int(app_raw.get("port", 8000)),
        reload=bool(app_raw.get("reload", False)),
        env_path=Path(app_raw.get("env_path", ".env")),
        log_level=str(app_raw.get("log_level", "INFO")).upper(),
        public_base_url=str(app_raw.get("public_base_url", "http://127.0.0.1:8000")).rstrip("/"),
    )

    ingest = IngestSettings(
        source_timezone=_timezone_name(ingest_raw.get("source_timezone"), "UTC"),
        trade_date_timezone=_timezone_name(ingest_raw.get("trade_date_timezone"), "UTC"),
        strict_numbers=bool(ingest_raw.get("strict_numbers", False)),
        detect_threshold=max(1, int(ingest_raw.get("detect_threshold", 4))),
    )

    webhook = WebhookSettings(
        secret_env=str(webhook_raw.get("secret_env") or DEFAULT_WEBHOOK_SECRET_ENV),
    )

    email = EmailSettings(
        default_account_tag=str(email_raw.get("default_account_tag", "default")).strip().lower()
        or "default",
        inbound_mailbox=str(email_raw.get("inbound_mailbox") or "").strip() or None,
    )

    attachments = AttachmentSettings(
        dir=Path(attachments_raw.get("dir", "data/attachments")),
        url_prefix=str(attachments_raw.get("url_prefix", "/api/attachments")).rstrip("/"),
    )

    broker = BrokerSettings(
        base_url=str(broker_raw.get("base_url", "https://live-api-d.tradovate.com/v1")).rstrip("/"),
        timeout_seconds=float(broker_raw.get("timeout_seconds", 30.0)),
        retry_attempts=int(broker_raw.get("retry_attempts", 3)),
        retry_backoff_seconds=float(broker_raw.get("retry_backoff_seconds", 0.75)),
        lookback_days=int(broker_raw.get("lookback_days", 30)),
    )

    return AppConfig(
        app=app,
        ingest=ingest,
        webhook=webhook,
        email=email,
        attachments=attachments,
        broker=broker,
    )


def load_dotenv(path: Path) -> dict[str, str]:
    env: dict[str, str] = {}
    if not path.exists():
        return env

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        env[key.strip()] = value.strip().strip("\"").strip("'")
    return env


def resolve_env(app_config: AppConfig, env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Process environment layered over the configured .env file."""
    merged = load_dotenv(app_config.app.env_path)
    merged.update(os.environ if env is None else env)
    return merged


def webhook_secret(app_config: AppConfig, env: Mapping[str, str]) -> str | None:
    value = env.get(app_config.webhook.secret_env, "").strip()
    return value or None


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if isinstance(value, Mapping):
        return value
    return {}


def _timezone_name(value: Any, default: str) -> str:
    if value in (None, ""):
        return default
    name = str(value).strip()
    if name.lower() == "utc":
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone in config: {name!r}") from exc
    return name
