from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping

from journal_ingest.config.app_config import BrokerSettings
from journal_ingest.errors import BrokerError
from journal_ingest.ingest.normalize import normalize_side, normalize_symbol, parse_number, parse_timestamp
from journal_ingest.ingest.pipeline import ingest_external
from journal_ingest.ingest.rows import IngestOptions
from journal_ingest.metrics.daily import recompute_day
from journal_ingest.models import SOURCE_BROKER_SYNC, TradeCandidate
from journal_ingest.storage.ports import Stores

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://live-api-d.tradovate.com/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.75
DEFAULT_LOOKBACK_DAYS = 30
APP_ID = "TradingJournalPro"
APP_VERSION = "1.0.0"


@dataclass(frozen=True)
class BrokerCredentials:
    username: str
    password: str
    cid: int
    sec: str
    app_id: str = APP_ID
    app_version: str = APP_VERSION

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "BrokerCredentials":
        values = {
            name: env.get(name, "").strip()
            for name in ("TRADOVATE_USERNAME", "TRADOVATE_PASSWORD", "TRADOVATE_CID", "TRADOVATE_SEC")
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ValueError(f"Missing required environment values: {', '.join(missing)}")
        try:
            cid = int(values["TRADOVATE_CID"])
        except ValueError as exc:
            raise ValueError("TRADOVATE_CID must be an integer") from exc
        return cls(
            username=values["TRADOVATE_USERNAME"],
            password=values["TRADOVATE_PASSWORD"],
            cid=cid,
            sec=values["TRADOVATE_SEC"],
        )

    def __repr__(self) -> str:
        return f"BrokerCredentials(username={self.username!r}, cid={self.cid})"


@dataclass(frozen=True)
class BrokerSession:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"BrokerSession(expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class BrokerAccount:
    id: int
    name: str
    account_type: str | None = None


@dataclass(frozen=True)
class BrokerFill:
    id: str
    account_id: int | None
    symbol: str
    side: str
    qty: Decimal
    price: Decimal
    timestamp: datetime
    realized_pnl: Decimal | None
    commission: Decimal


@dataclass(frozen=True)
class TradovateConfig:
    base_url: str
    timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> "TradovateConfig":
        return cls(
            base_url=settings.base_url.rstrip("/"),
            timeout_seconds=settings.timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )

    @classmethod
    def default(cls) -> "TradovateConfig":
        return cls(
            base_url=DEFAULT_BASE_URL,
            timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
            retry_attempts=DEFAULT_RETRY_ATTEMPTS,
            retry_backoff_seconds=DEFAULT_RETRY_BACKOFF_SECONDS,
        )


class TradovateClient:
    """Stateless: every call takes the session it should authenticate with."""

    def __init__(self, config: TradovateConfig | None = None) -> None:
        self._config = config or TradovateConfig.default()

    def authenticate(self, credentials: BrokerCredentials) -> BrokerSession:
        payload = self._request(
            "POST",
            "/auth/accesstokenrequest",
            body={
                "name": credentials.username,
                "password": credentials.password,
                "appId": credentials.app_id,
                "appVersion": credentials.app_version,
                "cid": credentials.cid,
                "sec": credentials.sec,
            },
        )
        return _session_from_payload(payload, "Authentication failed")

    def renew(self, session: BrokerSession) -> BrokerSession:
        token = session.refresh_token or session.access_token
        payload = self._request("POST", "/auth/renewaccesstoken", token=token)
        renewed = _session_from_payload(payload, "Token renewal failed")
        if renewed.refresh_token is None and session.refresh_token is not None:
            return BrokerSession(renewed.access_token, session.refresh_token, renewed.expires_at)
        return renewed

    def list_accounts(self, session: BrokerSession) -> list[BrokerAccount]:
        payload = self._request("GET", "/account/list", token=session.access_token)
        if not isinstance(payload, list):
            raise BrokerError("Unexpected account list payload")
        accounts = []
        for item in payload:
            if not isinstance(item, Mapping) or item.get("id") is None:
                continue
            accounts.append(
                BrokerAccount(
                    id=int(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    account_type=item.get("accountType"),
                )
            )
        return accounts

    def fetch_fills(
        self,
        session: BrokerSession,
        account_ext_id: int | str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BrokerFill]:
        params = {"accountId": str(account_ext_id)}
        if start is not None:
            params["startTimestamp"] = _iso(start)
        if end is not None:
            params["endTimestamp"] = _iso(end)
        payload = self._request("GET", "/fill/list", params=params, token=session.access_token)
        if not isinstance(payload, list):
            raise BrokerError("Unexpected fill list payload")
        fills = []
        for item in payload:
            fill = _fill_from_payload(item)
            if fill is None:
                logger.warning("Skipping malformed fill: %s", item)
                continue
            fills.append(fill)
        return fills

    def _request(
        self,
        method: str,
        path: str,
        params: Mapping[str, str] | None = None,
        body: Mapping[str, Any] | None = None,
        token: str | None = None,
    ) -> Any:
        url = f"{self._config.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        elif method.upper() == "POST":
            headers["Content-Type"] = "application/json"
        return _send_with_retry(
            url=url,
            method=method,
            headers=headers,
            data=data,
            timeout_seconds=self._config.timeout_seconds,
            attempts=self._config.retry_attempts,
            backoff_seconds=self._config.retry_backoff_seconds,
        )


@dataclass
class SyncResult:
    fills: int = 0
    inserted: int = 0
    updated: int = 0
    dates_touched: list[date] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fills": self.fills,
            "inserted": self.inserted,
            "updated": self.updated,
            "dates_touched": [day.isoformat() for day in self.dates_touched],
            "errors": list(self.errors),
        }


def sync_account(
    stores: Stores,
    client: TradovateClient,
    session: BrokerSession,
    user_id: str,
    account_id: str,
    ext_account_id: int | str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    options: IngestOptions | None = None,
) -> SyncResult:
    options = options or IngestOptions()
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=lookback_days)
    fills = client.fetch_fills(session, ext_account_id, start, end)

    result = SyncResult(fills=len(fills))
    touched: set[date] = set()
    for fill in fills:
        candidate = fill_to_candidate(fill)
        if candidate is None:
            result.errors.append(f"Fill {fill.id}: unrecognized side {fill.side!r}")
            continue
        saved = ingest_external(
            stores,
            user_id,
            account_id,
            candidate,
            SOURCE_BROKER_SYNC,
            fill.id,
            options=options,
        )
        if saved.created:
            result.inserted += 1
        else:
            result.updated += 1
        touched.update(saved.dates)

    result.dates_touched = sorted(touched)
    for day in result.dates_touched:
        recompute_day(stores, user_id, account_id, day)
    logger.info(
        "Synced %d fills for %s/%s: %d inserted, %d updated",
        result.fills,
        user_id,
        account_id,
        result.inserted,
        result.updated,
    )
    return result


def fill_to_candidate(fill: BrokerFill) -> TradeCandidate | None:
    side = normalize_side(fill.side)
    if side is None:
        return None
    return TradeCandidate(
        symbol=normalize_symbol(fill.symbol),
        side=side,
        quantity=fill.qty,
        entry_price=fill.price,
        entry_time=fill.timestamp,
        fees=fill.commission,
        pnl=fill.realized_pnl,
        broker_execution_id=fill.id,
    )


def _fill_from_payload(item: Any) -> BrokerFill | None:
    if not isinstance(item, Mapping) or item.get("id") is None:
        return None
    symbol = _instrument_name(item.get("instrument"))
    timestamp = parse_timestamp(item.get("timestamp"), tz="UTC") if item.get("timestamp") else None
    if not symbol or timestamp is None:
        return None
    try:
        qty = parse_number(item.get("qty"))
        price = parse_number(item.get("price"))
        realized = item.get("realizedPnL")
        realized_pnl = parse_number(realized) if realized not in (None, "") else None
        commission = parse_number(item.get("commission") or 0)
    except ValueError:
        return None
    if qty <= 0:
        return None
    account_id = item.get("accountId")
    return BrokerFill(
        id=str(item["id"]),
        account_id=int(account_id) if account_id is not None else None,
        symbol=str(symbol),
        side=str(item.get("side") or ""),
        qty=qty,
        price=price,
        timestamp=timestamp,
        realized_pnl=realized_pnl,
        commission=commission,
    )


def _instrument_name(instrument: Any) -> str | None:
    if not isinstance(instrument, Mapping):
        return None
    master = instrument.get("masterInstrument")
    if isinstance(master, Mapping) and master.get("name"):
        return str(master["name"])
    name = instrument.get("name")
    return str(name) if name else None


def _session_from_payload(payload: Any, failure: str) -> BrokerSession:
    if not isinstance(payload, Mapping):
        raise BrokerError(f"{failure}: unexpected payload")
    if payload.get("errorText"):
        raise BrokerError(f"{failure}: {payload['errorText']}")
    access_token = payload.get("accessToken")
    if not access_token:
        raise BrokerError(f"{failure}: no access token in response")
    expires_at = None
    if payload.get("expirationTime"):
        expires_at = parse_timestamp(payload["expirationTime"], tz="UTC")
    return BrokerSession(
        access_token=str(access_token),
        refresh_token=payload.get("refreshToken"),
        expires_at=expires_at,
    )


def _send_request(
    url: str,
    method: str,
    headers: Mapping[str, str],
    data: bytes | None,
    timeout_seconds: float,
) -> Any:
    request = urllib.request.Request(url, headers=dict(headers), data=data, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            status = response.status
            content_type = response.headers.get("Content-Type", "")
            payload = response.read()
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise BrokerError(f"HTTP {exc.code}: {body}") from exc
    except urllib.error.URLError as exc:
        raise BrokerError(f"Request failed: {exc.reason}") from exc

    if not payload:
        raise BrokerError(f"Empty response body (status {status}, content-type {content_type}, url {url})")
    try:
        return json.loads(payload.decode("utf-8"))
    except json.JSONDecodeError as exc:
        snippet = payload[:500].decode("utf-8", errors="replace")
        raise BrokerError(f"Non-JSON response (status {status}, url {url}): {snippet}") from exc


def _send_with_retry(
    url: str,
    method: str,
    headers: Mapping[str, str],
    data: bytes | None,
    timeout_seconds: float,
    attempts: int,
    backoff_seconds: float,
) -> Any:
    last_error: Exception | None = None
    for attempt in range(max(1, attempts)):
        try:
            return _send_request(url, method, headers, data, timeout_seconds)
        except BrokerError as exc:
            last_error = exc
            if not _should_retry(exc, attempt, attempts):
                raise
            sleep_seconds = backoff_seconds * (2**attempt)
            logger.debug("Retrying %s %s in %.2fs: %s", method, url, sleep_seconds, exc)
            time.sleep(sleep_seconds)
    if last_error is not None:
        raise last_error
    raise BrokerError("Request retry loop exited without sending.")


def _should_retry(exc: Exception, attempt: int, attempts: int) -> bool:
    if attempt >= attempts - 1:
        return False
    message = str(exc).lower()
    if "non-json response" in message:
        return False
    if "empty response body" in message:
        return True
    if "timed out" in message:
        return True
    if "temporary failure" in message:
        return True
    if "http 429" in message or "http 408" in message:
        return True
    if "http 5" in message:
        return True
    return False


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
