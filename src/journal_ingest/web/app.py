from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Mapping

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from journal_ingest.channels.alerts import parse_inbound_alert
from journal_ingest.channels.email import ingest_email
from journal_ingest.channels.webhook import WEBHOOK_SECRET_HEADER, ingest_webhook, verify_secret
from journal_ingest.config.app_config import AppConfig, load_app_config, resolve_env, webhook_secret
from journal_ingest.errors import (
    AccountNotFound,
    AlertValidationError,
    AuthenticationFailed,
    BrokerError,
    FormatNotDetected,
    RoutingError,
    StorageError,
)
from journal_ingest.ingest.detect import detect_format, match_profile
from journal_ingest.ingest.pipeline import import_csv_text
from journal_ingest.ingest.rows import IngestOptions
from journal_ingest.logs import configure_logging
from journal_ingest.metrics.reconcile import reconcile_pending
from journal_ingest.models import (
    IMPORT_SOURCES,
    SOURCE_CSV,
    DailyMetricsRow,
    JournalEntry,
    MappingProfile,
    MappingSpec,
    TradingAccount,
)
from journal_ingest.storage.attachments import LocalAttachmentStore
from journal_ingest.storage.ports import Stores
from journal_ingest.storage.sqlite_store import open_sqlite_stores
from journal_ingest.tokens import ensure_token, ingest_address, regenerate_token

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CsvImportRequest(_CamelModel):
    account_id: str
    csv: str
    mapping: dict[str, str] | None = None
    source: str = SOURCE_CSV
    delimiter: str | None = Field(default=None, min_length=1, max_length=1)


class DetectRequest(_CamelModel):
    headers: list[str]


class MappingProfileRequest(_CamelModel):
    name: str = Field(min_length=1)
    source: str = Field(default="custom", min_length=1)
    mapping: dict[str, str]


class AccountRequest(_CamelModel):
    tag: str = Field(min_length=1)
    name: str | None = None


def create_app(
    app_config: AppConfig | None = None,
    stores: Stores | None = None,
    env: Mapping[str, str] | None = None,
) -> FastAPI:
    app_config = app_config or load_app_config()
    configure_logging(app_config.app.log_level)
    app = FastAPI(title="Journal Ingest")
    app.state.config = app_config
    app.state.stores = stores or open_sqlite_stores(app_config)
    app.state.env = resolve_env(app_config, env)
    app.state.options = IngestOptions.from_settings(app_config.ingest)
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _stores(request: Request) -> Stores:
    return request.app.state.stores


def _options(request: Request) -> IngestOptions:
    return request.app.state.options


def _user_id(x_user_id: str | None = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header.")
    return user_id


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthenticationFailed)
    async def _auth_failed(request: Request, exc: AuthenticationFailed) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(RoutingError)
    async def _routing_failed(request: Request, exc: RoutingError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AlertValidationError)
    async def _invalid_alert(request: Request, exc: AlertValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.details})

    @app.exception_handler(FormatNotDetected)
    async def _format_missed(request: Request, exc: FormatNotDetected) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "headers": exc.headers})

    @app.exception_handler(StorageError)
    async def _storage_failed(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable."})

    @app.exception_handler(BrokerError)
    async def _broker_failed(request: Request, exc: BrokerError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/import/csv")
    async def import_csv(
        payload: CsvImportRequest,
        request: Request,
        user_id: str = Depends(_user_id),
    ) -> dict[str, Any]:
        if payload.source not in IMPORT_SOURCES:
            raise HTTPException(status_code=422, detail=f"Unknown import source {payload.source!r}.")
        mapping = _mapping_or_422(payload.mapping) if payload.mapping is not None else None
        stores = _stores(request)
        account = await asyncio.to_thread(_account_for, stores, user_id, payload.account_id)
        result = await asyncio.to_thread(
            import_csv_text,
            stores,
            user_id,
            account.account_id,
            payload.csv,
            mapping=mapping,
            source=payload.source,
            delimiter=payload.delimiter,
            options=_options(request),
        )
        return result.to_dict()

    @app.post("/api/import/detect")
    async def detect(payload: DetectRequest, request: Request, user_id: str = Depends(_user_id)) -> dict[str, Any]:
        options = _options(request)
        detected = detect_format(payload.headers, threshold=options.detect_threshold)
        if detected is not None:
            return {"detected": {"source": detected.source, "mapping": detected.mapping.to_dict()}, "profile": None}
        profiles = await asyncio.to_thread(_stores(request).profiles.list_by_user, user_id)
        profile = match_profile(payload.headers, profiles)
        return {"detected": None, "profile": _profile_payload(profile) if profile else None}

    @app.get("/api/mapping-profiles")
    async def list_profiles(request: Request, user_id: str = Depends(_user_id)) -> list[dict[str, Any]]:
        profiles = await asyncio.to_thread(_stores(request).profiles.list_by_user, user_id)
        return [_profile_payload(profile) for profile in profiles]

    @app.post("/api/mapping-profiles")
    async def save_profile(
        payload: MappingProfileRequest,
        request: Request,
        user_id: str = Depends(_user_id),
    ) -> dict[str, Any]:
        mapping = _mapping_or_422(payload.mapping)
        profile = await asyncio.to_thread(
            _stores(request).profiles.save, user_id, payload.name.strip(), payload.source.strip(), mapping
        )
        return _profile_payload(profile)

    @app.get("/api/accounts")
    async def list_accounts(request: Request, user_id: str = Depends(_user_id)) -> list[dict[str, Any]]:
        accounts = await asyncio.to_thread(_stores(request).accounts.list_by_user, user_id)
        return [_account_payload(account) for account in accounts]

    @app.post("/api/accounts")
    async def add_account(
        payload: AccountRequest,
        request: Request,
        user_id: str = Depends(_user_id),
    ) -> dict[str, Any]:
        account = await asyncio.to_thread(_stores(request).accounts.register, user_id, payload.tag, payload.name)
        return _account_payload(account)

    @app.post("/api/ingest/tradingview")
    async def tradingview_webhook(
        request: Request,
        x_webhook_secret: str | None = Header(default=None),
    ) -> dict[str, Any]:
        expected = webhook_secret(request.app.state.config, request.app.state.env)
        verify_secret(expected, x_webhook_secret)
        # The body is only read once the caller is authenticated.
        try:
            payload = await request.json()
        except ValueError as exc:
            raise AlertValidationError(
                "Invalid webhook payload",
                [{"loc": ["body"], "msg": "body is not valid JSON", "type": "json_invalid"}],
            ) from exc
        if not isinstance(payload, dict):
            raise AlertValidationError(
                "Invalid webhook payload",
                [{"loc": ["body"], "msg": "body must be a JSON object", "type": "dict_type"}],
            )
        alert = parse_inbound_alert(payload, kind="webhook")
        result = await asyncio.to_thread(
            ingest_webhook,
            _stores(request),
            alert,
            expected_secret=expected,
            provided_secret=x_webhook_secret,
            options=_options(request),
        )
        return result.to_dict()

    @app.get("/api/ingest/tradingview/config")
    async def tradingview_config(request: Request, user_id: str = Depends(_user_id)) -> dict[str, Any]:
        token = await asyncio.to_thread(ensure_token, _stores(request).tokens, user_id)
        app_config: AppConfig = request.app.state.config
        return {
            "webhookUrl": f"{app_config.app.public_base_url}/api/ingest/tradingview",
            "secretHeader": WEBHOOK_SECRET_HEADER,
            "userToken": token,
            "alertTemplate": {
                "userToken": token,
                "accountTag": "{{plot('AccountTag')}}",
                "symbol": "{{ticker}}",
                "side": "{{strategy.order.action}}",
                "qty": "{{strategy.order.contracts}}",
                "price": "{{close}}",
                "time": "{{timenow}}",
                "orderId": "{{strategy.order.id}}",
                "alertText": "{{plot('AlertText')}}",
            },
        }

    @app.post("/api/ingest/email")
    async def email_ingest(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        alert = parse_inbound_alert(payload, kind="email")
        app_config: AppConfig = request.app.state.config
        result = await asyncio.to_thread(
            ingest_email,
            _stores(request),
            alert,
            options=_options(request),
            default_account_tag=app_config.email.default_account_tag,
        )
        return {"success": True, **result.to_dict()}

    @app.post("/api/ingest/token")
    async def ingest_token(
        request: Request,
        regenerate: bool = False,
        user_id: str = Depends(_user_id),
    ) -> dict[str, Any]:
        tokens = _stores(request).tokens
        if regenerate:
            token = await asyncio.to_thread(regenerate_token, tokens, user_id)
        else:
            token = await asyncio.to_thread(ensure_token, tokens, user_id)
        mailbox = request.app.state.config.email.inbound_mailbox
        return {"token": token, "address": ingest_address(token, mailbox) if mailbox else None}

    @app.post("/api/reconcile")
    async def reconcile(request: Request, user_id: str = Depends(_user_id)) -> dict[str, Any]:
        result = await asyncio.to_thread(reconcile_pending, _stores(request), user_id)
        return result.to_dict()

    @app.get("/api/metrics/daily")
    async def daily_metrics(
        request: Request,
        account_id: str | None = Query(default=None, alias="accountId"),
        start: date | None = None,
        end: date | None = None,
        user_id: str = Depends(_user_id),
    ) -> list[dict[str, Any]]:
        rows = await asyncio.to_thread(
            _stores(request).metrics.list_for_user, user_id, account_id, start, end
        )
        return [_metrics_payload(row) for row in rows]

    @app.get("/api/journal")
    async def journal(
        request: Request,
        start: date | None = None,
        end: date | None = None,
        user_id: str = Depends(_user_id),
    ) -> list[dict[str, Any]]:
        entries = await asyncio.to_thread(_stores(request).journal.list_by_user, user_id, start, end)
        return [_journal_payload(entry) for entry in entries]

    @app.get("/api/attachments/{name}")
    async def attachment(name: str, request: Request) -> FileResponse:
        store = _stores(request).attachments
        path = store.path_for(name) if isinstance(store, LocalAttachmentStore) else None
        if path is None:
            raise HTTPException(status_code=404, detail="Attachment not found.")
        return FileResponse(path)


def _account_for(stores: Stores, user_id: str, account_ref: str) -> TradingAccount:
    for account in stores.accounts.list_by_user(user_id):
        if account.account_id == account_ref:
            return account
    account = stores.accounts.resolve_tag(user_id, account_ref)
    if account is None:
        raise AccountNotFound()
    return account


def _mapping_or_422(raw: Mapping[str, Any]) -> MappingSpec:
    try:
        return MappingSpec.from_dict(raw)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _profile_payload(profile: MappingProfile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "name": profile.name,
        "source": profile.source,
        "mapping": profile.mapping.to_dict(),
        "createdAt": profile.created_at.isoformat() if profile.created_at else None,
    }


def _account_payload(account: TradingAccount) -> dict[str, Any]:
    return {"accountId": account.account_id, "tag": account.tag, "name": account.name}


def _metrics_payload(row: DailyMetricsRow) -> dict[str, Any]:
    return {
        "accountId": row.account_id,
        "tradeDate": row.trade_date.isoformat(),
        "grossPnl": str(row.gross_pnl),
        "netPnl": str(row.net_pnl),
        "winCount": row.win_count,
        "lossCount": row.loss_count,
        "stats": dict(row.stats),
    }


def _journal_payload(entry: JournalEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "accountId": entry.account_id,
        "tradeId": entry.trade_id,
        "entryDate": entry.entry_date.isoformat(),
        "title": entry.title,
        "body": entry.body,
        "attachments": [item.to_dict() for item in entry.attachments],
    }
