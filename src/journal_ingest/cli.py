from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date
from pathlib import Path

from journal_ingest.channels.broker_sync import (
    BrokerCredentials,
    TradovateClient,
    TradovateConfig,
    sync_account,
)
from journal_ingest.config.app_config import AppConfig, load_app_config, resolve_env
from journal_ingest.errors import FormatNotDetected, IngestError
from journal_ingest.ingest.detect import detect_format
from journal_ingest.ingest.pipeline import import_csv_text, read_csv_records
from journal_ingest.ingest.rows import IngestOptions
from journal_ingest.logs import configure_logging
from journal_ingest.metrics.daily import recompute_day
from journal_ingest.metrics.reconcile import reconcile_pending
from journal_ingest.models import IMPORT_SOURCES, MAPPING_FIELDS, SOURCE_CSV, MappingSpec, TradingAccount
from journal_ingest.storage.ports import Stores
from journal_ingest.storage.sqlite_store import open_sqlite_stores
from journal_ingest.tokens import ensure_token, ingest_address, regenerate_token


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    app_config = load_app_config(args.config)
    configure_logging(args.log_level or app_config.app.log_level)

    if args.command == "serve":
        return _serve(app_config, args.config)
    if args.command == "detect":
        return _detect(args, app_config)

    try:
        stores = open_sqlite_stores(app_config)
        return args.handler(args, app_config, stores)
    except FormatNotDetected as exc:
        print(f"{exc}. Headers: {', '.join(exc.headers)}", file=sys.stderr)
        return 1
    except IngestError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import, reconcile and inspect journal trade data.")
    parser.add_argument("--config", type=Path, default=None, help="Path to app.toml.")
    parser.add_argument("--log-level", type=str, default=None, help="Override the configured log level.")
    commands = parser.add_subparsers(dest="command", required=True)

    imp = commands.add_parser("import", help="Import a broker CSV export.")
    imp.add_argument("csv_path", type=Path, help="CSV file to import.")
    imp.add_argument("--user", required=True, help="User id.")
    imp.add_argument("--account", required=True, help="Account id or tag.")
    imp.add_argument("--source", default=SOURCE_CSV, choices=IMPORT_SOURCES, help="Import source label.")
    imp.add_argument("--mapping-profile", default=None, help="Saved mapping profile name to use.")
    imp.add_argument("--delimiter", default=None, help="Field delimiter (sniffed when omitted).")
    imp.set_defaults(handler=_import)

    det = commands.add_parser("detect", help="Show which known export format a CSV matches.")
    det.add_argument("csv_path", type=Path)

    rec = commands.add_parser("recompute", help="Rebuild daily metrics for one account day.")
    rec.add_argument("--user", required=True)
    rec.add_argument("--account", required=True, help="Account id or tag.")
    rec.add_argument("--date", required=True, type=date.fromisoformat, help="Trade date (YYYY-MM-DD).")
    rec.set_defaults(handler=_recompute)

    recon = commands.add_parser("reconcile", help="Recompute days queued by webhook alerts.")
    recon.add_argument("--user", default=None, help="Limit to one user.")
    recon.set_defaults(handler=_reconcile)

    tok = commands.add_parser("token", help="Show or regenerate a user's ingestion token.")
    tok.add_argument("--user", required=True)
    tok.add_argument("--regenerate", action="store_true", help="Deactivate the current token and issue a new one.")
    tok.set_defaults(handler=_token)

    profiles = commands.add_parser("profiles", help="Manage saved column mappings.")
    profile_commands = profiles.add_subparsers(dest="profiles_command", required=True)
    plist = profile_commands.add_parser("list")
    plist.add_argument("--user", required=True)
    plist.set_defaults(handler=_profiles_list)
    psave = profile_commands.add_parser("save")
    psave.add_argument("--user", required=True)
    psave.add_argument("--name", required=True)
    psave.add_argument("--source", default="custom")
    psave.add_argument(
        "--map",
        action="append",
        default=[],
        metavar="FIELD=COLUMN",
        help=f"Column for a field; fields: {', '.join(MAPPING_FIELDS)}.",
    )
    psave.set_defaults(handler=_profiles_save)

    accounts = commands.add_parser("accounts", help="Manage trading accounts.")
    account_commands = accounts.add_subparsers(dest="accounts_command", required=True)
    aadd = account_commands.add_parser("add")
    aadd.add_argument("--user", required=True)
    aadd.add_argument("--tag", required=True, help="Routing tag, e.g. apex-pa.")
    aadd.add_argument("--name", default=None)
    aadd.set_defaults(handler=_accounts_add)
    alist = account_commands.add_parser("list")
    alist.add_argument("--user", required=True)
    alist.set_defaults(handler=_accounts_list)

    sync = commands.add_parser("sync", help="Pull recent Tradovate fills into an account.")
    sync.add_argument("--user", required=True)
    sync.add_argument("--account", required=True, help="Account id or tag.")
    sync.add_argument("--broker-account", required=True, help="Tradovate account id.")
    sync.add_argument("--days", type=int, default=None, help="Lookback window (default config).")
    sync.set_defaults(handler=_sync)

    commands.add_parser("serve", help="Run the HTTP API.")
    return parser


def _import(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    account = _resolve_account(stores, args.user, args.account)
    if account is None:
        return 1
    mapping = None
    if args.mapping_profile:
        profile = next(
            (item for item in stores.profiles.list_by_user(args.user) if item.name == args.mapping_profile),
            None,
        )
        if profile is None:
            print(f"No mapping profile named {args.mapping_profile!r}.", file=sys.stderr)
            return 1
        mapping = profile.mapping

    text = args.csv_path.read_text(encoding="utf-8-sig")
    result = import_csv_text(
        stores,
        args.user,
        account.account_id,
        text,
        mapping=mapping,
        source=args.source,
        delimiter=args.delimiter,
        options=IngestOptions.from_settings(app_config.ingest),
    )
    if result.detected_source:
        print(f"Detected format: {result.detected_source}")
    print(f"Inserted {result.inserted}, updated {result.updated}.")
    if result.dates_touched:
        print("Days recomputed: " + ", ".join(day.isoformat() for day in result.dates_touched))
    for message in result.errors:
        print(message, file=sys.stderr)
    return 0


def _detect(args: argparse.Namespace, app_config: AppConfig) -> int:
    headers, _ = read_csv_records(args.csv_path.read_text(encoding="utf-8-sig"))
    detected = detect_format(headers, threshold=app_config.ingest.detect_threshold)
    if detected is None:
        print("No known format; a manual mapping is required.", file=sys.stderr)
        print("Headers: " + ", ".join(headers), file=sys.stderr)
        return 1
    print(f"source: {detected.source}")
    print(json.dumps(detected.mapping.to_dict(), indent=2))
    return 0


def _recompute(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    account = _resolve_account(stores, args.user, args.account)
    if account is None:
        return 1
    metrics = recompute_day(stores, args.user, account.account_id, args.date)
    if metrics is None:
        print(f"No trades on {args.date.isoformat()}; metrics cleared.")
        return 0
    print(
        f"{metrics.trade_date.isoformat()} gross={metrics.gross_pnl} net={metrics.net_pnl} "
        f"wins={metrics.win_count} losses={metrics.loss_count} trades={metrics.stats.get('trade_count')}"
    )
    return 0


def _reconcile(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    result = reconcile_pending(stores, args.user)
    if not result.recomputed and not result.cleared:
        print("Nothing pending.")
        return 0
    for account_id, day in result.recomputed:
        print(f"recomputed {account_id} {day.isoformat()}")
    for account_id, day in result.cleared:
        print(f"cleared {account_id} {day.isoformat()}")
    return 0


def _token(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    if args.regenerate:
        token = regenerate_token(stores.tokens, args.user)
    else:
        token = ensure_token(stores.tokens, args.user)
    print(token)
    if app_config.email.inbound_mailbox:
        print(ingest_address(token, app_config.email.inbound_mailbox))
    return 0


def _profiles_list(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    profiles = stores.profiles.list_by_user(args.user)
    if not profiles:
        print("No mapping profiles.")
        return 0
    for profile in profiles:
        print(f"{profile.name} ({profile.source}): {json.dumps(profile.mapping.to_dict(), sort_keys=True)}")
    return 0


def _profiles_save(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    raw: dict[str, str] = {}
    for item in args.map:
        field_name, sep, column = item.partition("=")
        if not sep or field_name not in MAPPING_FIELDS:
            print(f"Invalid --map value {item!r}; expected FIELD=COLUMN.", file=sys.stderr)
            return 2
        raw[field_name] = column
    try:
        mapping = MappingSpec.from_dict(raw)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    profile = stores.profiles.save(args.user, args.name, args.source, mapping)
    print(f"Saved mapping profile {profile.name}.")
    return 0


def _accounts_add(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    account = stores.accounts.register(args.user, args.tag, args.name)
    print(f"{account.account_id} {account.tag} {account.name}")
    return 0


def _accounts_list(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    for account in stores.accounts.list_by_user(args.user):
        print(f"{account.account_id} {account.tag} {account.name}")
    return 0


def _sync(args: argparse.Namespace, app_config: AppConfig, stores: Stores) -> int:
    account = _resolve_account(stores, args.user, args.account)
    if account is None:
        return 1
    try:
        credentials = BrokerCredentials.from_env(resolve_env(app_config))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    client = TradovateClient(TradovateConfig.from_settings(app_config.broker))
    session = client.authenticate(credentials)
    result = sync_account(
        stores,
        client,
        session,
        args.user,
        account.account_id,
        args.broker_account,
        lookback_days=args.days if args.days is not None else app_config.broker.lookback_days,
        options=IngestOptions.from_settings(app_config.ingest),
    )
    print(f"Fetched {result.fills} fills: inserted {result.inserted}, updated {result.updated}.")
    for message in result.errors:
        print(message, file=sys.stderr)
    return 0


def _serve(app_config: AppConfig, config_path: Path | None) -> int:
    import uvicorn

    if config_path is not None:
        # The app factory reads its config path from the environment.
        os.environ["JOURNAL_INGEST_CONFIG"] = str(config_path)
    uvicorn.run(
        "journal_ingest.web.app:create_app",
        factory=True,
        host=app_config.app.host,
        port=app_config.app.port,
        reload=app_config.app.reload,
    )
    return 0


def _resolve_account(stores: Stores, user_id: str, account_ref: str) -> TradingAccount | None:
    for account in stores.accounts.list_by_user(user_id):
        if account.account_id == account_ref:
            return account
    account = stores.accounts.resolve_tag(user_id, account_ref)
    if account is None:
        print(f"Unknown account {account_ref!r} for user {user_id}.", file=sys.stderr)
    return account


if __name__ == "__main__":
    raise SystemExit(main())
