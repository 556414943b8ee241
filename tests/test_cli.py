from __future__ import annotations

from pathlib import Path

import pytest

from journal_ingest.cli import main

from builders import USER_ID, apex_csv, apex_record


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "app.toml"
    path.write_text(
        "[app]\n"
        f'db_path = "{(tmp_path / "journal.sqlite").as_posix()}"\n'
        f'env_path = "{(tmp_path / ".env").as_posix()}"\n'
        'log_level = "WARNING"\n'
        "[attachments]\n"
        f'dir = "{(tmp_path / "attachments").as_posix()}"\n'
        "[email]\n"
        'inbound_mailbox = "trades@inbound.example.com"\n',
        encoding="utf-8",
    )
    return path


def _run(config_path: Path, *args: str) -> int:
    return main(["--config", str(config_path), *args])


def test_import_then_recompute(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    csv_path = tmp_path / "apex.csv"
    csv_path.write_text(apex_csv(apex_record(), apex_record(Side="sideways")), encoding="utf-8")

    assert _run(config_path, "accounts", "add", "--user", USER_ID, "--tag", "apex-pa") == 0
    assert _run(config_path, "import", str(csv_path), "--user", USER_ID, "--account", "apex-pa") == 0
    captured = capsys.readouterr()
    assert "Detected format: apex" in captured.out
    assert "Inserted 1, updated 0." in captured.out
    assert "Row 2: Unrecognized side" in captured.err

    assert _run(config_path, "recompute", "--user", USER_ID, "--account", "apex-pa", "--date", "2024-01-05") == 0
    assert "gross=19.50 net=17.00 wins=1 losses=0 trades=1" in capsys.readouterr().out


def test_import_unknown_account(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    csv_path = tmp_path / "apex.csv"
    csv_path.write_text(apex_csv(apex_record()), encoding="utf-8")
    assert _run(config_path, "import", str(csv_path), "--user", USER_ID, "--account", "nope") == 1
    assert "Unknown account" in capsys.readouterr().err


def test_import_unknown_format(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    csv_path = tmp_path / "odd.csv"
    csv_path.write_text("when,ticker\n1,ES\n", encoding="utf-8")
    _run(config_path, "accounts", "add", "--user", USER_ID, "--tag", "apex-pa")
    assert _run(config_path, "import", str(csv_path), "--user", USER_ID, "--account", "apex-pa") == 1
    assert "Headers: when, ticker" in capsys.readouterr().err


def test_detect(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    csv_path = tmp_path / "apex.csv"
    csv_path.write_text(apex_csv(apex_record()), encoding="utf-8")
    assert _run(config_path, "detect", str(csv_path)) == 0
    assert "source: apex" in capsys.readouterr().out


def test_profiles_save_and_list(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["profiles", "save", "--user", USER_ID, "--name", "mine"]
    for item in ("symbol=T", "side=A", "qty=Q", "entry_price=P", "entry_time=W"):
        args += ["--map", item]
    assert _run(config_path, *args) == 0
    assert _run(config_path, "profiles", "list", "--user", USER_ID) == 0
    assert "mine (custom)" in capsys.readouterr().out

    assert _run(config_path, "profiles", "save", "--user", USER_ID, "--name", "bad", "--map", "symbol=T") == 2
    assert _run(config_path, "profiles", "save", "--user", USER_ID, "--name", "bad", "--map", "colour") == 2


def test_token_and_regenerate(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(config_path, "token", "--user", USER_ID) == 0
    token, address = capsys.readouterr().out.split()
    assert address == f"trades+{token}@inbound.example.com"

    assert _run(config_path, "token", "--user", USER_ID, "--regenerate") == 0
    assert capsys.readouterr().out.split()[0] != token


def test_reconcile_with_nothing_pending(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(config_path, "reconcile") == 0
    assert "Nothing pending." in capsys.readouterr().out


def test_sync_requires_credentials(
    config_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    for name in ("TRADOVATE_USERNAME", "TRADOVATE_PASSWORD", "TRADOVATE_CID", "TRADOVATE_SEC"):
        monkeypatch.delenv(name, raising=False)
    _run(config_path, "accounts", "add", "--user", USER_ID, "--tag", "apex-pa")
    code = _run(config_path, "sync", "--user", USER_ID, "--account", "apex-pa", "--broker-account", "77")
    assert code == 2
    assert "TRADOVATE_USERNAME" in capsys.readouterr().err
