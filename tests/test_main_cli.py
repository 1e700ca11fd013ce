from pathlib import Path

import main
from main import _parse_args


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "0.0.0.0", "--port", "9000"])
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 9000


def test_create_user_subcommand_flags() -> None:
    args = _parse_args(["create-user", "owner@example.com", "--admin", "--confirmed"])
    assert args.command == "create-user"
    assert args.email == "owner@example.com"
    assert args.admin is True
    assert args.confirmed is True
    assert args.approved is False


def _isolate(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAYSERVER_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("PAYSERVER_DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("PAYSERVER_REQUIRES_APPROVAL", "true")


def test_create_list_and_approve(monkeypatch, tmp_path: Path, capsys) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setattr(main, "getpass", lambda prompt: "Sup3rSecurePwd!")

    assert main.main(["create-user", "owner@example.com", "--admin"]) == 0
    created = capsys.readouterr().out
    user_id = created.split()[2]
    assert "(admin)" in created

    assert main.main(["list-users"]) == 0
    listing = capsys.readouterr().out
    assert "owner@example.com" in listing
    assert "ServerAdmin" in listing
    assert "pending approval" in listing

    assert main.main(["approve", user_id]) == 0
    assert main.main(["approve", user_id]) == 1

    main.main(["list-users"])
    assert "pending approval" not in capsys.readouterr().out


def test_create_user_rejects_short_password(monkeypatch, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setattr(main, "getpass", lambda prompt: "short")

    try:
        main.main(["create-user", "owner@example.com"])
    except SystemExit as exc:
        assert "three attempts" in str(exc)
    else:  # pragma: no cover
        raise AssertionError("Expected SystemExit")
