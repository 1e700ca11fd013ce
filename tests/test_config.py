from __future__ import annotations

from pathlib import Path

import pytest

from payserver.config import load_settings, resolve_config_path
from payserver.external import ExternalSpark


def test_defaults_without_config_file(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "missing.yaml", environ={})

    assert settings.database_path.name == "payserver.sqlite3"
    assert settings.storage_dir == settings.database_path.parent / "files"
    assert settings.admin_tokens == ()
    assert settings.requires_email_confirmation is False
    assert settings.requires_approval is False
    assert settings.external_services == ()


def test_yaml_values_resolve_relative_to_config(tmp_path: Path) -> None:
    config_path = tmp_path / "payserver.yaml"
    config_path.write_text(
        "\n".join(
            [
                "database_path: data/accounts.sqlite3",
                "storage_dir: uploads",
                "admin_tokens: [first, ' second ']",
                "policies:",
                "  requires_email_confirmation: true",
                "  requires_approval: true",
                "external_services:",
                "  spark: server=https://spark.example.com;api-token=secret",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(config_path, environ={})

    assert settings.database_path == (tmp_path / "data" / "accounts.sqlite3").resolve()
    assert settings.storage_dir == (tmp_path / "uploads").resolve()
    assert settings.admin_tokens == ("first", "second")
    assert settings.requires_email_confirmation is True
    assert settings.requires_approval is True
    assert len(settings.external_services) == 1
    assert isinstance(settings.external_services[0], ExternalSpark)


def test_environment_overrides_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "payserver.yaml"
    config_path.write_text("admin_tokens: from-yaml\npolicies:\n  requires_approval: true\n", encoding="utf-8")
    environ = {
        "PAYSERVER_DB_PATH": str(tmp_path / "env.sqlite3"),
        "PAYSERVER_STORAGE_DIR": str(tmp_path / "env-files"),
        "PAYSERVER_ADMIN_TOKENS": "a,b",
        "PAYSERVER_REQUIRES_APPROVAL": "off",
        "PAYSERVER_EXTERNAL_SERVICES": "spark:server=https://spark.example.com",
    }

    settings = load_settings(config_path, environ=environ)

    assert settings.database_path == (tmp_path / "env.sqlite3").resolve()
    assert settings.storage_dir == (tmp_path / "env-files").resolve()
    assert settings.admin_tokens == ("a", "b")
    assert settings.requires_approval is False
    assert settings.external_services[0].connection_string.server == "https://spark.example.com"


def test_config_path_from_environment(tmp_path: Path) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text("admin_tokens: token\n", encoding="utf-8")

    settings = load_settings(environ={"PAYSERVER_CONFIG": str(config_path)})

    assert settings.admin_tokens == ("token",)
    assert resolve_config_path(str(config_path)) == config_path.resolve()


def test_invalid_yaml_shapes_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "payserver.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(config_path, environ={})

    config_path.write_text("external_services: [spark]\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(config_path, environ={})


def test_yaml_service_values_may_contain_commas(tmp_path: Path) -> None:
    config_path = tmp_path / "payserver.yaml"
    config_path.write_text(
        "external_services:\n"
        "  spark: 'server=https://spark.example.com;api-token=abc,def'\n",
        encoding="utf-8",
    )

    settings = load_settings(config_path, environ={})

    assert len(settings.external_services) == 1
    assert settings.external_services[0].connection_string.api_token == "abc,def"


def test_yaml_unknown_service_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "payserver.yaml"
    config_path.write_text("external_services:\n  lnd: server=https://lnd.example.com\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Unknown external service"):
        load_settings(config_path, environ={})
