"""Configuration loading for the account management service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .database import resolve_database_path
from .external import ExternalService, create_external_service, parse_external_services


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_tokens(raw: object) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [str(item) for item in raw]
    else:
        raise ValueError("admin_tokens must be a string or a list of strings")
    return tuple(token.strip() for token in items if token.strip())


def _resolve_relative(value: str, base_path: Optional[Path]) -> Path:
    raw = Path(value).expanduser()
    if raw.is_absolute() or base_path is None:
        return raw.resolve(strict=False)
    return (base_path / raw).resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the service."""

    database_path: Path
    storage_dir: Path
    admin_tokens: Tuple[str, ...] = ()
    requires_email_confirmation: bool = False
    requires_approval: bool = False
    external_services: Tuple[ExternalService, ...] = field(default_factory=tuple)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "payserver.yaml").resolve(strict=False)


def _load_yaml(config_path: Path) -> Dict[str, object]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")
    return raw


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("PAYSERVER_CONFIG"))

    raw: Dict[str, object] = {}
    base_path: Optional[Path] = None
    if path.exists():
        raw = _load_yaml(path)
        base_path = path.parent

    env_db = env.get("PAYSERVER_DB_PATH")
    if env_db:
        database_path = resolve_database_path(env_db)
    elif raw.get("database_path"):
        database_path = _resolve_relative(str(raw["database_path"]), base_path)
    else:
        database_path = resolve_database_path(None)

    env_storage = env.get("PAYSERVER_STORAGE_DIR")
    if env_storage:
        storage_dir = _resolve_relative(env_storage, None)
    elif raw.get("storage_dir"):
        storage_dir = _resolve_relative(str(raw["storage_dir"]), base_path)
    else:
        storage_dir = database_path.parent / "files"

    tokens_value = env.get("PAYSERVER_ADMIN_TOKENS")
    admin_tokens = _split_tokens(tokens_value if tokens_value is not None else raw.get("admin_tokens"))

    policies = raw.get("policies") or {}
    if not isinstance(policies, dict):
        raise ValueError("'policies' must be a mapping")

    requires_email_confirmation = _env_flag(
        env.get("PAYSERVER_REQUIRES_EMAIL_CONFIRMATION"),
        bool(policies.get("requires_email_confirmation", False)),
    )
    requires_approval = _env_flag(
        env.get("PAYSERVER_REQUIRES_APPROVAL"),
        bool(policies.get("requires_approval", False)),
    )

    services_value = env.get("PAYSERVER_EXTERNAL_SERVICES")
    if services_value is not None:
        external_services = tuple(parse_external_services(services_value))
    else:
        services_raw = raw.get("external_services") or {}
        if not isinstance(services_raw, dict):
            raise ValueError("'external_services' must be a mapping of service name to connection string")
        external_services = tuple(
            create_external_service(str(name), str(value)) for name, value in services_raw.items()
        )

    return Settings(
        database_path=database_path,
        storage_dir=storage_dir,
        admin_tokens=admin_tokens,
        requires_email_confirmation=requires_email_confirmation,
        requires_approval=requires_approval,
        external_services=external_services,
    )


__all__ = ["Settings", "load_settings", "resolve_config_path"]
