"""External services the server can be wired to through configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse


@dataclass(frozen=True)
class SparkConnectionString:
    """Connection details for a Spark wallet server.

    Accepts ``key=value`` pairs separated by ``;``, for example
    ``type=spark;server=https://spark.example.com;api-token=secret``.
    """

    server: str
    cookie_file: Optional[str] = None
    api_token: Optional[str] = None

    _KEYS = ("type", "server", "cookiefile", "api-token")

    @classmethod
    def parse(cls, text: str) -> "SparkConnectionString":
        if not text or not text.strip():
            raise ValueError("Spark connection string must not be empty")

        values: Dict[str, str] = {}
        for part in text.split(";"):
            part = part.strip()
            if not part:
                continue
            key, sep, value = part.partition("=")
            key = key.strip().lower()
            if not sep:
                raise ValueError(f"Invalid segment '{part}' in Spark connection string")
            if key not in cls._KEYS:
                raise ValueError(f"Unknown key '{key}' in Spark connection string")
            if key in values:
                raise ValueError(f"Duplicate key '{key}' in Spark connection string")
            values[key] = value.strip()

        kind = values.get("type", "spark").lower()
        if kind != "spark":
            raise ValueError(f"Unsupported connection string type '{kind}'")

        server = values.get("server")
        if not server:
            raise ValueError("Spark connection string requires a 'server' value")
        parsed = urlparse(server)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("Spark server must be an http(s) URL")

        return cls(
            server=server.rstrip("/"),
            cookie_file=values.get("cookiefile") or None,
            api_token=values.get("api-token") or None,
        )

    def __str__(self) -> str:
        parts = ["type=spark", f"server={self.server}"]
        if self.cookie_file:
            parts.append(f"cookiefile={self.cookie_file}")
        if self.api_token:
            parts.append(f"api-token={self.api_token}")
        return ";".join(parts)


@runtime_checkable
class AccessKeyService(Protocol):
    """A service reached through a connection string carrying its access key."""

    @property
    def connection_string(self) -> SparkConnectionString: ...


class ExternalService:
    display_name = "External service"
    service_name = ""


class ExternalSpark(ExternalService):
    display_name = "Spark"
    service_name = "spark"

    def __init__(self, connection_string: SparkConnectionString) -> None:
        if connection_string is None:
            raise TypeError("connection_string must not be None")
        self._connection_string = connection_string

    @property
    def connection_string(self) -> SparkConnectionString:
        return self._connection_string

    def __repr__(self) -> str:
        return f"ExternalSpark(server={self._connection_string.server!r})"


_FACTORIES: Dict[str, Callable[[str], ExternalService]] = {
    ExternalSpark.service_name: lambda raw: ExternalSpark(SparkConnectionString.parse(raw)),
}


def create_external_service(name: str, connection_string: str) -> ExternalService:
    factory = _FACTORIES.get(name.strip().lower())
    if factory is None:
        raise ValueError(f"Unknown external service '{name.strip()}'")
    return factory(connection_string.strip())


def parse_external_services(raw: Optional[str]) -> List[ExternalService]:
    """Parse ``name:connection-string`` entries separated by commas."""

    services: List[ExternalService] = []
    if not raw:
        return services
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, value = entry.partition(":")
        if not sep:
            raise ValueError(f"External service '{entry}' must be written as name:connection-string")
        services.append(create_external_service(name, value))
    return services


__all__ = [
    "AccessKeyService",
    "ExternalService",
    "ExternalSpark",
    "SparkConnectionString",
    "create_external_service",
    "parse_external_services",
]
