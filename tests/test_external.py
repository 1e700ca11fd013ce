from __future__ import annotations

import dataclasses

import pytest

from payserver.external import (
    AccessKeyService,
    ExternalSpark,
    SparkConnectionString,
    parse_external_services,
)


def test_parse_spark_connection_string() -> None:
    value = SparkConnectionString.parse(
        "type=spark;server=https://spark.example.com/;api-token=secret"
    )

    assert value.server == "https://spark.example.com"
    assert value.api_token == "secret"
    assert value.cookie_file is None
    assert str(value) == "type=spark;server=https://spark.example.com;api-token=secret"


def test_parse_spark_connection_string_with_cookie_file() -> None:
    value = SparkConnectionString.parse("server=http://127.0.0.1:9737;cookiefile=/data/spark/.cookie")
    assert value.cookie_file == "/data/spark/.cookie"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "server",
        "type=lnd;server=https://spark.example.com",
        "api-token=secret",
        "server=ftp://spark.example.com",
        "server=https://a;server=https://b",
        "server=https://spark.example.com;color=blue",
    ],
)
def test_parse_spark_connection_string_rejects_invalid(raw: str) -> None:
    with pytest.raises(ValueError):
        SparkConnectionString.parse(raw)


def test_external_spark_exposes_connection_string() -> None:
    connection_string = SparkConnectionString.parse("server=https://spark.example.com")
    service = ExternalSpark(connection_string)

    assert service.connection_string is connection_string
    assert isinstance(service, AccessKeyService)
    with pytest.raises(AttributeError):
        service.connection_string = SparkConnectionString.parse("server=https://other.example.com")
    with pytest.raises(dataclasses.FrozenInstanceError):
        connection_string.server = "https://other.example.com"


def test_external_spark_requires_connection_string() -> None:
    with pytest.raises(TypeError):
        ExternalSpark(None)


def test_parse_external_services() -> None:
    services = parse_external_services(
        "spark:server=https://spark.example.com;api-token=secret, "
    )

    assert len(services) == 1
    assert isinstance(services[0], ExternalSpark)
    assert services[0].connection_string.api_token == "secret"
    assert parse_external_services(None) == []


def test_parse_external_services_rejects_unknown_entries() -> None:
    with pytest.raises(ValueError):
        parse_external_services("rtl:server=https://rtl.example.com")
    with pytest.raises(ValueError):
        parse_external_services("spark")
