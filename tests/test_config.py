"""Tests for configuration loading."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from capability_bridge.config import (
    BridgeSettings,
    EndpointConfig,
    create_bridge_settings,
    get_settings,
    load_settings,
)

BRIDGE_ENV_VARS = (
    "BRIDGE_CALL_TIMEOUT_SECONDS",
    "BRIDGE_HTTP_TIMEOUT_SECONDS",
    "BRIDGE_MANIFEST_PATH",
    "BRIDGE_REFRESH_INTERVAL_SECONDS",
    "BRIDGE_STRICT_UNKNOWN_FIELDS",
    "BRIDGE_ENDPOINTS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in BRIDGE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("capability_bridge.config.load_dotenv", lambda: None)
    get_settings.cache_clear()


def test_load_settings_defaults() -> None:
    settings = load_settings()

    assert settings.call_timeout_seconds == 30.0
    assert settings.http_timeout_seconds == 30.0
    assert settings.manifest_path == "agent-card.json"
    assert settings.refresh_interval_seconds == 0.0
    assert settings.strict_unknown_fields is True
    assert settings.endpoints == []


def test_load_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIDGE_CALL_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("BRIDGE_MANIFEST_PATH", ".well-known/agent.json")
    monkeypatch.setenv("BRIDGE_REFRESH_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("BRIDGE_STRICT_UNKNOWN_FIELDS", "false")
    monkeypatch.setenv(
        "BRIDGE_ENDPOINTS",
        json.dumps(["http://math.local", {"address": "http://search.local", "apiKey": "k"}]),
    )

    settings = load_settings()

    assert settings.call_timeout_seconds == 12.5
    assert settings.manifest_path == ".well-known/agent.json"
    assert settings.refresh_interval_seconds == 60.0
    assert settings.strict_unknown_fields is False
    assert settings.endpoints == [
        {"address": "http://math.local"},
        {"address": "http://search.local", "apiKey": "k"},
    ]


@pytest.mark.parametrize(
    "name,value,hint",
    [
        ("BRIDGE_CALL_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("BRIDGE_CALL_TIMEOUT_SECONDS", "0", "must be >"),
        ("BRIDGE_REFRESH_INTERVAL_SECONDS", "-1", "must be >="),
        ("BRIDGE_STRICT_UNKNOWN_FIELDS", "maybe", "must be one of"),
        ("BRIDGE_ENDPOINTS", "{not json", "valid JSON"),
        ("BRIDGE_ENDPOINTS", '{"address": "x"}', "JSON list"),
        ("BRIDGE_ENDPOINTS", "[42]", "objects or address strings"),
    ],
)
def test_invalid_values_raise_with_hint(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, hint: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError) as excinfo:
        load_settings()

    assert name in str(excinfo.value)
    assert hint in str(excinfo.value)


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()


def test_create_bridge_settings_skips_invalid_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "BRIDGE_ENDPOINTS",
        json.dumps(
            [
                {"url": "http://math.local", "name": "math", "timeout": 5},
                {"name": "no address"},
                {"address": "http://search.local", "timeout": -1},
            ]
        ),
    )
    monkeypatch.setenv("BRIDGE_HTTP_TIMEOUT_SECONDS", "4")

    bridge_settings = create_bridge_settings(load_settings())

    assert [endpoint.address for endpoint in bridge_settings.endpoints] == ["http://math.local"]
    assert bridge_settings.endpoints[0].timeout_seconds == 5
    assert bridge_settings.http_timeout_seconds == 4.0


def test_endpoint_config_accepts_field_names_and_aliases() -> None:
    by_name = EndpointConfig(address="http://math.local", rpc_path="rpc", api_key="k")
    by_alias = EndpointConfig.model_validate(
        {"url": "http://math.local", "rpcPath": "rpc", "apiKey": "k"}
    )

    assert by_name == by_alias
    assert by_name.headers == {}


def test_bridge_settings_bounds() -> None:
    with pytest.raises(ValidationError):
        BridgeSettings(call_timeout_seconds=0)
    with pytest.raises(ValidationError):
        BridgeSettings(refresh_interval_seconds=-5)
