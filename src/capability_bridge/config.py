"""Configuration for the capability bridge.

Two layers, as in the rest of the stack:

- ``Settings``: process settings loaded from environment variables (with
  ``.env`` support), cached by ``get_settings()``
- ``BridgeSettings`` / ``EndpointConfig``: validated pydantic models the
  registry consumes, built with ``create_bridge_settings()``

Environment variables:
    BRIDGE_CALL_TIMEOUT_SECONDS      per-call deadline (default 30)
    BRIDGE_HTTP_TIMEOUT_SECONDS      HTTP client timeout (default 30)
    BRIDGE_MANIFEST_PATH             manifest path under each endpoint (default agent-card.json)
    BRIDGE_REFRESH_INTERVAL_SECONDS  periodic manifest refresh, 0 disables (default 0)
    BRIDGE_STRICT_UNKNOWN_FIELDS     reject undeclared argument fields (default true)
    BRIDGE_ENDPOINTS                 JSON list of endpoint objects or address strings
"""

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .endpoint import DEFAULT_MANIFEST_PATH

logger = structlog.get_logger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class EndpointConfig(BaseModel):
    """Configuration for one Specialist endpoint.

    Attributes:
        address: Base URI of the Specialist
        name: Optional display name (defaults to the manifest's name)
        manifest_path: Manifest path relative to address
        rpc_path: JSON-RPC path relative to address ("" posts to address)
        api_key: Optional bearer token
        headers: Extra HTTP headers
        timeout_seconds: Per-call timeout override
    """

    model_config = ConfigDict(populate_by_name=True)

    address: str = Field(..., min_length=1, alias="url", description="Specialist base URI")
    name: Optional[str] = Field(default=None, description="Display name")
    manifest_path: Optional[str] = Field(
        default=None, alias="manifestPath", description="Manifest path override"
    )
    rpc_path: str = Field(default="", alias="rpcPath", description="JSON-RPC path")
    api_key: Optional[str] = Field(default=None, alias="apiKey", description="Bearer token")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers")
    timeout_seconds: Optional[float] = Field(
        default=None, alias="timeout", gt=0, description="Per-call timeout in seconds"
    )


class BridgeSettings(BaseModel):
    """Registry and bridge behaviour.

    Attributes:
        endpoints: Endpoints to register at startup
        call_timeout_seconds: Default per-call deadline
        http_timeout_seconds: HTTP client timeout
        manifest_path: Default manifest path
        refresh_interval_seconds: Periodic refresh interval (0 disables)
        strict_unknown_fields: Reject argument fields not declared by the schema
    """

    endpoints: list[EndpointConfig] = Field(default_factory=list)
    call_timeout_seconds: float = Field(default=DEFAULT_CALL_TIMEOUT_SECONDS, gt=0)
    http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    manifest_path: str = Field(default=DEFAULT_MANIFEST_PATH, min_length=1)
    refresh_interval_seconds: float = Field(default=0.0, ge=0)
    strict_unknown_fields: bool = True


@dataclass(frozen=True)
class Settings:
    """Process settings loaded from environment variables."""

    call_timeout_seconds: float
    http_timeout_seconds: float
    manifest_path: str
    refresh_interval_seconds: float
    strict_unknown_fields: bool
    endpoints: list[dict[str, Any]]


def _float_env(name: str, default: float, minimum: float, inclusive: bool) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number. Check your .env file.") from exc
    if value < minimum or (not inclusive and value == minimum):
        comparison = ">=" if inclusive else ">"
        raise ValueError(f"{name} must be {comparison} {minimum:g}.")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be one of: true, false, 1, 0, yes, no.")


def _parse_endpoints(raw: str) -> list[dict[str, Any]]:
    if not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(
            "BRIDGE_ENDPOINTS must be valid JSON (e.g. "
            '[{"address": "http://localhost:8001"}]).'
        ) from exc
    if not isinstance(parsed, list):
        raise ValueError("BRIDGE_ENDPOINTS must be a JSON list.")

    endpoints: list[dict[str, Any]] = []
    for item in parsed:
        if isinstance(item, str):
            endpoints.append({"address": item})
        elif isinstance(item, dict):
            endpoints.append(item)
        else:
            raise ValueError("BRIDGE_ENDPOINTS entries must be objects or address strings.")
    return endpoints


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings instance with all configuration values

    Raises:
        ValueError: If a variable holds an invalid value
    """
    load_dotenv()

    return Settings(
        call_timeout_seconds=_float_env(
            "BRIDGE_CALL_TIMEOUT_SECONDS", DEFAULT_CALL_TIMEOUT_SECONDS, 0.0, inclusive=False
        ),
        http_timeout_seconds=_float_env(
            "BRIDGE_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS, 0.0, inclusive=False
        ),
        manifest_path=os.getenv("BRIDGE_MANIFEST_PATH", "").strip() or DEFAULT_MANIFEST_PATH,
        refresh_interval_seconds=_float_env(
            "BRIDGE_REFRESH_INTERVAL_SECONDS", 0.0, 0.0, inclusive=True
        ),
        strict_unknown_fields=_bool_env("BRIDGE_STRICT_UNKNOWN_FIELDS", True),
        endpoints=_parse_endpoints(os.getenv("BRIDGE_ENDPOINTS", "")),
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Cached Settings instance
    """
    return load_settings()


def create_bridge_settings(settings: Settings) -> BridgeSettings:
    """Create BridgeSettings from process Settings.

    Invalid endpoint entries are logged and skipped so one bad entry does not
    prevent the others from registering.
    """
    endpoints: list[EndpointConfig] = []
    for entry in settings.endpoints:
        try:
            endpoints.append(EndpointConfig.model_validate(entry))
        except ValueError as exc:
            logger.warning("bridge_endpoint_config_invalid", entry=entry, error=str(exc))

    return BridgeSettings(
        endpoints=endpoints,
        call_timeout_seconds=settings.call_timeout_seconds,
        http_timeout_seconds=settings.http_timeout_seconds,
        manifest_path=settings.manifest_path,
        refresh_interval_seconds=settings.refresh_interval_seconds,
        strict_unknown_fields=settings.strict_unknown_fields,
    )
