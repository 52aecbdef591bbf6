"""Client configuration snapshots and config file loading."""

from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import httpx
import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from .errors import InvalidConfiguration

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "appclient" / "config.toml"

DEFAULT_BASE_URL = "https://services.cloud.mongodb.com"
DEFAULT_LINGER = 30.0
ENCRYPTION_KEY_LENGTH = 64


class ClientConfig(BaseModel):
    """Immutable snapshot of every connection-relevant setting for one app."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_id: str
    base_url: str = DEFAULT_BASE_URL
    multiplexing: bool = False
    linger: float = Field(default=DEFAULT_LINGER, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    connect_timeout: float = Field(default=120.0, gt=0)
    auth_header_name: str = "Authorization"
    custom_headers: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    encryption_key: bytes | None = Field(default=None, repr=False)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise _invalid(data.get("app_id"), exc) from exc

    @field_validator("app_id")
    @classmethod
    def _check_app_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("app_id must not be empty")
        return value

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value.strip())
        except httpx.InvalidURL as exc:
            raise ValueError(f"base_url is not a valid URL: {exc}") from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise ValueError("base_url must be an absolute http(s) URL")
        return str(url).rstrip("/")

    @field_validator("auth_header_name")
    @classmethod
    def _check_auth_header_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("auth_header_name must not be empty")
        return value

    @field_validator("custom_headers")
    @classmethod
    def _check_custom_headers(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        for name in value:
            if not name.strip():
                raise ValueError("custom header names must not be empty")
        return MappingProxyType(dict(value))

    @field_serializer("custom_headers")
    def _dump_custom_headers(self, value: Mapping[str, str]) -> dict[str, str]:
        return dict(value)

    @field_validator("encryption_key")
    @classmethod
    def _check_encryption_key(cls, value: bytes | None) -> bytes | None:
        if value is not None and len(value) != ENCRYPTION_KEY_LENGTH:
            raise ValueError(
                f"encryption_key must be {ENCRYPTION_KEY_LENGTH} bytes, got {len(value)}"
            )
        return value

    def with_base_url(self, base_url: str) -> ClientConfig:
        """Return a validated copy pointing at a different endpoint."""

        data = self.model_dump()
        data["base_url"] = base_url
        return make_config(**data)

    def changed_fields(self, other: ClientConfig) -> set[str]:
        """Names of the fields whose values differ from ``other``."""

        return {
            name
            for name in type(self).model_fields
            if getattr(self, name) != getattr(other, name)
        }

    def request_headers(self) -> dict[str, str]:
        """Headers attached to every request issued for this app."""

        return dict(self.custom_headers)


def make_config(app_id: str, **fields: Any) -> ClientConfig:
    """Build a ClientConfig, raising InvalidConfiguration on bad input."""

    return ClientConfig(app_id=app_id, **fields)


def _invalid(app_id: object, exc: ValidationError) -> InvalidConfiguration:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
        for error in exc.errors()
    )
    return InvalidConfiguration(
        f"Invalid configuration for app '{app_id}': {problems}",
        exc.errors(include_url=False, include_context=False),
    )


def load_config(path: Path | None = None) -> dict[str, ClientConfig]:
    """Load app configs keyed by app id; missing or unreadable files yield none."""

    config_path = path or CONFIG_FILE
    try:
        entries = _read_config_file(config_path)
    except FileNotFoundError:
        return {}
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(config_path), "error": str(exc)})
        return {}

    configs: dict[str, ClientConfig] = {}
    for index, entry in enumerate(entries):
        app_id = entry.pop("app_id", None)
        if not isinstance(app_id, str):
            raise InvalidConfiguration(f"Entry #{index + 1} in {config_path} is missing app_id")
        key = entry.get("encryption_key")
        if isinstance(key, str):
            try:
                entry["encryption_key"] = bytes.fromhex(key)
            except ValueError as exc:
                raise InvalidConfiguration(
                    f"Entry '{app_id}' in {config_path}: encryption_key must be hex"
                ) from exc
        configs[app_id] = make_config(app_id, **entry)
    return configs


def _read_config_file(path: Path) -> list[dict[str, Any]]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    apps = raw.get("apps")
    if not isinstance(apps, list):
        return []
    entries: list[dict[str, Any]] = []
    for app in apps:
        if not isinstance(app, dict):
            continue
        entry: dict[str, Any] = {}
        for key, value in app.items():
            if key == "custom_headers" and isinstance(value, Mapping):
                entry[key] = {str(name): str(header) for name, header in value.items()}
            else:
                entry[key] = value
        entries.append(entry)
    return entries


__all__ = [
    "CONFIG_FILE",
    "ClientConfig",
    "DEFAULT_BASE_URL",
    "DEFAULT_LINGER",
    "ENCRYPTION_KEY_LENGTH",
    "load_config",
    "make_config",
]
