"""Database configuration models and profile file helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import tomllib

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

CONFIG_FILE = Path.home() / ".config" / "dbkit" / "config.toml"

DEFAULT_PORT = 3306
LOOPBACK_HOST = "127.0.0.1"

_REQUIRED_FIELDS = (
    ("type", "Database type is required"),
    ("host", "Database host is required"),
    ("user", "Database user is required"),
    ("database", "Database name is required"),
)


class ConfigurationError(ValueError):
    """Raised when a database configuration is missing or malformed."""


def normalize_host(host: str) -> str:
    """Map ``localhost`` to the loopback literal; leave every other host alone."""

    return LOOPBACK_HOST if host == "localhost" else host


def endpoint_key(host: str, port: int, database: str) -> str:
    """Registry key for a logical database endpoint."""

    return f"{normalize_host(host)}:{port}/{database}"


class DatabaseConfig(BaseModel):
    """Options used to build a connection and its repository backend."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: str
    host: str
    port: int = DEFAULT_PORT
    user: str
    password: str = ""
    database: str
    tables: tuple[Any, ...]
    synchronize: bool = False

    @model_validator(mode="before")
    @classmethod
    def _require_fields(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        for key, message in _REQUIRED_FIELDS:
            if not data.get(key):
                raise ValueError(message)
        if data.get("tables") is None:
            raise ValueError("Database tables are required")
        return data

    @field_validator("host")
    @classmethod
    def _normalize_host(cls, value: str) -> str:
        return normalize_host(value)

    @field_validator("password", mode="before")
    @classmethod
    def _default_password(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def endpoint_key(self) -> str:
        return endpoint_key(self.host, self.port, self.database)


def parse_config(values: DatabaseConfig | Mapping[str, Any]) -> DatabaseConfig:
    """Validate raw options, surfacing any problem as :class:`ConfigurationError`."""

    if isinstance(values, DatabaseConfig):
        return values
    try:
        return DatabaseConfig(**values)
    except ValidationError as exc:
        raise ConfigurationError(_describe(exc)) from exc


def load_profiles(path: Path | None = None) -> dict[str, dict[str, object]]:
    """Return the ``[[databases]]`` entries of the profile file keyed by name."""

    target = path or CONFIG_FILE
    try:
        with target.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file '{target}' not found") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Config file '{target}' is not valid TOML: {exc}") from exc

    profiles: dict[str, dict[str, object]] = {}
    entries = raw.get("databases")
    if not isinstance(entries, list):
        return profiles
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            continue
        parsed: dict[str, object] = {}
        for key in ("type", "host", "user", "password", "database"):
            value = entry.get(key)
            if isinstance(value, str):
                parsed[key] = value
        port = entry.get("port")
        if isinstance(port, int):
            parsed["port"] = port
        synchronize = entry.get("synchronize")
        if isinstance(synchronize, (bool, str)):
            parsed["synchronize"] = synchronize
        profiles[name] = parsed
    return profiles


def load_config(name: str, *, tables: Any, path: Path | None = None) -> DatabaseConfig:
    """Build a configuration from a named profile plus the table definitions."""

    profiles = load_profiles(path)
    try:
        profile = profiles[name]
    except KeyError:
        raise ConfigurationError(f"Profile '{name}' not found.") from None
    return parse_config({**profile, "tables": tables})


def save_profile(name: str, values: Mapping[str, object], path: Path | None = None) -> None:
    """Add or replace a profile in the profile file."""

    target = path or CONFIG_FILE
    try:
        profiles = load_profiles(target)
    except ConfigurationError:
        profiles = {}
    profiles[name] = {key: value for key, value in values.items() if key not in {"name", "tables"}}

    lines: list[str] = []
    for profile_name, profile in profiles.items():
        lines.append("[[databases]]")
        lines.append(f"name = {_render(profile_name)}")
        for key in ("type", "host", "port", "user", "password", "database", "synchronize"):
            if key not in profile or profile[key] is None:
                continue
            lines.append(f"{key} = {_render(profile[key])}")
        lines.append("")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("\n".join(lines))


def _render(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    error = first.get("ctx", {}).get("error")
    if error is not None:
        return str(error)
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"Invalid value for '{location}': {first['msg']}"
    return first["msg"]


__all__ = [
    "CONFIG_FILE",
    "ConfigurationError",
    "DEFAULT_PORT",
    "DatabaseConfig",
    "LOOPBACK_HOST",
    "endpoint_key",
    "load_config",
    "load_profiles",
    "normalize_host",
    "parse_config",
    "save_profile",
]
