"""Courier configuration loading and validation.

Reads courier.toml from a config directory, parses all sections, and returns
a validated CourierConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "courier.toml"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Defaults for known providers; any field may be overridden in [providers.<name>].
_PROVIDER_DEFAULTS: dict[str, dict[str, Any]] = {
    "gmail": {
        "auth_url": GOOGLE_AUTH_URL,
        "token_url": GOOGLE_TOKEN_URL,
        "scopes": ["https://www.googleapis.com/auth/gmail.readonly"],
        "resources": ["INBOX"],
    },
    "google_calendar": {
        "auth_url": GOOGLE_AUTH_URL,
        "token_url": GOOGLE_TOKEN_URL,
        "scopes": ["https://www.googleapis.com/auth/calendar.readonly"],
        "resources": ["primary"],
    },
}

# Pattern matching ${VAR_NAME}; alphanumeric and underscore names only.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when courier configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [courier.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class EncryptionConfig:
    """Master secrets from [courier.encryption].

    ``token_key`` seals OAuth token material; ``pii_key`` seals personal
    data; ``key`` covers everything else and signs OAuth state.  All three
    are required and must differ.
    """

    key: str
    token_key: str
    pii_key: str

    def __repr__(self) -> str:
        return "EncryptionConfig(key=<redacted>, token_key=<redacted>, pii_key=<redacted>)"


@dataclass
class SyncConfig:
    """Sync engine tuning from [courier.sync] section."""

    token_refresh_buffer_minutes: int = 5
    run_timeout_seconds: int = 300
    full_sync_window_days: int = 30
    page_size: int = 100
    poll_interval_minutes: int = 15
    max_sync_age_minutes: int = 15
    drain_timeout_seconds: int = 30


@dataclass
class ProviderConfig:
    """OAuth client settings for one provider from [providers.<name>]."""

    name: str
    client_id: str
    client_secret: str
    redirect_uri: str
    auth_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(name={self.name!r}, client_id={self.client_id!r}, "
            f"client_secret=<redacted>, redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class CourierConfig:
    """Parsed and validated courier configuration."""

    name: str
    encryption: EncryptionConfig
    db_name: str = "courier"
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${NAME}`` references anywhere in a parsed TOML tree.

    Raises :class:`ConfigError` naming every unset variable at once.
    """
    missing: list[str] = []

    def lookup(match: re.Match) -> str:
        found = os.environ.get(match.group(1))
        if found is None:
            missing.append(match.group(1))
            return match.group(0)
        return found

    def walk(node: Any) -> Any:
        if isinstance(node, dict):
            return {key: walk(item) for key, item in node.items()}
        if isinstance(node, list):
            return [walk(item) for item in node]
        if isinstance(node, str):
            return _ENV_VAR_PATTERN.sub(lookup, node)
        return node

    resolved = walk(value)
    if missing:
        # Only names; the surrounding value may hold a secret.
        raise ConfigError(
            "Unresolved environment variable(s) in config value: "
            + ", ".join(dict.fromkeys(missing))
        )
    return resolved


def _positive_int(section: dict[str, Any], key: str, default: int, label: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_empty_str(section: dict[str, Any], key: str, label: str) -> str:
    raw = section.get(key)
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"Missing required field: {label}.{key}")
    return raw.strip()


def _string_list(section: dict[str, Any], key: str, default: list[str], label: str) -> list[str]:
    raw = section.get(key, default)
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigError(f"{label}.{key} must be a list of strings")
    return [item.strip() for item in raw if item.strip()]


def _parse_encryption(courier_section: dict[str, Any]) -> EncryptionConfig:
    section = courier_section.get("encryption")
    if not isinstance(section, dict):
        raise ConfigError("Missing [courier.encryption] section in config")
    label = "courier.encryption"
    keys = {name: _non_empty_str(section, name, label) for name in ("key", "token_key", "pii_key")}
    if len(set(keys.values())) != len(keys):
        # Never echo the secrets themselves.
        raise ConfigError(f"{label}.key, token_key and pii_key must be three distinct secrets")
    return EncryptionConfig(**keys)


def _parse_sync(courier_section: dict[str, Any]) -> SyncConfig:
    section = courier_section.get("sync", {})
    label = "courier.sync"
    return SyncConfig(
        token_refresh_buffer_minutes=_positive_int(
            section, "token_refresh_buffer_minutes", 5, label
        ),
        run_timeout_seconds=_positive_int(section, "run_timeout_seconds", 300, label),
        full_sync_window_days=_positive_int(section, "full_sync_window_days", 30, label),
        page_size=_positive_int(section, "page_size", 100, label),
        poll_interval_minutes=_positive_int(section, "poll_interval_minutes", 15, label),
        max_sync_age_minutes=_positive_int(section, "max_sync_age_minutes", 15, label),
        drain_timeout_seconds=_positive_int(section, "drain_timeout_seconds", 30, label),
    )


def _parse_db(courier_section: dict[str, Any]) -> tuple[str, str | None]:
    section = courier_section.get("db", {})
    db_name = str(section.get("name", "courier")).strip()
    if not db_name:
        raise ConfigError("courier.db.name must be a non-empty string")
    schema = section.get("schema")
    if schema is None:
        return db_name, None
    if not isinstance(schema, str) or not _DB_SCHEMA_PATTERN.fullmatch(schema.strip()):
        raise ConfigError(f"Invalid courier.db.schema: {schema!r}. Expected an SQL identifier.")
    return db_name, schema.strip()


def _parse_logging(courier_section: dict[str, Any]) -> LoggingConfig:
    section = courier_section.get("logging", {})
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid courier.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=section.get("log_root"),
    )


def parse_provider_config(name: str, raw: dict[str, Any]) -> ProviderConfig:
    """Build a :class:`ProviderConfig` from a ``[providers.<name>]`` table.

    Known providers (``gmail``, ``google_calendar``) get Google endpoint,
    scope and resource defaults; unknown providers must spell out their
    ``auth_url`` and ``token_url``.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"[providers.{name}] must be a table")
    label = f"providers.{name}"
    merged = {**_PROVIDER_DEFAULTS.get(name, {}), **raw}
    return ProviderConfig(
        name=name,
        client_id=_non_empty_str(merged, "client_id", label),
        client_secret=_non_empty_str(merged, "client_secret", label),
        redirect_uri=_non_empty_str(merged, "redirect_uri", label),
        auth_url=_non_empty_str(merged, "auth_url", label),
        token_url=_non_empty_str(merged, "token_url", label),
        scopes=_string_list(merged, "scopes", [], label),
        resources=_string_list(merged, "resources", [], label),
    )


def load_config(config_dir: Path) -> CourierConfig:
    """Load and validate a courier.toml from *config_dir*.

    Parameters
    ----------
    config_dir:
        Directory containing ``courier.toml``.

    Returns
    -------
    CourierConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    courier_section = data.get("courier")
    if not isinstance(courier_section, dict):
        raise ConfigError("Missing [courier] section in config")

    name = courier_section.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Missing required field: courier.name")

    db_name, db_schema = _parse_db(courier_section)

    providers: dict[str, ProviderConfig] = {}
    for provider_name, provider_cfg in data.get("providers", {}).items():
        providers[provider_name] = parse_provider_config(provider_name, provider_cfg)

    return CourierConfig(
        name=name.strip(),
        encryption=_parse_encryption(courier_section),
        db_name=db_name,
        db_schema=db_schema,
        logging=_parse_logging(courier_section),
        sync=_parse_sync(courier_section),
        providers=providers,
    )
