"""LightTime configuration loading and validation.

Reads ``lighttime.toml``, resolves ``${VAR}`` references and returns a
validated :class:`LightTimeConfig`. A missing file means all defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "lighttime.toml"
CONFIG_ENV_VAR = "LIGHTTIME_CONFIG"

# Pattern matching ${VAR_NAME}, supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [lighttime.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class PollerConfig:
    window_hours: int = 24


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""


@dataclass
class MicrosoftConfig:
    client_id: str = ""
    tenant: str = "common"


@dataclass
class AppleConfig:
    account_name: str = "Apple Calendar"


@dataclass
class LightTimeConfig:
    db_path: str = "lighttime.db"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    apple: AppleConfig = field(default_factory=AppleConfig)
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _table(data: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    section = data.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return section


def _string(section: dict[str, Any], key: str, path: str, default: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string")
    return value.strip()


def resolve_config_path(explicit: str | Path | None = None) -> Path:
    """``--config`` value, else ``$LIGHTTIME_CONFIG``, else ``./lighttime.toml``."""
    if explicit is not None:
        return Path(explicit)
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env)
    return Path.cwd() / CONFIG_FILE_NAME


def parse_config(data: dict[str, Any]) -> LightTimeConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    # --- [lighttime] ---
    app_section = _table(data, "lighttime", "lighttime")
    db_path = _string(app_section, "db_path", "lighttime", "lighttime.db")
    if not db_path:
        raise ConfigError("lighttime.db_path must be a non-empty string")

    # --- [lighttime.logging] ---
    logging_section = _table(app_section, "logging", "lighttime.logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid lighttime.logging.format: {log_format!r}. Must be 'text' or 'json'."
        )
    log_root_raw = logging_section.get("log_root")
    if log_root_raw is not None and not isinstance(log_root_raw, str):
        raise ConfigError("lighttime.logging.log_root must be a string when set")

    # --- [lighttime.poller] ---
    poller_section = _table(app_section, "poller", "lighttime.poller")
    window_hours = poller_section.get("window_hours", 24)
    if isinstance(window_hours, bool) or not isinstance(window_hours, int) or window_hours <= 0:
        raise ConfigError(
            f"lighttime.poller.window_hours must be a positive integer, got {window_hours!r}"
        )

    # --- [providers.*] ---
    providers = _table(data, "providers", "providers")
    google = _table(providers, "google", "providers.google")
    microsoft = _table(providers, "microsoft", "providers.microsoft")
    apple = _table(providers, "apple", "providers.apple")

    return LightTimeConfig(
        db_path=db_path,
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            log_root=(log_root_raw.strip() or None) if log_root_raw else None,
        ),
        poller=PollerConfig(window_hours=window_hours),
        google=GoogleConfig(
            client_id=_string(google, "client_id", "providers.google", ""),
            client_secret=_string(google, "client_secret", "providers.google", ""),
        ),
        microsoft=MicrosoftConfig(
            client_id=_string(microsoft, "client_id", "providers.microsoft", ""),
            tenant=_string(microsoft, "tenant", "providers.microsoft", "common") or "common",
        ),
        apple=AppleConfig(
            account_name=_string(apple, "account_name", "providers.apple", "Apple Calendar")
            or "Apple Calendar",
        ),
    )


def load_config(path: str | Path | None = None) -> LightTimeConfig:
    """Load ``lighttime.toml`` from *path* (or the default location).

    A missing file yields the defaults, except when *path* was given
    explicitly, in which case it is an error.
    """
    toml_path = resolve_config_path(path)

    if not toml_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {toml_path}")
        return LightTimeConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    config = parse_config(data)
    config.source = toml_path
    # Relative db_path is resolved against the config file's directory.
    if not Path(config.db_path).is_absolute() and config.db_path != ":memory:":
        config.db_path = str(toml_path.parent / config.db_path)
    return config
