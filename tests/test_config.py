"""Tests for lighttime.toml loading, env var resolution and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from lighttime.config import (
    CONFIG_ENV_VAR,
    ConfigError,
    LightTimeConfig,
    load_config,
    parse_config,
    resolve_config_path,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "lighttime.toml"
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# Env var resolution
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_substitutes_nested_values(self, monkeypatch):
        monkeypatch.setenv("LT_CLIENT", "abc123")
        data = {"a": {"b": ["${LT_CLIENT}", 5]}, "c": "id-${LT_CLIENT}"}
        assert resolve_env_vars(data) == {"a": {"b": ["abc123", 5]}, "c": "id-abc123"}

    def test_missing_vars_reported_together(self, monkeypatch):
        monkeypatch.delenv("LT_MISSING_ONE", raising=False)
        monkeypatch.delenv("LT_MISSING_TWO", raising=False)
        with pytest.raises(ConfigError, match="LT_MISSING_ONE, LT_MISSING_TWO"):
            resolve_env_vars("${LT_MISSING_ONE}/${LT_MISSING_TWO}")


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


class TestResolveConfigPath:
    def test_explicit_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/elsewhere.toml")
        assert resolve_config_path(tmp_path / "x.toml") == tmp_path / "x.toml"

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/etc/lighttime.toml")
        assert resolve_config_path() == Path("/etc/lighttime.toml")

    def test_default_is_cwd(self, monkeypatch, tmp_path):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_config_path() == tmp_path / "lighttime.toml"


# ---------------------------------------------------------------------------
# parse_config()
# ---------------------------------------------------------------------------


class TestParseConfig:
    def test_empty_document_gives_defaults(self):
        config = parse_config({})
        assert config.db_path == "lighttime.db"
        assert config.logging.level == "INFO"
        assert config.poller.window_hours == 24
        assert config.microsoft.tenant == "common"
        assert config.apple.account_name == "Apple Calendar"

    def test_full_document(self, monkeypatch):
        monkeypatch.setenv("LT_GOOGLE_SECRET", "shh")
        config = parse_config(
            {
                "lighttime": {
                    "db_path": "/var/lib/lighttime.db",
                    "logging": {"level": "debug", "format": "JSON", "log_root": "/tmp/logs"},
                    "poller": {"window_hours": 48},
                },
                "providers": {
                    "google": {"client_id": " g-id ", "client_secret": "${LT_GOOGLE_SECRET}"},
                    "microsoft": {"client_id": "m-id", "tenant": "contoso.onmicrosoft.com"},
                    "apple": {"account_name": "Work Mac"},
                },
            }
        )
        assert config.db_path == "/var/lib/lighttime.db"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "/tmp/logs"
        assert config.poller.window_hours == 48
        assert config.google.client_id == "g-id"
        assert config.google.client_secret == "shh"
        assert config.microsoft.tenant == "contoso.onmicrosoft.com"
        assert config.apple.account_name == "Work Mac"

    def test_invalid_log_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config({"lighttime": {"logging": {"format": "xml"}}})

    @pytest.mark.parametrize("value", [0, -3, "24", True])
    def test_invalid_window_hours(self, value):
        with pytest.raises(ConfigError, match="window_hours"):
            parse_config({"lighttime": {"poller": {"window_hours": value}}})

    def test_section_must_be_table(self):
        with pytest.raises(ConfigError, match=r"\[providers\]"):
            parse_config({"providers": "google"})

    def test_client_id_must_be_string(self):
        with pytest.raises(ConfigError, match="providers.google.client_id"):
            parse_config({"providers": {"google": {"client_id": 42}}})


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_missing_default_file_gives_defaults(self, monkeypatch, tmp_path):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config == LightTimeConfig()

    def test_missing_explicit_file_is_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        path = _write(tmp_path, "[lighttime\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_relative_db_path_resolved_against_file(self, tmp_path):
        path = _write(tmp_path, '[lighttime]\ndb_path = "data/lt.db"\n')
        config = load_config(path)
        assert config.db_path == str(tmp_path / "data" / "lt.db")
        assert config.source == path

    def test_absolute_db_path_kept(self, tmp_path):
        target = tmp_path / "abs.db"
        path = _write(tmp_path, f'[lighttime]\ndb_path = "{target}"\n')
        assert load_config(path).db_path == str(target)
