"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging

import pytest

from lighttime.core.logging import (
    _NOISE_LOGGERS,
    LOG_FILE_NAME,
    CredentialRedactionFilter,
    add_otel_context,
    add_provider_context,
    configure_logging,
    get_provider_context,
    provider_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Restore the root logger between tests."""
    yield
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.handlers.clear()
    root.filters.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Provider context
# ---------------------------------------------------------------------------


class TestProviderContext:
    def test_default_is_none(self):
        assert get_provider_context() is None

    def test_set_within_block_and_reset_after(self):
        with provider_context("google-alice@example.com"):
            assert get_provider_context() == "google-alice@example.com"
        assert get_provider_context() is None

    def test_nested_blocks_restore_outer(self):
        with provider_context("outer"):
            with provider_context("inner"):
                assert get_provider_context() == "inner"
            assert get_provider_context() == "outer"

    def test_processor_injects_provider(self):
        with provider_context("apple-calendar"):
            event_dict = add_provider_context(None, "info", {"event": "x"})
        assert event_dict["provider"] == "apple-calendar"


def test_otel_processor_without_span_uses_zero_ids():
    event_dict = add_otel_context(None, "info", {"event": "x"})
    assert event_dict["trace_id"] == "0" * 32
    assert event_dict["span_id"] == "0" * 16


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class TestCredentialRedactionFilter:
    def _record(self, msg, *args):
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)

    def test_redacts_formatted_message(self):
        record = self._record("refresh failed: %s", "refresh_token=1//abcdef")
        assert CredentialRedactionFilter().filter(record) is True
        assert "1//abcdef" not in record.getMessage()
        assert record.args is None

    def test_leaves_clean_messages_untouched(self):
        record = self._record("fetched %d events", 3)
        CredentialRedactionFilter().filter(record)
        assert record.args == (3,)
        assert record.getMessage() == "fetched 3 events"


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_sets_level_and_single_handler(self):
        configure_logging(level="DEBUG")
        configure_logging(level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_quiets_noise_loggers(self):
        configure_logging(level="DEBUG")
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_json_file_output(self, tmp_path):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)
        with provider_context("google-alice@example.com"):
            logging.getLogger("lighttime.test").info("sync done: access_token=ya29.secret")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / LOG_FILE_NAME).read_text().strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["provider"] == "google-alice@example.com"
        assert entry["level"] == "info"
        assert "ya29.secret" not in entry["event"]
