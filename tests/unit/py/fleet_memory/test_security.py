"""Unit tests for the log redaction helpers."""

import logging
from unittest.mock import MagicMock

from fleet_memory.errors import FleetMemoryError, StorageFailure
from fleet_memory.security import (
    REDACTED,
    SanitizedException,
    SecureLogger,
    get_logger,
    mask_url,
    sanitize,
    sanitize_dict,
)


class TestSanitize:
    """Tests for the sanitize function."""

    def test_sanitize_returns_none_for_none(self):
        assert sanitize(None) is None

    def test_sanitize_openai_api_key(self):
        msg = "Using API key sk-1234567890abcdefghijklmnopqrstuvwxyz12345"
        result = sanitize(msg)
        assert 'sk-1234567890' not in result
        assert REDACTED in result

    def test_sanitize_password_assignment(self):
        result = sanitize("rule text: password=hunter2 in config")
        assert 'hunter2' not in result

    def test_sanitize_connection_url(self):
        result = sanitize("connect to postgresql+psycopg://fleet:s3cret@db:5432/memory failed")
        assert 's3cret' not in result
        assert 'postgresql+psycopg://fleet:' in result
        assert '@db:5432/memory' in result

    def test_plain_text_untouched(self):
        assert sanitize("Use covering indexes") == "Use covering indexes"


class TestMaskUrl:

    def test_masks_password_only(self):
        assert mask_url("redis://:pw@cache:6379/0") == f"redis://:{REDACTED}@cache:6379/0"

    def test_url_without_credentials(self):
        assert mask_url("sqlite:///fleet_memory.db") == "sqlite:///fleet_memory.db"


class TestSanitizeDict:

    def test_redacts_sensitive_keys(self):
        data = {'api_key': 'abc', 'nested': {'password': 'x', 'topic': 'Index'}, 'tokens': ['t1']}
        result = sanitize_dict(data)
        assert result['api_key'] == REDACTED
        assert result['nested']['password'] == REDACTED
        assert result['nested']['topic'] == 'Index'
        assert result['tokens'] == [REDACTED]


class TestSecureLogger:

    def test_sanitizes_message_and_args(self):
        inner = MagicMock(spec=logging.Logger)
        logger = SecureLogger(inner)

        logger.error("Failed for %s: %s", "redis://:pw@cache", 3)

        inner.error.assert_called_once_with("Failed for %s: %s", f"redis://:{REDACTED}@cache", 3)

    def test_get_logger_wraps_named_logger(self):
        logger = get_logger("fleet_memory.test")
        assert logger.name == "fleet_memory.test"

    def test_real_records_are_redacted(self, caplog):
        logger = get_logger("fleet_memory.caplog")
        with caplog.at_level(logging.WARNING, logger="fleet_memory.caplog"):
            logger.warning("token=abcdef123 leaked")
        assert "abcdef123" not in caplog.text


class TestSanitizedExceptions:

    def test_message_is_sanitized(self):
        assert 'hunter2' not in str(SanitizedException("password=hunter2"))

    def test_storage_failure_carries_context(self):
        error = StorageFailure("store context", "AUTH failed for redis://:pw@cache", key="fleet:context:a:s")
        assert error.operation == "store context"
        assert error.key == "fleet:context:a:s"
        assert str(error).startswith("store context failed for fleet:context:a:s")
        assert ':pw@' not in str(error)

    def test_storage_failure_is_memory_error(self):
        assert issubclass(StorageFailure, FleetMemoryError)
