"""Tests for logging setup and secret sanitization."""

import logging
from unittest.mock import MagicMock

from gatebot.logging_config import SUBSYSTEMS, sanitize_secrets, setup_logging


class TestSanitize:

    def test_authorization_header_scrubbed(self):
        event = {"event": "api_call", "headers": "Authorization: QQBot abcdefghijklmnop123456"}
        result = sanitize_secrets(None, "info", event)
        assert "abcdefghijklmnop123456" not in result["headers"]
        assert "***REDACTED***" in result["headers"]

    def test_secret_keys_fully_redacted(self):
        event = {"event": "x", "token": "short", "client_secret": "s3cret", "plugin": "weather"}
        result = sanitize_secrets(None, "info", event)
        assert result["token"] == "***REDACTED***"
        assert result["client_secret"] == "***REDACTED***"
        assert result["plugin"] == "weather"

    def test_serialized_payload_scrubbed(self):
        event = {"event": "x", "body": '{"access_token": "tok-123", "expires_in": "7200"}'}
        result = sanitize_secrets(None, "info", event)
        assert "tok-123" not in result["body"]
        assert '"expires_in": "7200"' in result["body"]

    def test_nested_values(self):
        event = {
            "event": "x",
            "items": ["QQBot abcdefghijklmnopqrstu", "plain"],
            "extra": {"auth": "Bearer abcdefghijklmnopqrstuvwxyz"},
        }
        result = sanitize_secrets(None, "info", event)
        assert result["items"][1] == "plain"
        assert "abcdefghijklmnopqrstu" not in result["items"][0]
        assert "abcdefghijklmnopqrstuvwxyz" not in result["extra"]["auth"]

    def test_empty_secret_left_alone(self):
        result = sanitize_secrets(None, "info", {"event": "x", "token": None})
        assert result["token"] is None


class TestSetup:

    def test_subsystem_files_created(self, tmp_path):
        config = MagicMock()
        config.log_dir = tmp_path / "logs"
        config.logging_level = "info"
        config.logging_subsystem_levels = {"gateway": "DEBUG"}
        config.logging_max_file_size_mb = 1
        config.logging_backup_count = 2

        setup_logging(config)

        assert logging.getLogger("gatebot.gateway").level == logging.DEBUG
        assert logging.getLogger("gatebot.plugins").level == logging.INFO
        for subsystem in SUBSYSTEMS:
            handlers = logging.getLogger(f"gatebot.{subsystem}").handlers
            assert len(handlers) == 1
            assert handlers[0].baseFilename.endswith(f"{subsystem}.log")
        assert (tmp_path / "logs" / "gatebot.log").exists()

        for name in ("gatebot", *(f"gatebot.{s}" for s in SUBSYSTEMS)):
            logger = logging.getLogger(name)
            for handler in logger.handlers:
                handler.close()
            logger.handlers.clear()
