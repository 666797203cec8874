import json
import logging

import pytest

from netatmo_presence.logging_config import (
    JSONFormatter,
    TextFormatter,
    configure_logging,
    log_startup_info,
    masked_config_summary,
)


@pytest.fixture
def restore_root_logger():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield root_logger
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


def _record(message="hello", level=logging.INFO):
    return logging.LogRecord("netatmo_presence.test", level, __file__, 1, message, (), None)


def test_json_formatter_emits_structured_payload():
    payload = json.loads(JSONFormatter(include_identifiers=True).format(_record()))

    assert payload["severity"] == "INFO"
    assert payload["logger"] == "netatmo_presence.test"
    assert payload["message"] == "hello"
    assert "process" in payload
    assert "thread" in payload
    assert "T" in payload["timestamp"]


def test_text_formatter_includes_level_and_name():
    line = TextFormatter().format(_record("poll_cycle_completed: cameras=1"))
    assert "INFO netatmo_presence.test: poll_cycle_completed: cameras=1" in line


def test_configure_logging_reads_env(monkeypatch, restore_root_logger):
    monkeypatch.setenv("NPB_LOG_LEVEL", "debug")
    monkeypatch.setenv("NPB_LOG_FORMAT", "json")

    configure_logging()

    assert restore_root_logger.level == logging.DEBUG
    assert len(restore_root_logger.handlers) == 1
    assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)


def test_configure_logging_falls_back_on_unknown_values(monkeypatch, restore_root_logger):
    monkeypatch.setenv("NPB_LOG_LEVEL", "chatty")
    monkeypatch.setenv("NPB_LOG_FORMAT", "xml")

    configure_logging()

    assert restore_root_logger.level == logging.INFO
    assert isinstance(restore_root_logger.handlers[0].formatter, TextFormatter)


def test_masked_config_summary_hides_secrets():
    summary = masked_config_summary(
        {
            "control_auth_token": "token",
            "sentry_dsn": None,
            "property_defaults": {"password": "hunter2", "email": "owner@example.com"},
        }
    )
    assert summary["control_auth_token"] == "********"
    assert summary["sentry_dsn"] is None
    assert summary["property_defaults"]["password"] == "********"
    assert summary["property_defaults"]["email"] == "owner@example.com"


def test_log_startup_info_never_logs_secrets(caplog, full_config):
    full_config["property_defaults"]["password"] = "hunter2"
    with caplog.at_level(logging.DEBUG, logger="netatmo_presence.logging_config"):
        log_startup_info(full_config, "1.0.0")

    assert "version=1.0.0" in caplog.text
    assert "instance_id=test-instance" in caplog.text
    assert "hunter2" not in caplog.text


def test_formatters_mask_snapshot_tokens():
    token = "0123456789abcdef0123456789abcdef"
    message = f"webhook_received: body={{\"snapshot_url\": \"https://vpn/{token}/live/x.jpg\"}}"

    text_line = TextFormatter().format(_record(message))
    json_line = JSONFormatter().format(_record(message))

    assert token not in text_line
    assert "[REDACTED]" in text_line
    assert token not in json.loads(json_line)["message"]
