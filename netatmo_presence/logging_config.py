"""Application logging configuration helpers."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .sentry_config import redact_text


DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "text"

# Config keys never written to the startup summary in clear text.
SECRET_CONFIG_KEYS = {"password", "client_secret", "control_auth_token", "sentry_dsn"}


class ISO8601Formatter(logging.Formatter):
    """Formatter with local ISO-8601 timestamps and snapshot tokens masked.

    Webhook bodies and camera records are logged verbatim; both can carry the
    32-character access token that grants LAN snapshot access.
    """

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:  # noqa: N802
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc).astimezone()
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:
        return redact_text(super().format(record))


class JSONFormatter(ISO8601Formatter):
    """One JSON object per line for log aggregation."""

    def __init__(self, include_identifiers: bool = False) -> None:
        super().__init__()
        self.include_identifiers = include_identifiers

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "severity": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }
        if self.include_identifiers:
            payload["process"] = record.process
            payload["thread"] = record.threadName

        if record.exc_info:
            payload["exception"] = redact_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(ISO8601Formatter):
    def __init__(self, include_identifiers: bool = False) -> None:
        template = "%(asctime)s %(levelname)s %(name)s: %(message)s"
        if include_identifiers:
            template = (
                "%(asctime)s %(levelname)s %(name)s [pid=%(process)d %(threadName)s]: %(message)s"
            )
        super().__init__(fmt=template)


def _parse_bool(raw_value: Optional[str]) -> bool:
    if raw_value is None:
        return False
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    """Configure root logging from environment variables.

    Supported env vars:
    - NPB_LOG_LEVEL: Python logging level (default: INFO)
    - NPB_LOG_FORMAT: text|json (default: text)
    - NPB_LOG_INCLUDE_IDENTIFIERS: true/false for process/thread ids (default: false)
    """

    raw_level = (os.environ.get("NPB_LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper()
    level = getattr(logging, raw_level, logging.INFO)

    log_format = (os.environ.get("NPB_LOG_FORMAT") or DEFAULT_LOG_FORMAT).strip().lower()
    include_identifiers = _parse_bool(os.environ.get("NPB_LOG_INCLUDE_IDENTIFIERS", "false"))

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter(include_identifiers=include_identifiers)
    else:
        formatter = TextFormatter(include_identifiers=include_identifiers)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    werkzeug_logger = logging.getLogger("werkzeug")
    werkzeug_logger.handlers.clear()
    werkzeug_logger.propagate = True
    werkzeug_logger.setLevel(level)


def masked_config_summary(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``config`` with secret values replaced by a marker."""
    summary: Dict[str, Any] = {}
    for key, value in config.items():
        if key in SECRET_CONFIG_KEYS and value:
            summary[key] = "********"
        elif isinstance(value, dict):
            summary[key] = masked_config_summary(value)
        else:
            summary[key] = value
    return summary


def log_startup_info(config: Dict[str, Any], app_version: str) -> None:
    """Log a one-line startup summary, plus the full masked config at DEBUG."""
    logger = logging.getLogger(__name__)
    logger.info(
        "Bridge startup: version=%s instance_id=%s bind=%s:%s poll_interval=%ss",
        app_version,
        config.get("instance_id"),
        config.get("bind_host"),
        config.get("port"),
        config.get("poll_interval_seconds"),
    )
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Startup config: %s", masked_config_summary(config))
