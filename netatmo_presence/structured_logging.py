"""Correlated event logging for the hook, API and poll paths.

Request handlers take their correlation id from ``X-Correlation-ID`` (or a
fresh one per request). Background poll cycles have no request, so the
scheduler opens a ``correlation_scope`` and every event logged during the
cycle carries the same ``poll-<hex>`` id.
"""

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from flask import g, has_request_context, request


logger = logging.getLogger(__name__)

NO_CORRELATION_ID = "none"

_scope_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "netatmo_presence_correlation_id", default=None
)


def get_correlation_id() -> str:
    """Get or create the correlation ID of the current request or cycle."""
    if has_request_context():
        if not hasattr(g, "correlation_id"):
            g.correlation_id = request.headers.get("X-Correlation-ID", uuid.uuid4().hex)
        return g.correlation_id
    return _scope_correlation_id.get() or NO_CORRELATION_ID


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Bind a fresh correlation ID to work done outside a request."""
    token = _scope_correlation_id.set(f"{prefix}-{uuid.uuid4().hex[:12]}")
    try:
        yield _scope_correlation_id.get()
    finally:
        _scope_correlation_id.reset(token)


def _emit(level: int, prefix: str, payload: Dict[str, Any]) -> None:
    logger.log(level, "%s %s", prefix, json.dumps(payload, default=str, sort_keys=True))


def log_event(event_type: str, severity: str = "INFO", **context: Any) -> None:
    """Log a bridge event (e.g. "webhook_ingested", "connection_ready").

    Args:
        event_type: Event name.
        severity: Log level name; unknown names fall back to INFO.
        **context: Extra fields serialized into the event.
    """
    payload = {"event_type": event_type, "correlation_id": get_correlation_id(), **context}
    _emit(getattr(logging, severity.upper(), logging.INFO), f"event={event_type}", payload)


def log_error(
    operation: str,
    error_type: str,
    message: str,
    resource_id: Optional[str] = None,
    severity: str = "ERROR",
    **context: Any,
) -> None:
    """Log a failed operation with its category.

    Args:
        operation: What was running, e.g. "connection_check" or "webhook_ingest".
        error_type: Failure category, e.g. "missing_credentials".
        message: Human-readable message.
        resource_id: Instance or camera id the failure concerns.
        severity: Log level name; unknown names fall back to ERROR.
        **context: Extra fields serialized into the event.
    """
    payload: Dict[str, Any] = {
        "operation": operation,
        "error_type": error_type,
        "correlation_id": get_correlation_id(),
        "message": message,
    }
    if resource_id:
        payload["resource_id"] = resource_id
    payload.update(context)
    _emit(
        getattr(logging, severity.upper(), logging.ERROR),
        f"error operation={operation} type={error_type}",
        payload,
    )
