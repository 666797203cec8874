"""Sentry error tracking initialization and configuration.

Provides optional error tracking when NPB_SENTRY_DSN is set. Events are
filtered so that cloud credentials, bearer tokens and the access tokens
embedded in camera snapshot URLs never leave the host.
"""

import logging
import re
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from .version_info import read_app_version


REDACTED = "[REDACTED]"

SECRET_ENV_KEYS = {
    "NPB_PASSWORD",
    "NPB_CLIENT_SECRET",
    "NPB_CONTROL_AUTH_TOKEN",
    "NPB_SENTRY_DSN",
}

SECRET_FIELD_NAMES = {"password", "client_secret", "access_token", "refresh_token"}

# 32-char access token segment in camera snapshot URLs.
_SNAPSHOT_TOKEN_PATTERN = re.compile(r"(?<=/)[A-Za-z0-9]{32}(?=/)")


def redact_text(value: str) -> str:
    """Replace snapshot URL access tokens inside ``value``."""
    return _SNAPSHOT_TOKEN_PATTERN.sub(REDACTED, value)


def _redact_mapping(mapping: Dict[str, Any]) -> None:
    for key in list(mapping):
        value = mapping[key]
        if key.lower() in SECRET_FIELD_NAMES:
            mapping[key] = REDACTED
        elif isinstance(value, dict):
            _redact_mapping(value)
        elif isinstance(value, str):
            mapping[key] = redact_text(value)


def _redact_auth_data(event: Dict[str, Any], _hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Redact sensitive authentication data from Sentry events.

    Redacts:
    - Authorization header values (bearer tokens)
    - password / client_secret / token fields in request bodies and extras
    - access tokens embedded in snapshot URLs
    - secret NPB_* environment variable values

    Preserves:
    - Request paths, hook names, camera ids and status codes
    """
    request_data = event.get("request")
    if isinstance(request_data, dict):
        headers = request_data.get("headers")
        if isinstance(headers, dict):
            for header in list(headers):
                if header.lower() == "authorization":
                    headers[header] = REDACTED
        if isinstance(request_data.get("url"), str):
            request_data["url"] = redact_text(request_data["url"])
        if isinstance(request_data.get("data"), dict):
            _redact_mapping(request_data["data"])
        elif isinstance(request_data.get("data"), str):
            request_data["data"] = redact_text(request_data["data"])

    if isinstance(event.get("extra"), dict):
        _redact_mapping(event["extra"])

    env = event.get("contexts", {}).get("env")
    if isinstance(env, dict):
        for key in SECRET_ENV_KEYS:
            if key in env:
                env[key] = REDACTED

    logentry = event.get("logentry")
    if isinstance(logentry, dict) and isinstance(logentry.get("message"), str):
        logentry["message"] = redact_text(logentry["message"])

    return event


def _breadcrumb_filter(crumb: Dict[str, Any], _hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health polling breadcrumbs and scrub snapshot tokens from the rest."""
    if crumb.get("category") == "http.client":
        url = crumb.get("data", {}).get("url", "")
        if any(endpoint in url for endpoint in ["/health", "/ready"]):
            return None
    if isinstance(crumb.get("message"), str):
        crumb["message"] = redact_text(crumb["message"])
    return crumb


def _traces_sampler(sampling_context: Dict[str, Any]) -> float:
    """Determine traces sample rate per transaction.

    Sample rates:
    - /health, /ready           → 0.0 (polling noise)
    - PATCH / POST / DELETE     → 1.0 (webhook pushes, settings changes, actions)
    - Everything else           → 0.1
    """
    wsgi_environ = sampling_context.get("wsgi_environ", {})
    path = wsgi_environ.get("PATH_INFO", "")
    method = wsgi_environ.get("REQUEST_METHOD", "GET")

    if path in {"/health", "/ready"}:
        return 0.0

    if method in {"PATCH", "POST", "DELETE"}:
        return 1.0

    return 0.1


def init_sentry(sentry_dsn: Optional[str], instance_id: str = "") -> None:
    """Initialize Sentry SDK for error tracking.

    Only initializes if a DSN is provided. Configures Flask integration,
    explicit logging integration, per-route trace sampling, release tagging
    and redaction hooks.

    Args:
        sentry_dsn: Sentry DSN URL (from NPB_SENTRY_DSN). If None or empty,
            Sentry is disabled.
        instance_id: Bridge instance id attached as a tag to every event.
    """
    if not sentry_dsn:
        return

    sentry_sdk.init(  # type: ignore[call-arg]
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(
                transaction_style="endpoint",
            ),
            # WARNING+ lines become breadcrumbs, ERROR+ lines become events.
            LoggingIntegration(
                level=logging.WARNING,
                event_level=logging.ERROR,
            ),
        ],
        traces_sampler=_traces_sampler,
        release=read_app_version(),
        debug=False,
        before_send=_redact_auth_data,  # type: ignore[arg-type]
        before_breadcrumb=_breadcrumb_filter,
        send_default_pii=False,
        environment="edge",
    )

    if instance_id:
        sentry_sdk.set_tag("instance_id", instance_id)
