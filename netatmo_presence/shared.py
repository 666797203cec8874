import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from .connection import STATUS_LABELS, STATUS_READY
from .version_info import get_app_version_info


def extract_bearer_token(auth_header: str) -> Optional[str]:
    """Extract bearer token from Authorization header.

    Parses standard HTTP Authorization header (format: "Bearer <token>").
    Case-insensitive scheme matching per RFC 7235.

    Args:
        auth_header: Raw Authorization header value.

    Returns:
        Bearer token string, or None if header is missing/malformed or token empty.
    """
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def register_control_api_auth(app: Flask, auth_token: str) -> None:
    """Register a before_request guard requiring a bearer token on ``/api/*``.

    Hook routes are never guarded: the cloud relay cannot send credentials.
    If ``auth_token`` is empty, protection is disabled (no-op).
    """

    @app.before_request
    def _control_api_auth_guard():
        if not auth_token:
            return None
        if not request.path.startswith("/api/"):
            return None

        token = extract_bearer_token(request.headers.get("Authorization", ""))
        if token is None or token != auth_token:
            return (
                jsonify(
                    {
                        "error": {
                            "code": "UNAUTHORIZED",
                            "message": "authentication required",
                            "details": {},
                            "timestamp": datetime.now(timezone.utc).isoformat(),
                        }
                    }
                ),
                401,
            )
        return None


def _status_fields(state: Dict[str, Any]) -> Dict[str, Any]:
    status = state["settings"].get_status()
    code = status.get("code")
    return {
        "status_code": code,
        "status": STATUS_LABELS.get(code, "unconfigured") if code else "unconfigured",
        "last_error": status.get("last_error"),
        "status_updated_at": status.get("updated_at"),
    }


def build_status_payload(app: Flask, state: Dict[str, Any]) -> Dict[str, Any]:
    """Build the ``/api/status`` payload from the shared app state.

    Args:
        app: Flask application (for uptime).
        state: Shared app state dict with keys ``instance_id``, ``settings``,
            ``state_machine``, ``controller``, ``webhook_handler`` and
            ``hook_registry``.
    """
    state_machine = state["state_machine"]
    controller = state["controller"]
    webhook_payload = state["webhook_handler"].payload
    last_outcome = controller.last_outcome

    return {
        "instance_id": state["instance_id"],
        "hook_path": state_machine.hook_path,
        "hook_registered": state["hook_registry"].resolve(state_machine.hook_path) is not None,
        "connection_state": state_machine.state.value,
        **_status_fields(state),
        "last_cycle_at": controller.last_cycle_at,
        "last_outcome": last_outcome.to_dict() if last_outcome else None,
        "camera_count": len(controller.cameras),
        "webhook_payload_entries": len(webhook_payload.entries) if webhook_payload else 0,
        "uptime_seconds": round(
            time.monotonic() - getattr(app, "start_time_monotonic", time.monotonic()), 2
        ),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def register_shared_routes(app: Flask, state: Dict[str, Any]) -> None:
    """Register health, readiness, status and version endpoints.

    - GET /health: App is running (always 200)
    - GET /ready: 200 when the last diagnostic status is ready, else 503
    - GET /api/status: Instance, hook and last-cycle details
    - GET /version and /api/version: Application version metadata
    """

    @app.route("/health")
    def health():
        return jsonify(
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "instance_id": state["instance_id"],
            }
        ), 200

    @app.route("/ready")
    def ready():
        fields = _status_fields(state)
        if fields["status_code"] == STATUS_READY:
            return jsonify({"status": "ready", "instance_id": state["instance_id"]}), 200
        return jsonify(
            {
                "status": "not_ready",
                "reason": fields["status"],
                "status_code": fields["status_code"],
                "last_error": fields["last_error"],
                "instance_id": state["instance_id"],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ), 503

    @app.route("/version")
    @app.route("/api/version")
    def version():
        version_info = get_app_version_info()
        return jsonify(
            {
                "status": "ok",
                "version": version_info["version"],
                "source": version_info["source"],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ), 200

    @app.route("/api/status")
    def api_status():
        return jsonify(build_status_payload(app, state)), 200
