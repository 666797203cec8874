import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from .callback_url_validation import is_well_formed_http_url
from .instance_settings import SettingsValidationError
from .object_tree import NodeRepositoryError


logger = logging.getLogger(__name__)


def _error_response(
    code: str,
    message: str,
    status_code: int,
    node_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Build standardized error response JSON.

    Args:
        code: Error code (e.g., 'VALIDATION_ERROR').
        message: Error message.
        status_code: HTTP status code.
        node_id: Optional object node id for context.
        details: Optional error details dict.

    Returns:
        Tuple of (jsonify response, status_code).
    """
    payload: Dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }
    if node_id is not None:
        payload["error"]["node_id"] = node_id
    return jsonify(payload), status_code


def _is_tree_corruption_error(exc: NodeRepositoryError) -> bool:
    return "object tree file is corrupted and cannot be parsed" in str(exc)


def _tree_corruption_response(exc: NodeRepositoryError):
    return _error_response(
        "OBJECT_TREE_CORRUPTED",
        str(exc),
        500,
        details={"reason": "invalid object tree json"},
    )


def _run_update(state: Dict[str, Any]):
    outcome = state["scheduler"].trigger_once()
    if outcome is None:
        return _error_response("UPDATE_FAILED", "update cycle raised an unexpected error", 500)
    return jsonify({"outcome": outcome.to_dict()}), 200


def register_management_routes(app: Flask, state: Dict[str, Any]) -> None:
    """Register instance settings, object tree and action endpoints.

    Args:
        app: Flask application instance.
        state: Shared app state dict with keys ``settings``, ``repository``,
            ``tree_lock`` and ``scheduler``.
    """
    settings = state["settings"]
    repository = state["repository"]
    tree_lock = state["tree_lock"]

    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        data = settings.load()
        return jsonify(
            {
                "properties": settings.masked_properties(),
                "status": data["status"],
                "last_modified": data.get("last_modified"),
                "modified_by": data.get("modified_by"),
            }
        ), 200

    @app.route("/api/settings", methods=["PATCH"])
    def patch_settings():
        """Apply property changes and run an update cycle right away.

        Returns:
            JSON with the masked properties and the outcome of the update.
        """
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict) or not payload:
            return _error_response(
                "VALIDATION_ERROR", "settings payload must be a non-empty object", 400
            )
        properties = payload.get("properties", payload)
        if not isinstance(properties, dict) or not properties:
            return _error_response("VALIDATION_ERROR", "'properties' must be an object", 400)

        modified_by = request.headers.get("X-Modified-By", "api")
        try:
            settings.update_properties(properties, modified_by=modified_by)
        except SettingsValidationError as exc:
            return _error_response("VALIDATION_ERROR", str(exc), 400)

        warnings = []
        url = properties.get("url")
        if isinstance(url, str) and url and not is_well_formed_http_url(url):
            warnings.append("url is not a plain http(s) URL; the cloud service may reject it")

        outcome = state["scheduler"].trigger_once()
        return jsonify(
            {
                "properties": settings.masked_properties(),
                "outcome": outcome.to_dict() if outcome else None,
                "warnings": warnings,
            }
        ), 200

    @app.route("/api/objects", methods=["GET"])
    def list_objects():
        raw_parent_id = request.args.get("parent_id")
        parent_id = None
        if raw_parent_id is not None:
            try:
                parent_id = int(raw_parent_id)
            except ValueError:
                return _error_response("VALIDATION_ERROR", "parent_id must be an integer", 400)
        try:
            nodes = repository.list_nodes(parent_id)
        except NodeRepositoryError as exc:
            if _is_tree_corruption_error(exc):
                return _tree_corruption_response(exc)
            raise
        return jsonify({"objects": nodes}), 200

    @app.route("/api/objects/<int:node_id>", methods=["GET"])
    def get_object(node_id: int):
        try:
            node = repository.get_node(node_id)
        except NodeRepositoryError as exc:
            if _is_tree_corruption_error(exc):
                return _tree_corruption_response(exc)
            raise
        if node is None:
            return _error_response(
                "OBJECT_NOT_FOUND", f"object {node_id} not found", 404, node_id=node_id
            )
        return jsonify(node), 200

    @app.route("/api/objects/<int:node_id>", methods=["DELETE"])
    def delete_object(node_id: int):
        try:
            with tree_lock:
                deleted = repository.delete_node(node_id)
        except NodeRepositoryError as exc:
            if _is_tree_corruption_error(exc):
                return _tree_corruption_response(exc)
            raise
        if not deleted:
            return _error_response(
                "OBJECT_NOT_FOUND", f"object {node_id} not found", 404, node_id=node_id
            )
        logger.info("object_deleted: node_id=%s", node_id)
        return "", 204

    @app.route("/api/actions/update", methods=["POST"])
    def trigger_update():
        return _run_update(state)
