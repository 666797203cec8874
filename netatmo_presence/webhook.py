"""Inbound webhook ingestion for cloud push notifications.

The cloud relay does not forward a provider-issued secret header through the
hook proxy, so requests are accepted on method and User-Agent alone.
"""

import json
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional

from flask import Flask, Response, request

from .object_tree import NodeRepositoryError
from .reconciler import ObjectTreeReconciler, PayloadMapping, parse_payload
from .structured_logging import log_error, log_event


logger = logging.getLogger(__name__)

HOOK_PATH_PREFIX = "/hook/netatmo_presence_"
WEBHOOK_USER_AGENT_MARKER = "NetatmoWebhookServer"
FORBIDDEN_BODY = "Netatmo: Direct Access Forbidden!"


def hook_path_for(instance_id: str) -> str:
    return f"{HOOK_PATH_PREFIX}{instance_id}"


@dataclass(frozen=True)
class WebhookRequest:
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> str:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return ""


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: str = ""


class WebhookIngestionHandler:
    """Validates push requests and forwards accepted payloads to the reconciler.

    Attributes:
        payload: The last accepted payload, replaced on every accepted push.
    """

    def __init__(self, reconciler: ObjectTreeReconciler, instance_id: str = ""):
        self.reconciler = reconciler
        self.instance_id = instance_id
        self.payload: Optional[PayloadMapping] = None

    def _is_cloud_relay(self, webhook_request: WebhookRequest) -> bool:
        user_agent = webhook_request.header("User-Agent")
        return (
            webhook_request.method.upper() == "POST"
            and WEBHOOK_USER_AGENT_MARKER.lower() in user_agent.lower()
        )

    def handle(self, webhook_request: WebhookRequest) -> WebhookResponse:
        """Process one hook request.

        Empty bodies are answered with 401 before anything else. Requests that
        are not a POST from the cloud relay get 403, bodies that are not a
        JSON object get 400. Accepted payloads are reconciled into the tree
        and replace ``payload``; a payload the tree refuses is answered with
        400 as well.
        """
        logger.info(
            "webhook_received: instance_id=%s method=%s body=%s",
            self.instance_id,
            webhook_request.method,
            webhook_request.body,
        )

        if not webhook_request.body:
            log_event(
                "webhook_rejected",
                severity="WARNING",
                reason="empty_body",
                instance_id=self.instance_id,
            )
            return WebhookResponse(401, FORBIDDEN_BODY)

        if not self._is_cloud_relay(webhook_request):
            log_event(
                "webhook_rejected",
                severity="WARNING",
                reason="not_cloud_relay",
                method=webhook_request.method,
                user_agent=webhook_request.header("User-Agent"),
                instance_id=self.instance_id,
            )
            return WebhookResponse(403, "Forbidden")

        try:
            payload = parse_payload(json.loads(webhook_request.body))
        except ValueError as exc:
            # json.JSONDecodeError is a ValueError as well.
            log_error(
                "webhook_ingest",
                "invalid_payload",
                str(exc),
                resource_id=self.instance_id,
                severity="WARNING",
            )
            return WebhookResponse(400, "Invalid payload")

        try:
            counts = self.reconciler.reconcile_webhook(payload)
        except NodeRepositoryError as exc:
            log_error(
                "webhook_ingest",
                "tree_write_failed",
                str(exc),
                resource_id=self.instance_id,
            )
            return WebhookResponse(400, "Invalid payload")
        self.payload = payload
        log_event("webhook_ingested", instance_id=self.instance_id, **counts)
        return WebhookResponse(200, "OK")


class HookRegistry:
    """Host-side routing table of active ``/hook/...`` paths."""

    def __init__(self) -> None:
        self._hooks: Dict[str, WebhookIngestionHandler] = {}
        self._lock = Lock()

    def register(self, path: str, handler: WebhookIngestionHandler) -> None:
        with self._lock:
            if self._hooks.get(path) is handler:
                return
            self._hooks[path] = handler
        logger.info("hook_registered: path=%s", path)

    def unregister(self, path: str) -> bool:
        with self._lock:
            removed = self._hooks.pop(path, None) is not None
        if removed:
            logger.info("hook_unregistered: path=%s", path)
        return removed

    def resolve(self, path: str) -> Optional[WebhookIngestionHandler]:
        with self._lock:
            return self._hooks.get(path)

    def paths(self) -> List[str]:
        with self._lock:
            return sorted(self._hooks)


def register_hook_routes(app: Flask, hook_registry: HookRegistry) -> None:
    """Register the ``/hook/<name>`` dispatcher on the Flask app.

    Unknown hook names answer 404. Both GET and POST reach the handler so that
    non-POST probes are logged and rejected by the handler itself.
    """

    @app.route("/hook/<hook_name>", methods=["GET", "POST", "PUT"])
    def dispatch_hook(hook_name: str):
        handler = hook_registry.resolve(f"/hook/{hook_name}")
        if handler is None:
            return Response("Not Found", status=404, mimetype="text/plain")

        webhook_request = WebhookRequest(
            method=request.method,
            headers=dict(request.headers),
            body=request.get_data(as_text=True),
        )
        result = handler.handle(webhook_request)
        return Response(result.body, status=result.status_code, mimetype="text/plain")
