#!/usr/bin/python3

import logging
import signal
import time
from threading import Event, RLock
from typing import Any, Dict, Optional

from flask import Flask, g, request
from werkzeug.serving import make_server

from .cloud_client import netatmo_client_factory
from .connection import STATUS_READY, ConnectionConfig, ConnectionStateMachine, probe_reachability
from .instance_settings import InstanceSettings
from .logging_config import configure_logging, log_startup_info
from .management_api import register_management_routes
from .object_tree import FileNodeRepository
from .poller import PollingController, PollScheduler
from .reconciler import ObjectTreeReconciler
from .runtime_config import load_env_config
from .sentry_config import init_sentry
from .shared import register_control_api_auth, register_shared_routes
from .version_info import read_app_version
from .webhook import HookRegistry, WebhookIngestionHandler, register_hook_routes


logger = logging.getLogger(__name__)


def _register_request_logging(app: Flask) -> None:
    health_endpoints = {"/health", "/ready"}

    @app.before_request
    def _track_request_start() -> None:
        g.request_started_monotonic = time.monotonic()

    @app.after_request
    def _log_request(response):
        request_started = getattr(g, "request_started_monotonic", None)
        latency_ms = 0.0
        if request_started is not None:
            latency_ms = (time.monotonic() - request_started) * 1000

        level = logging.DEBUG if request.path in health_endpoints else logging.INFO
        logger.log(
            level,
            "request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.path,
            response.status_code,
            latency_ms,
        )
        return response


def _build_state(cfg: Dict[str, Any], client_factory) -> Dict[str, Any]:
    instance_id = cfg["instance_id"]
    settings = InstanceSettings(cfg["settings_path"], defaults=cfg.get("property_defaults"))
    repository = FileNodeRepository(cfg["object_tree_path"])
    tree_lock = RLock()
    reconciler = ObjectTreeReconciler(repository, lock=tree_lock)
    hook_registry = HookRegistry()
    webhook_handler = WebhookIngestionHandler(reconciler, instance_id=instance_id)
    probe_port = cfg["probe_port"]

    state_machine = ConnectionStateMachine(
        settings=settings,
        instance_id=instance_id,
        client_factory=client_factory,
        hook_registry=hook_registry,
        webhook_handler=webhook_handler,
        reconciler=reconciler,
        reachability_probe=lambda address, timeout: probe_reachability(
            address, timeout, port=probe_port
        ),
        probe_timeout_seconds=cfg["probe_timeout_seconds"],
    )
    controller = PollingController(state_machine, reconciler)
    scheduler = PollScheduler(
        controller=controller,
        interval_seconds=cfg["poll_interval_seconds"],
        shutdown_event=Event(),
    )
    return {
        "instance_id": instance_id,
        "settings": settings,
        "repository": repository,
        "tree_lock": tree_lock,
        "reconciler": reconciler,
        "hook_registry": hook_registry,
        "webhook_handler": webhook_handler,
        "state_machine": state_machine,
        "controller": controller,
        "scheduler": scheduler,
    }


def create_app(config: Optional[Dict[str, Any]] = None, client_factory=None) -> Flask:
    """Build the bridge Flask app and its instance state.

    Background work is not started here; see ``start_background_services``.

    Args:
        config: Configuration dict shaped like ``load_env_config()``.
        client_factory: Builds a cloud client from a ``ConnectionConfig``.
    """
    cfg = load_env_config() if config is None else config
    app = Flask(__name__)
    app.start_time_monotonic = time.monotonic()
    _register_request_logging(app)

    state = _build_state(cfg, client_factory or netatmo_client_factory)
    app.bridge_state = state
    app.bridge_config = dict(cfg)

    register_control_api_auth(app, cfg.get("control_auth_token", ""))
    register_shared_routes(app, state)
    register_management_routes(app, state)
    register_hook_routes(app, state["hook_registry"])

    logger.info(
        "bridge_initialized: instance_id=%s hook_path=%s auth_required=%s",
        state["instance_id"],
        state["state_machine"].hook_path,
        bool(cfg.get("control_auth_token")),
    )
    return app


def run_startup_update(state: Dict[str, Any]) -> bool:
    """Run one update when the instance was ready before the restart.

    Returns:
        True when an update cycle was triggered.
    """
    status = state["settings"].get_status()
    config = ConnectionConfig.from_properties(state["settings"].read_properties())
    if status.get("code") != STATUS_READY or not config.has_credentials():
        logger.info("startup_update_skipped: status_code=%s", status.get("code"))
        return False
    state["scheduler"].trigger_once()
    return True


def start_background_services(app: Flask) -> None:
    state = app.bridge_state
    run_startup_update(state)
    state["scheduler"].start()


def shutdown_bridge(state: Dict[str, Any]) -> None:
    """Unregister the hook route and stop the poll timer."""
    state["hook_registry"].unregister(state["state_machine"].hook_path)
    state["scheduler"].stop()
    logger.info("bridge_shutdown: instance_id=%s", state["instance_id"])


def handle_shutdown(app: Flask, signum: int, _frame: Optional[object]) -> None:
    app_state = getattr(app, "bridge_state", None)
    if isinstance(app_state, dict):
        shutdown_bridge(app_state)
    raise SystemExit(signum)


def main() -> None:
    configure_logging()
    cfg = load_env_config()
    init_sentry(cfg["sentry_dsn"], instance_id=cfg["instance_id"])
    log_startup_info(cfg, read_app_version())

    app = create_app(cfg)
    signal.signal(signal.SIGTERM, lambda signum, frame: handle_shutdown(app, signum, frame))
    signal.signal(signal.SIGINT, lambda signum, frame: handle_shutdown(app, signum, frame))
    start_background_services(app)

    server = make_server(cfg["bind_host"], cfg["port"], app, threaded=True)
    server.serve_forever()


if __name__ == "__main__":
    main()
