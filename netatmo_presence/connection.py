"""Connection and webhook registration state machine.

Decides whether the bridge instance is usable and which diagnostic status the
host shows. Every check that fails ends the cycle and is reported as a value;
the next trigger starts over from validation.
"""

import logging
import socket
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

import sentry_sdk

from .callback_url_validation import (
    has_trailing_separator,
    normalize_lan_address,
    strip_trailing_separator,
    validate_callback_url,
)
from .cloud_client import CameraCloudClient
from .instance_settings import DEFAULT_REFRESH_RATE, InstanceSettings
from .reconciler import ObjectTreeReconciler
from .structured_logging import log_error, log_event
from .webhook import HookRegistry, WebhookIngestionHandler, hook_path_for


logger = logging.getLogger(__name__)

STATUS_READY = 102
STATUS_MISSING_CREDENTIALS = 201
STATUS_INVALID_CALLBACK_URL = 202
STATUS_CONNECT_FAILED = 203
STATUS_WEBHOOK_REGISTRATION_FAILED = 204
STATUS_DEVICE_UNREACHABLE = 205

STATUS_LABELS = {
    STATUS_READY: "ready",
    STATUS_MISSING_CREDENTIALS: "missing_credentials",
    STATUS_INVALID_CALLBACK_URL: "invalid_callback_url",
    STATUS_CONNECT_FAILED: "connect_failed",
    STATUS_WEBHOOK_REGISTRATION_FAILED: "webhook_registration_failed",
    STATUS_DEVICE_UNREACHABLE: "device_unreachable",
}

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_PROBE_PORT = 80


class ConnectionState(Enum):
    UNCONFIGURED = "unconfigured"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    REGISTERING_WEBHOOK = "registering_webhook"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionConfig:
    email: str = ""
    password: str = ""
    client_id: str = ""
    client_secret: str = ""
    url: str = ""
    ip: str = ""
    refresh_rate: int = DEFAULT_REFRESH_RATE

    @classmethod
    def from_properties(cls, properties: Dict[str, Any]) -> "ConnectionConfig":
        return cls(
            email=properties.get("email") or "",
            password=properties.get("password") or "",
            client_id=properties.get("client_id") or "",
            client_secret=properties.get("client_secret") or "",
            url=properties.get("url") or "",
            ip=properties.get("ip") or "",
            refresh_rate=properties.get("refresh_rate") or DEFAULT_REFRESH_RATE,
        )

    def has_credentials(self) -> bool:
        return all((self.email, self.password, self.client_id, self.client_secret))


class ConnectionCheckError(Exception):
    """A configuration or connection check failed for this cycle."""

    status_code = 0
    error_type = "connection_failed"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class MissingCredentialsError(ConnectionCheckError):
    status_code = STATUS_MISSING_CREDENTIALS
    error_type = "missing_credentials"


class InvalidCallbackURLError(ConnectionCheckError):
    status_code = STATUS_INVALID_CALLBACK_URL
    error_type = "invalid_callback_url"


class ConnectFailedError(ConnectionCheckError):
    status_code = STATUS_CONNECT_FAILED
    error_type = "connect_failed"


class WebhookRegistrationFailedError(ConnectionCheckError):
    status_code = STATUS_WEBHOOK_REGISTRATION_FAILED
    error_type = "webhook_registration_failed"


class DeviceUnreachableError(ConnectionCheckError):
    status_code = STATUS_DEVICE_UNREACHABLE
    error_type = "device_unreachable"


@dataclass
class ConnectionOutcome:
    state: ConnectionState
    status_code: Optional[int] = None
    deferred: bool = False
    error: Optional[str] = None
    config: Optional[ConnectionConfig] = None
    client: Optional[CameraCloudClient] = None

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.READY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "status_code": self.status_code,
            "status": STATUS_LABELS.get(self.status_code) if self.status_code else None,
            "deferred": self.deferred,
            "error": self.error,
        }


def probe_reachability(
    address: str,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    port: int = DEFAULT_PROBE_PORT,
) -> bool:
    """Return True when a TCP connection to the LAN address succeeds in time.

    ``address`` may carry an explicit ``host:port``; otherwise ``port`` is used.
    """
    if not address:
        return False
    host = address
    if address.count(":") == 1:
        host, _, raw_port = address.partition(":")
        try:
            port = int(raw_port)
        except ValueError:
            return False
    try:
        with socket.create_connection((host, port), timeout=timeout_seconds):
            return True
    except (OSError, ValueError) as exc:
        logger.debug("reachability_probe_failed: address=%s reason=%s", address, exc)
        return False


class ConnectionStateMachine:
    """Validates configuration, opens a cloud session and registers the webhook.

    The machine is re-run from ``VALIDATING`` on every trigger. The outcome of
    the last run is kept on ``state`` and persisted as the instance status.
    """

    def __init__(
        self,
        *,
        settings: InstanceSettings,
        instance_id: str,
        client_factory: Callable[[ConnectionConfig], CameraCloudClient],
        hook_registry: HookRegistry,
        webhook_handler: WebhookIngestionHandler,
        reconciler: ObjectTreeReconciler,
        reachability_probe: Callable[[str, float], bool] = probe_reachability,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.instance_id = instance_id
        self.client_factory = client_factory
        self.hook_registry = hook_registry
        self.webhook_handler = webhook_handler
        self.reconciler = reconciler
        self.reachability_probe = reachability_probe
        self.probe_timeout_seconds = probe_timeout_seconds
        self.state = ConnectionState.UNCONFIGURED

    @property
    def hook_path(self) -> str:
        return hook_path_for(self.instance_id)

    def _check_credentials(self, config: ConnectionConfig) -> None:
        if not config.has_credentials():
            message = "email, password, client id and client secret are required"
            raise MissingCredentialsError(message)

    def _check_reachability(self, config: ConnectionConfig) -> None:
        if not self.reachability_probe(config.ip, self.probe_timeout_seconds):
            message = f"LAN device {config.ip or '<unset>'} did not respond"
            raise DeviceUnreachableError(message)

    def _check_callback_url(self, config: ConnectionConfig) -> None:
        try:
            validate_callback_url(config.url)
        except ValueError as exc:
            raise InvalidCallbackURLError(str(exc)) from exc

    def _connect(self, config: ConnectionConfig) -> CameraCloudClient:
        client = self.client_factory(config)
        if not client.connect():
            message = "cloud session could not be opened"
            raise ConnectFailedError(message, detail=client.error)
        return client

    def _register_webhook(self, client: CameraCloudClient, config: ConnectionConfig) -> None:
        self.hook_registry.register(self.hook_path, self.webhook_handler)

        client.drop_webhook()
        response = client.set_webhook(f"{config.url}{self.hook_path}")
        if not isinstance(response, dict) or response.get("status") != "ok":
            message = "cloud service did not confirm the webhook"
            raise WebhookRegistrationFailedError(message, detail=client.error)

    def record_failure(self, exc: ConnectionCheckError) -> ConnectionOutcome:
        """Persist the failure status of ``exc`` and return a FAILED outcome."""
        self.state = ConnectionState.FAILED
        error_text = exc.detail or str(exc)
        self.settings.set_status(exc.status_code, error_text)
        log_error(
            "connection_check",
            exc.error_type,
            str(exc),
            resource_id=self.instance_id,
            severity="WARNING",
            status_code=exc.status_code,
            detail=exc.detail,
        )
        return ConnectionOutcome(
            ConnectionState.FAILED, status_code=exc.status_code, error=error_text
        )

    def run(self) -> ConnectionOutcome:
        """Run every check in order and report the resulting status.

        Returns:
            A deferred outcome when the callback URL had to be normalized, a
            ``FAILED`` outcome carrying the status code of the first failing
            check, or a ``READY`` outcome holding the connected client and the
            normalized configuration.
        """
        self.state = ConnectionState.VALIDATING
        config = ConnectionConfig.from_properties(self.settings.read_properties())

        if has_trailing_separator(config.url):
            normalized_url = strip_trailing_separator(config.url)
            self.settings.set_property("url", normalized_url, modified_by="connection")
            log_event(
                "callback_url_normalized",
                instance_id=self.instance_id,
                url=normalized_url,
            )
            return ConnectionOutcome(ConnectionState.VALIDATING, deferred=True)

        try:
            self._check_credentials(config)
            self._check_reachability(config)
            self._check_callback_url(config)

            config = replace(config, ip=normalize_lan_address(config.ip))

            self.state = ConnectionState.CONNECTING
            client = self._connect(config)

            self.state = ConnectionState.REGISTERING_WEBHOOK
            self._register_webhook(client, config)
        except ConnectionCheckError as exc:
            return self.record_failure(exc)
        except Exception as exc:
            logger.exception("connection_check_unexpected_error: state=%s", self.state.value)
            with sentry_sdk.new_scope() as scope:
                scope.set_tag("component", "connection")
                scope.set_tag("instance_id", self.instance_id)
                scope.capture_exception(exc)
            failure_cls = (
                WebhookRegistrationFailedError
                if self.state is ConnectionState.REGISTERING_WEBHOOK
                else ConnectFailedError
            )
            return self.record_failure(failure_cls("unexpected cloud client error", detail=str(exc)))

        self.settings.set_status(STATUS_READY)
        self.reconciler.ensure_webhook_category()
        self.state = ConnectionState.READY
        log_event("connection_ready", instance_id=self.instance_id, hook_path=self.hook_path)
        return ConnectionOutcome(
            ConnectionState.READY, status_code=STATUS_READY, config=config, client=client
        )
