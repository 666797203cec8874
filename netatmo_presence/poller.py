"""Periodic camera polling for a bridge instance.

``PollingController.update`` is the unit of work: run the connection state
machine and, once it is ready, mirror the account's cameras into the tree.
``PollScheduler`` drives it from a daemon thread at a fixed interval.
"""

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional

import sentry_sdk

from .cloud_client import CloudClientError
from .connection import ConnectFailedError, ConnectionOutcome, ConnectionStateMachine
from .reconciler import CameraRecord, ObjectTreeReconciler
from .snapshot_url import local_snapshot_url
from .structured_logging import correlation_scope


logger = logging.getLogger(__name__)


def camera_record_from_api(camera: Dict[str, Any], lan_address: str) -> CameraRecord:
    """Project one raw cloud camera dict into a CameraRecord.

    Args:
        camera: Camera dict as returned by ``CameraCloudClient.list_cameras``.
        lan_address: Normalized LAN address used for the local snapshot URL.

    Returns:
        CameraRecord with ``snapshot_local`` set to None when the remote
        snapshot URL carries no access token.
    """
    remote_snapshot = camera.get("snapshot") or ""
    return CameraRecord(
        id=str(camera["id"]),
        name=str(camera.get("name") or camera["id"]),
        type=camera.get("type"),
        status=camera.get("status"),
        sd_status=camera.get("sd_status"),
        alim_status=camera.get("alim_status"),
        light_mode_status=camera.get("light_mode_status"),
        is_local=camera.get("is_local"),
        snapshot_local=local_snapshot_url(remote_snapshot, lan_address),
        snapshot_vpn=remote_snapshot or None,
    )


class PollingController:
    """Runs one full update cycle per trigger.

    Attributes:
        last_outcome: Outcome of the most recent cycle, or None before the first.
        last_cycle_at: ISO timestamp of the most recent cycle.
        cameras: Records produced by the most recent successful cycle.
    """

    def __init__(self, state_machine: ConnectionStateMachine, reconciler: ObjectTreeReconciler):
        self.state_machine = state_machine
        self.reconciler = reconciler
        self.last_outcome: Optional[ConnectionOutcome] = None
        self.last_cycle_at: Optional[str] = None
        self.cameras: List[CameraRecord] = []
        self._cycle_lock = Lock()

    def update(self) -> ConnectionOutcome:
        """Run the state machine and reconcile the camera list when ready.

        A camera list that cannot be fetched ends the cycle as a connect
        failure, so the persisted status never stays ready on a dead session.
        """
        with self._cycle_lock:
            outcome = self.state_machine.run()
            self.last_outcome = outcome
            self.last_cycle_at = datetime.now(timezone.utc).isoformat()

            if not outcome.ready or outcome.client is None or outcome.config is None:
                logger.info(
                    "poll_cycle_skipped: state=%s status_code=%s deferred=%s",
                    outcome.state.value,
                    outcome.status_code,
                    outcome.deferred,
                )
                return outcome

            try:
                raw_cameras = outcome.client.list_cameras()
            except CloudClientError as exc:
                outcome = self.state_machine.record_failure(
                    ConnectFailedError("camera list could not be loaded", detail=str(exc))
                )
                self.last_outcome = outcome
                return outcome

            cameras = [
                camera_record_from_api(camera, outcome.config.ip)
                for camera in raw_cameras
                if camera.get("id")
            ]
            self.reconciler.reconcile_poll(cameras, refresh_rate=outcome.config.refresh_rate)
            self.cameras = cameras
            logger.info("poll_cycle_completed: cameras=%s", len(cameras))
            return outcome


class PollScheduler:
    """Daemon thread triggering ``PollingController.update`` at a fixed interval.

    A failing cycle is logged and reported; the next trigger runs normally.
    There is no backoff: the diagnostic status already tells the operator what
    to fix.
    """

    def __init__(
        self,
        *,
        controller: PollingController,
        interval_seconds: float,
        shutdown_event: Event,
        run_immediately: bool = False,
    ):
        """Initialize poll scheduler.

        Args:
            controller: Controller whose ``update`` is called on every trigger.
            interval_seconds: Seconds between triggers (minimum 1.0).
            shutdown_event: Threading event to signal shutdown.
            run_immediately: Trigger once right after start instead of waiting.
        """
        self.controller = controller
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.shutdown_event = shutdown_event
        self.run_immediately = run_immediately
        self._thread: Optional[Thread] = None
        self._thread_lock = Lock()

    def start(self) -> None:
        """Start the polling daemon thread.

        Safe to call multiple times (idempotent) and restart-safe after ``stop()``.
        """
        with self._thread_lock:
            if self._thread and self._thread.is_alive():
                return
            self.shutdown_event.clear()
            self._thread = Thread(target=self._run_loop, name="poll-scheduler", daemon=True)
            self._thread.start()

    def stop(self, timeout_seconds: float = 3.0) -> None:
        """Stop the polling daemon thread gracefully."""
        with self._thread_lock:
            self.shutdown_event.set()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=timeout_seconds)
            if self._thread and not self._thread.is_alive():
                self._thread = None

    def trigger_once(self) -> Optional[ConnectionOutcome]:
        """Run one cycle, containing any unexpected error.

        Returns:
            The cycle outcome, or None when the cycle raised.
        """
        with correlation_scope("poll") as correlation_id:
            try:
                return self.controller.update()
            except Exception as exc:
                logger.exception("poll_cycle_failed: reason=%s", exc)
                with sentry_sdk.new_scope() as scope:
                    scope.set_tag("component", "poller")
                    scope.set_tag("correlation_id", correlation_id)
                    scope.capture_exception(exc)
                return None

    def _run_loop(self) -> None:
        wait_seconds = 0.0 if self.run_immediately else self.interval_seconds
        while not self.shutdown_event.wait(wait_seconds):
            self.trigger_once()
            wait_seconds = self.interval_seconds
