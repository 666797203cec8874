import threading
import time
from unittest import mock

from netatmo_presence.cloud_client import CloudClientError
from netatmo_presence.connection import (
    STATUS_CONNECT_FAILED,
    STATUS_MISSING_CREDENTIALS,
    ConnectionOutcome,
    ConnectionState,
    ConnectionStateMachine,
)
from netatmo_presence.object_tree import ROOT_PARENT_ID
from netatmo_presence.poller import PollingController, PollScheduler, camera_record_from_api
from netatmo_presence.reconciler import ObjectTreeReconciler
from netatmo_presence.webhook import HookRegistry, WebhookIngestionHandler


def _controller(settings, repository, client):
    reconciler = ObjectTreeReconciler(repository)
    machine = ConnectionStateMachine(
        settings=settings,
        instance_id="inst-1",
        client_factory=lambda config: client,
        hook_registry=HookRegistry(),
        webhook_handler=WebhookIngestionHandler(reconciler),
        reconciler=reconciler,
        reachability_probe=lambda address, timeout: True,
    )
    return PollingController(machine, reconciler)


def test_camera_record_from_api_projects_fields(camera_factory):
    record = camera_record_from_api(camera_factory(name=None), "192.168.1.10")

    assert record.id == "cam1"
    assert record.name == "cam1"
    assert record.snapshot_vpn.startswith("https://prodvpn")
    assert record.snapshot_local.startswith("http://192.168.1.10/0123456789abcdef")


def test_camera_record_without_token_has_no_local_snapshot(camera_factory):
    record = camera_record_from_api(camera_factory(snapshot=None), "192.168.1.10")
    assert record.snapshot_local is None
    assert record.snapshot_vpn is None


def test_update_reconciles_cameras_when_ready(configured_settings, repository, fake_client):
    controller = _controller(configured_settings, repository, fake_client)

    outcome = controller.update()

    assert outcome.ready
    assert ("list_cameras",) in fake_client.calls
    assert [record.id for record in controller.cameras] == ["cam1"]
    assert controller.last_cycle_at is not None
    category = repository.find_node(ROOT_PARENT_ID, "cam1")
    image = repository.find_node(category["id"], "snapshot")
    assert image["properties"]["interval"] == 15


def test_update_uses_configured_refresh_rate(configured_settings, repository, fake_client):
    configured_settings.set_property("refresh_rate", 30)
    controller = _controller(configured_settings, repository, fake_client)

    controller.update()

    category = repository.find_node(ROOT_PARENT_ID, "cam1")
    assert repository.find_node(category["id"], "snapshot")["properties"]["interval"] == 30


def test_update_skips_reconciliation_when_not_ready(settings, repository, fake_client):
    controller = _controller(settings, repository, fake_client)

    outcome = controller.update()

    assert outcome.status_code == STATUS_MISSING_CREDENTIALS
    assert controller.last_outcome is outcome
    assert repository.list_nodes() == []


def test_camera_list_failure_is_reported_as_connect_failure(
    configured_settings, repository, client_cls
):
    client = client_cls()
    client.list_cameras = mock.Mock(
        side_effect=CloudClientError("/api/gethomedata failed with HTTP 500")
    )
    controller = _controller(configured_settings, repository, client)
    scheduler = PollScheduler(
        controller=controller, interval_seconds=60, shutdown_event=threading.Event()
    )

    outcome = scheduler.trigger_once()

    assert outcome.state is ConnectionState.FAILED
    assert outcome.status_code == STATUS_CONNECT_FAILED
    assert controller.last_outcome is outcome
    status = configured_settings.get_status()
    assert status["code"] == STATUS_CONNECT_FAILED
    assert "HTTP 500" in status["last_error"]
    assert repository.find_node(ROOT_PARENT_ID, "cam1") is None


def test_trigger_once_contains_unexpected_errors():
    controller = mock.Mock()
    controller.update.side_effect = RuntimeError("disk full")
    scheduler = PollScheduler(
        controller=controller, interval_seconds=60, shutdown_event=threading.Event()
    )

    with mock.patch("sentry_sdk.new_scope") as new_scope:
        assert scheduler.trigger_once() is None
    new_scope.return_value.__enter__.return_value.capture_exception.assert_called_once()


def test_scheduler_runs_immediately_and_stops():
    controller = mock.Mock()
    ran = threading.Event()
    controller.update.side_effect = lambda: ran.set() or ConnectionOutcome(ConnectionState.READY)
    scheduler = PollScheduler(
        controller=controller,
        interval_seconds=3600,
        shutdown_event=threading.Event(),
        run_immediately=True,
    )

    scheduler.start()
    scheduler.start()
    assert ran.wait(2.0)
    scheduler.stop()

    assert controller.update.call_count == 1
    assert scheduler._thread is None


def test_scheduler_interval_has_floor():
    scheduler = PollScheduler(
        controller=mock.Mock(), interval_seconds=0.01, shutdown_event=threading.Event()
    )
    assert scheduler.interval_seconds == 1.0


def test_scheduler_does_not_trigger_before_interval():
    controller = mock.Mock()
    scheduler = PollScheduler(
        controller=controller, interval_seconds=3600, shutdown_event=threading.Event()
    )
    scheduler.start()
    time.sleep(0.05)
    scheduler.stop()
    controller.update.assert_not_called()
