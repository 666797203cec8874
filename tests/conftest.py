"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

import pytest


# Add the workspace root to path
WORKSPACE_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(WORKSPACE_ROOT))

from netatmo_presence.cloud_client import CameraCloudClient  # noqa: E402
from netatmo_presence.instance_settings import InstanceSettings  # noqa: E402
from netatmo_presence.object_tree import FileNodeRepository  # noqa: E402


SNAPSHOT_TOKEN = "0123456789abcdef0123456789abcdef"
REMOTE_SNAPSHOT_URL = (
    f"https://prodvpn-eu-2.netatmo.net/restricted/10.255.1.1/{SNAPSHOT_TOKEN}"
    "/MTU4NDQ2NjQwMDp,,/live/snapshot_720.jpg"
)


class FakeCloudClient(CameraCloudClient):
    """In-memory cloud session recording every call."""

    def __init__(
        self,
        cameras=None,
        connect_ok=True,
        webhook_response=None,
        error=None,
    ):
        self.cameras = list(cameras or [])
        self.connect_ok = connect_ok
        self.webhook_response = webhook_response if webhook_response is not None else {"status": "ok"}
        self.error = error
        self.calls = []

    def connect(self):
        self.calls.append(("connect",))
        if not self.connect_ok and self.error is None:
            self.error = "invalid_grant"
        return self.connect_ok

    def list_cameras(self):
        self.calls.append(("list_cameras",))
        return list(self.cameras)

    def set_webhook(self, url):
        self.calls.append(("set_webhook", url))
        return self.webhook_response

    def drop_webhook(self):
        self.calls.append(("drop_webhook",))
        return {"status": "ok"}


def front_camera(**overrides):
    camera = {
        "id": "cam1",
        "name": "Front",
        "type": "NOC",
        "status": "on",
        "sd_status": "on",
        "alim_status": "on",
        "light_mode_status": "auto",
        "is_local": True,
        "snapshot": REMOTE_SNAPSHOT_URL,
    }
    camera.update(overrides)
    return camera


@pytest.fixture
def workspace_root():
    """Return the absolute path to the workspace root."""
    return WORKSPACE_ROOT


@pytest.fixture
def repository(tmp_path):
    return FileNodeRepository(str(tmp_path / "object-tree.json"))


@pytest.fixture
def settings(tmp_path):
    return InstanceSettings(str(tmp_path / "instance-settings.json"))


@pytest.fixture
def configured_settings(settings):
    settings.update_properties(
        {
            "email": "owner@example.com",
            "password": "hunter2",
            "client_id": "client-id",
            "client_secret": "client-secret",
            "url": "https://host.example.com",
            "ip": "192.168.1.10",
        },
        modified_by="test",
    )
    return settings


@pytest.fixture
def fake_client():
    return FakeCloudClient(cameras=[front_camera()])


@pytest.fixture
def full_config(tmp_path):
    """Return complete config dict with all required runtime keys."""
    return {
        "bind_host": "127.0.0.1",
        "port": 8000,
        "base_url": "http://localhost:8000",
        "poll_interval_seconds": 3600.0,
        "probe_timeout_seconds": 0.5,
        "probe_port": 80,
        "instance_id": "test-instance",
        "settings_path": str(tmp_path / "instance-settings.json"),
        "object_tree_path": str(tmp_path / "object-tree.json"),
        "control_auth_token": "",
        "sentry_dsn": None,
        "log_level": "INFO",
        "log_format": "text",
        "log_include_identifiers": False,
        "property_defaults": {"url": "http://localhost:8000", "refresh_rate": 15},
    }


@pytest.fixture
def camera_factory():
    return front_camera


@pytest.fixture
def client_cls():
    return FakeCloudClient
