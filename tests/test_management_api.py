from unittest import mock

import pytest

from netatmo_presence import main
from netatmo_presence.connection import STATUS_MISSING_CREDENTIALS, STATUS_READY


RELAY_HEADERS = {"User-Agent": "NetatmoWebhookServer/1.0"}
HOOK_PATH = "/hook/netatmo_presence_test-instance"

CREDENTIALS = {
    "email": "owner@example.com",
    "password": "hunter2",
    "client_id": "client-id",
    "client_secret": "client-secret",
    "url": "https://host.example.com",
    "ip": "192.168.1.10",
}


@pytest.fixture
def bridge_app(full_config, fake_client):
    with mock.patch.object(main, "probe_reachability", return_value=True):
        app = main.create_app(full_config, client_factory=lambda config: fake_client)
        yield app
    app.bridge_state["scheduler"].stop()


@pytest.fixture
def client(bridge_app):
    return bridge_app.test_client()


def _configure(client):
    return client.patch("/api/settings", json={"properties": CREDENTIALS})


def test_health_is_always_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["instance_id"] == "test-instance"


def test_ready_reports_status_before_configuration(client):
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.get_json()["reason"] == "unconfigured"


def test_patch_settings_runs_update_and_becomes_ready(client, fake_client, bridge_app):
    response = _configure(client)

    body = response.get_json()
    assert response.status_code == 200
    assert body["outcome"]["status_code"] == STATUS_READY
    assert body["properties"]["password"] == "********"
    assert body["warnings"] == []
    assert client.get("/ready").status_code == 200
    assert ("set_webhook", "https://host.example.com" + HOOK_PATH) in fake_client.calls
    assert bridge_app.bridge_state["hook_registry"].resolve(HOOK_PATH) is not None


def test_patch_settings_rejects_invalid_values(client):
    response = client.patch("/api/settings", json={"refresh_rate": -1})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"

    response = client.patch("/api/settings", data="nope", content_type="text/plain")
    assert response.status_code == 400


def test_patch_settings_warns_about_unusual_callback_url(client):
    response = client.patch("/api/settings", json={"url": "ftp://host.example.com"})
    assert response.status_code == 200
    assert len(response.get_json()["warnings"]) == 1


def test_get_settings_masks_secrets(client):
    _configure(client)
    body = client.get("/api/settings").get_json()
    assert body["properties"]["client_secret"] == "********"
    assert body["properties"]["email"] == "owner@example.com"
    assert body["status"]["code"] == STATUS_READY


def test_manual_update_action_reports_outcome(client):
    response = client.post("/api/actions/update")
    assert response.status_code == 200
    assert response.get_json()["outcome"]["status_code"] == STATUS_MISSING_CREDENTIALS


def test_manual_update_reports_unexpected_failure(client, bridge_app):
    controller = bridge_app.bridge_state["controller"]
    with (
        mock.patch.object(controller, "update", side_effect=RuntimeError("boom")),
        mock.patch("sentry_sdk.new_scope"),
    ):
        response = client.post("/api/actions/update")
    assert response.status_code == 500
    assert response.get_json()["error"]["code"] == "UPDATE_FAILED"


def test_status_reports_cycle_and_hook(client):
    _configure(client)
    client.post(HOOK_PATH, data='{"event_type": "human"}', headers=RELAY_HEADERS)

    body = client.get("/api/status").get_json()
    assert body["instance_id"] == "test-instance"
    assert body["hook_path"] == HOOK_PATH
    assert body["hook_registered"] is True
    assert body["status"] == "ready"
    assert body["camera_count"] == 1
    assert body["webhook_payload_entries"] == 1
    assert body["last_outcome"]["state"] == "ready"


def test_objects_listing_and_deletion(client):
    _configure(client)

    roots = client.get("/api/objects?parent_id=0").get_json()["objects"]
    assert sorted(node["ident"] for node in roots) == ["Webhook", "cam1"]

    camera = next(node for node in roots if node["ident"] == "cam1")
    assert client.get(f"/api/objects/{camera['id']}").get_json()["name"] == "Front"
    assert client.delete(f"/api/objects/{camera['id']}").status_code == 204
    assert client.get(f"/api/objects?parent_id={camera['id']}").get_json()["objects"] == []
    assert client.delete(f"/api/objects/{camera['id']}").status_code == 404


def test_objects_rejects_bad_parent_id(client):
    assert client.get("/api/objects?parent_id=abc").status_code == 400


def test_version_endpoints(client):
    for path in ("/version", "/api/version"):
        body = client.get(path).get_json()
        assert body["status"] == "ok"
        assert "version" in body


def test_hook_is_unknown_until_ready(client):
    response = client.post(HOOK_PATH, data='{"a": 1}', headers=RELAY_HEADERS)
    assert response.status_code == 404


def test_api_requires_bearer_token_when_configured(full_config, fake_client):
    full_config["control_auth_token"] = "secret-token"
    with mock.patch.object(main, "probe_reachability", return_value=True):
        app = main.create_app(full_config, client_factory=lambda config: fake_client)
        client = app.test_client()

        assert client.get("/api/status").status_code == 401
        wrong = client.get("/api/status", headers={"Authorization": "Bearer wrong"})
        assert wrong.status_code == 401
        authorized = client.get(
            "/api/status", headers={"Authorization": "Bearer secret-token"}
        )
        assert authorized.status_code == 200
        assert client.get("/health").status_code == 200

        client.patch(
            "/api/settings",
            json=CREDENTIALS,
            headers={"Authorization": "Bearer secret-token"},
        )
        hook = client.post(HOOK_PATH, data='{"a": 1}', headers=RELAY_HEADERS)
        assert hook.status_code == 200
    app.bridge_state["scheduler"].stop()


def test_startup_update_runs_only_when_previously_ready(bridge_app):
    state = bridge_app.bridge_state
    assert main.run_startup_update(state) is False

    state["settings"].update_properties(CREDENTIALS)
    assert main.run_startup_update(state) is False

    state["settings"].set_status(STATUS_READY)
    assert main.run_startup_update(state) is True
    assert state["hook_registry"].resolve(HOOK_PATH) is not None


def test_shutdown_unregisters_hook_and_stops_scheduler(client, bridge_app):
    _configure(client)
    state = bridge_app.bridge_state
    state["scheduler"].start()

    main.shutdown_bridge(state)

    assert state["hook_registry"].resolve(HOOK_PATH) is None
    assert state["scheduler"].shutdown_event.is_set()
    assert client.post(HOOK_PATH, data='{"a": 1}', headers=RELAY_HEADERS).status_code == 404
