"""Tests for Sentry error tracking integration."""

from unittest import mock


TOKEN = "0123456789abcdef0123456789abcdef"


class TestSentryIntegration:
    """Test Sentry error tracking initialization and behavior."""

    def test_sentry_skips_init_when_dsn_missing(self):
        from netatmo_presence.sentry_config import init_sentry

        with mock.patch("sentry_sdk.init") as mock_init:
            init_sentry("", "inst-1")
            init_sentry(None, "inst-1")
            mock_init.assert_not_called()

    def test_sentry_initializes_with_valid_dsn(self):
        from netatmo_presence.sentry_config import init_sentry

        test_dsn = "https://test-key@o0.ingest.sentry.io/0"

        with (
            mock.patch("sentry_sdk.init") as mock_init,
            mock.patch("sentry_sdk.set_tag") as mock_set_tag,
        ):
            init_sentry(test_dsn, "inst-1")

            mock_init.assert_called_once()
            call_kwargs = mock_init.call_args[1]
            assert call_kwargs["dsn"] == test_dsn
            assert "integrations" in call_kwargs
            assert "before_send" in call_kwargs
            assert "before_breadcrumb" in call_kwargs
            assert "traces_sampler" in call_kwargs
            assert "traces_sample_rate" not in call_kwargs
            assert "release" in call_kwargs
            assert call_kwargs["send_default_pii"] is False
            mock_set_tag.assert_called_once_with("instance_id", "inst-1")

    def test_redacts_authorization_header_and_credentials(self):
        from netatmo_presence.sentry_config import _redact_auth_data

        event = {
            "request": {
                "headers": {
                    "authorization": "Bearer secret-token-123",
                    "Content-Type": "application/json",
                },
                "url": "http://bridge.local/api/settings",
                "data": {"password": "hunter2", "client_secret": "s", "email": "a@b.c"},
            },
            "extra": {"nested": {"access_token": "abc"}},
        }

        result = _redact_auth_data(event, {})

        assert result["request"]["headers"]["authorization"] == "[REDACTED]"
        assert result["request"]["headers"]["Content-Type"] == "application/json"
        assert result["request"]["data"]["password"] == "[REDACTED]"
        assert result["request"]["data"]["client_secret"] == "[REDACTED]"
        assert result["request"]["data"]["email"] == "a@b.c"
        assert result["extra"]["nested"]["access_token"] == "[REDACTED]"

    def test_redacts_snapshot_access_tokens(self):
        from netatmo_presence.sentry_config import _redact_auth_data, redact_text

        url = f"http://192.168.1.10/{TOKEN}/live/snapshot_720.jpg"
        assert redact_text(url) == "http://192.168.1.10/[REDACTED]/live/snapshot_720.jpg"

        event = {"logentry": {"message": f"snapshot {url}"}, "extra": {"url": url}}
        result = _redact_auth_data(event, {})
        assert TOKEN not in result["logentry"]["message"]
        assert TOKEN not in result["extra"]["url"]

    def test_redacts_secret_env_values(self):
        from netatmo_presence.sentry_config import _redact_auth_data

        event = {
            "contexts": {
                "env": {"NPB_PASSWORD": "hunter2", "NPB_CLIENT_SECRET": "s", "NPB_PORT": "8000"}
            }
        }
        env = _redact_auth_data(event, {})["contexts"]["env"]
        assert env["NPB_PASSWORD"] == "[REDACTED]"
        assert env["NPB_CLIENT_SECRET"] == "[REDACTED]"
        assert env["NPB_PORT"] == "8000"

    def test_breadcrumb_filter_drops_health_polling(self):
        from netatmo_presence.sentry_config import _breadcrumb_filter

        health = {"category": "http.client", "data": {"url": "http://bridge/health"}}
        cloud = {"category": "http.client", "data": {"url": "https://api.netatmo.com/api/x"}}

        assert _breadcrumb_filter(health, {}) is None
        assert _breadcrumb_filter(cloud, {}) == cloud

    def test_traces_sampler_rates(self):
        from netatmo_presence.sentry_config import _traces_sampler

        def rate(path, method="GET"):
            return _traces_sampler(
                {"wsgi_environ": {"PATH_INFO": path, "REQUEST_METHOD": method}}
            )

        assert rate("/health") == 0.0
        assert rate("/ready") == 0.0
        assert rate("/hook/netatmo_presence_x", "POST") == 1.0
        assert rate("/api/settings", "PATCH") == 1.0
        assert rate("/api/status") == 0.1
