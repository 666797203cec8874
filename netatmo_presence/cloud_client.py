"""Netatmo cloud API session used to enumerate cameras and manage the webhook.

The session is deliberately thin: it authenticates, lists the cameras of every
home on the account and registers or drops the account's webhook. Every call
is a blocking HTTP request with a bounded timeout and no retry.
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import sentry_sdk


logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.netatmo.com"
TOKEN_PATH = "/oauth2/token"
HOME_DATA_PATH = "/api/gethomedata"
ADD_WEBHOOK_PATH = "/api/addwebhook"
DROP_WEBHOOK_PATH = "/api/dropwebhook"
CAMERA_SCOPES = "read_camera access_camera read_presence access_presence"
WEBHOOK_APP_TYPE = "app_security"
REQUEST_TIMEOUT_SECONDS = 10.0


class CloudClientError(RuntimeError):
    """Raised when a cloud API call cannot be completed."""


class CameraCloudClient(ABC):
    """Session against the remote camera service.

    Attributes:
        error: Human-readable text of the last failure, or None.
    """

    error: Optional[str] = None

    @abstractmethod
    def connect(self) -> bool:
        """Open the session. Returns False and sets ``error`` on failure."""
        raise NotImplementedError

    @abstractmethod
    def list_cameras(self) -> List[Dict[str, Any]]:
        """Return raw camera dicts with a ``snapshot`` URL per camera."""
        raise NotImplementedError

    @abstractmethod
    def set_webhook(self, url: str) -> Dict[str, Any]:
        """Register ``url`` as the account webhook. Returns the API response."""
        raise NotImplementedError

    @abstractmethod
    def drop_webhook(self) -> Dict[str, Any]:
        """Drop the account webhook. Returns the API response."""
        raise NotImplementedError


def _snapshot_url_from_vpn(vpn_url: Optional[str]) -> Optional[str]:
    if not vpn_url:
        return None
    return f"{vpn_url.rstrip('/')}/live/snapshot_720.jpg"


def _camera_from_home_data(camera: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": camera.get("id"),
        "name": camera.get("name"),
        "type": camera.get("type"),
        "status": camera.get("status"),
        "sd_status": camera.get("sd_status"),
        "alim_status": camera.get("alim_status"),
        "light_mode_status": camera.get("light_mode_status"),
        "is_local": camera.get("is_local"),
        "snapshot": _snapshot_url_from_vpn(camera.get("vpn_url")),
    }


class NetatmoCloudClient(CameraCloudClient):
    """urllib based Netatmo API session using the password grant."""

    def __init__(
        self,
        *,
        email: str,
        password: str,
        client_id: str,
        client_secret: str,
        api_base_url: str = API_BASE_URL,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.email = email
        self.password = password
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.access_token: Optional[str] = None
        self.error = None

    def _request(
        self, path: str, params: Dict[str, Any], authenticated: bool = True
    ) -> Dict[str, Any]:
        """POST form-encoded params and decode the JSON response.

        Raises:
            CloudClientError: On network errors, HTTP errors or invalid JSON.
        """
        headers = {"Content-Type": "application/x-www-form-urlencoded;charset=UTF-8"}
        if authenticated:
            if not self.access_token:
                message = "cloud session is not connected"
                raise CloudClientError(message)
            headers["Authorization"] = f"Bearer {self.access_token}"

        request = urllib.request.Request(
            url=f"{self.api_base_url}{path}",
            data=urllib.parse.urlencode(params).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = ""
            try:
                detail = exc.read().decode("utf-8", errors="replace")[:240]
            except OSError:
                pass
            message = f"{path} failed with HTTP {exc.code}: {detail}".rstrip(": ")
            raise CloudClientError(message) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            message = f"{path} failed: {exc}"
            raise CloudClientError(message) from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            message = f"{path} returned invalid JSON"
            raise CloudClientError(message) from exc
        if not isinstance(payload, dict):
            message = f"{path} returned a non-object response"
            raise CloudClientError(message)
        return payload

    def connect(self) -> bool:
        try:
            payload = self._request(
                TOKEN_PATH,
                {
                    "grant_type": "password",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "username": self.email,
                    "password": self.password,
                    "scope": CAMERA_SCOPES,
                },
                authenticated=False,
            )
        except CloudClientError as exc:
            self.error = str(exc)
            logger.warning("cloud_connect_failed: reason=%s", self.error)
            with sentry_sdk.new_scope() as scope:
                scope.set_tag("component", "cloud_client")
                scope.capture_exception(exc)
            return False

        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            self.error = str(payload.get("error") or "no access token in response")
            logger.warning("cloud_connect_failed: reason=%s", self.error)
            return False

        self.access_token = token
        self.error = None
        logger.info("cloud_connect_ok: api=%s", self.api_base_url)
        return True

    def list_cameras(self) -> List[Dict[str, Any]]:
        payload = self._request(HOME_DATA_PATH, {})
        body = payload.get("body")
        homes = body.get("homes") if isinstance(body, dict) else None
        if not isinstance(homes, list):
            homes = []
        cameras: List[Dict[str, Any]] = []
        for home in homes:
            if not isinstance(home, dict):
                continue
            for camera in home.get("cameras") or []:
                if isinstance(camera, dict) and camera.get("id"):
                    cameras.append(_camera_from_home_data(camera))
        logger.debug("cloud_list_cameras: homes=%s cameras=%s", len(homes), len(cameras))
        return cameras

    def set_webhook(self, url: str) -> Dict[str, Any]:
        try:
            return self._request(ADD_WEBHOOK_PATH, {"url": url, "app_types": WEBHOOK_APP_TYPE})
        except CloudClientError as exc:
            self.error = str(exc)
            logger.warning("cloud_set_webhook_failed: reason=%s", self.error)
            return {"status": "error", "error": self.error}

    def drop_webhook(self) -> Dict[str, Any]:
        try:
            return self._request(DROP_WEBHOOK_PATH, {"app_types": WEBHOOK_APP_TYPE})
        except CloudClientError as exc:
            # Nothing registered yet is the common case here.
            logger.info("cloud_drop_webhook_failed: reason=%s", exc)
            return {"status": "error", "error": str(exc)}


def netatmo_client_factory(config) -> CameraCloudClient:
    return NetatmoCloudClient(
        email=config.email,
        password=config.password,
        client_id=config.client_id,
        client_secret=config.client_secret,
    )
