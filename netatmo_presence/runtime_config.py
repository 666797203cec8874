import hashlib
import logging
import os
import socket
import uuid
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 3600.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_PROBE_PORT = 80
DEFAULT_REFRESH_RATE = 15

# Instance properties that may be seeded from the environment.
PROPERTY_SEED_ENV_VARS = {
    "email": "NPB_EMAIL",
    "password": "NPB_PASSWORD",
    "client_id": "NPB_CLIENT_ID",
    "client_secret": "NPB_CLIENT_SECRET",
    "ip": "NPB_IP",
    "url": "NPB_URL",
}


def _stable_instance_id(hostname: str) -> str:
    """Generate a stable instance ID based on hostname and MAC address.

    Args:
        hostname: System hostname.

    Returns:
        Stable instance ID string (consistent across restarts).
    """
    mac = f"{uuid.getnode():012x}"
    digest = hashlib.sha256(f"{hostname}-{mac}".encode()).hexdigest()
    return digest[:16]


def _parse_bool(raw_value: Optional[str]) -> bool:
    if raw_value is None:
        return False
    return raw_value.strip().lower() in ("1", "true", "yes", "on")


def _load_networking_config() -> Dict[str, Any]:
    """Load network binding configuration from environment variables.

    Env vars:
    - NPB_BIND_HOST (default: 127.0.0.1)
    - NPB_PORT (1-65535, default: 8000)
    - NPB_BASE_URL (default: http://hostname:8000)

    Returns:
        Dict with keys: bind_host, port, base_url.
    """
    bind_host = os.environ.get("NPB_BIND_HOST", "127.0.0.1").strip() or "127.0.0.1"
    try:
        port = int(os.environ.get("NPB_PORT", "8000"))
    except ValueError:
        port = 8000
    if not 1 <= port <= 65535:
        port = 8000

    default_base_url = f"http://{socket.gethostname()}:8000"
    base_url = os.environ.get("NPB_BASE_URL", default_base_url).strip() or default_base_url

    return {
        "bind_host": bind_host,
        "port": port,
        "base_url": base_url,
    }


def _load_polling_config() -> Dict[str, Any]:
    """Load timer and reachability probe configuration.

    Env vars:
    - NPB_POLL_INTERVAL_SECONDS (>0, default: 3600)
    - NPB_PROBE_TIMEOUT_SECONDS (>0, default: 5.0)
    - NPB_PROBE_PORT (1-65535, default: 80)

    Invalid values fall back to documented defaults without raising.
    """
    raw_interval = os.environ.get("NPB_POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS))
    try:
        poll_interval = float(raw_interval)
    except ValueError:
        logger.warning(
            "Invalid NPB_POLL_INTERVAL_SECONDS value '%s', using default %s",
            raw_interval,
            DEFAULT_POLL_INTERVAL_SECONDS,
        )
        poll_interval = DEFAULT_POLL_INTERVAL_SECONDS
    if poll_interval <= 0:
        poll_interval = DEFAULT_POLL_INTERVAL_SECONDS

    try:
        probe_timeout = float(
            os.environ.get("NPB_PROBE_TIMEOUT_SECONDS", str(DEFAULT_PROBE_TIMEOUT_SECONDS))
        )
    except ValueError:
        probe_timeout = DEFAULT_PROBE_TIMEOUT_SECONDS
    if probe_timeout <= 0:
        probe_timeout = DEFAULT_PROBE_TIMEOUT_SECONDS

    try:
        probe_port = int(os.environ.get("NPB_PROBE_PORT", str(DEFAULT_PROBE_PORT)))
    except ValueError:
        probe_port = DEFAULT_PROBE_PORT
    if not 1 <= probe_port <= 65535:
        probe_port = DEFAULT_PROBE_PORT

    return {
        "poll_interval_seconds": poll_interval,
        "probe_timeout_seconds": probe_timeout,
        "probe_port": probe_port,
    }


def _load_property_seeds() -> Dict[str, Any]:
    """Load default values for instance properties not yet persisted.

    Env vars: NPB_EMAIL, NPB_PASSWORD, NPB_CLIENT_ID, NPB_CLIENT_SECRET,
    NPB_IP, NPB_URL, NPB_REFRESH_RATE. Empty values are left out.
    """
    seeds: Dict[str, Any] = {}
    for key, env_var in PROPERTY_SEED_ENV_VARS.items():
        value = os.environ.get(env_var, "").strip()
        if value:
            seeds[key] = value

    raw_refresh_rate = os.environ.get("NPB_REFRESH_RATE", str(DEFAULT_REFRESH_RATE))
    try:
        refresh_rate = int(raw_refresh_rate)
    except ValueError:
        refresh_rate = DEFAULT_REFRESH_RATE
    seeds["refresh_rate"] = refresh_rate if refresh_rate > 0 else DEFAULT_REFRESH_RATE
    return seeds


def _load_advanced_config() -> Dict[str, Any]:
    """Load storage, auth and observability configuration.

    Env vars:
    - NPB_INSTANCE_ID (default: stable digest of hostname and MAC)
    - NPB_SETTINGS_PATH (default: /data/instance-settings.json)
    - NPB_OBJECT_TREE_PATH (default: /data/object-tree.json)
    - NPB_CONTROL_AUTH_TOKEN (bearer token guarding /api/*, empty = open)
    - NPB_SENTRY_DSN (optional)
    """
    instance_id = os.environ.get("NPB_INSTANCE_ID", "").strip()
    if not instance_id:
        instance_id = _stable_instance_id(socket.gethostname())

    return {
        "instance_id": instance_id,
        "settings_path": os.environ.get("NPB_SETTINGS_PATH", "/data/instance-settings.json"),
        "object_tree_path": os.environ.get("NPB_OBJECT_TREE_PATH", "/data/object-tree.json"),
        "control_auth_token": os.environ.get("NPB_CONTROL_AUTH_TOKEN", "").strip(),
        "sentry_dsn": os.environ.get("NPB_SENTRY_DSN", "").strip() or None,
    }


def _load_logging_config() -> Dict[str, Any]:
    return {
        "log_level": os.environ.get("NPB_LOG_LEVEL", "INFO"),
        "log_format": os.environ.get("NPB_LOG_FORMAT", "text"),
        "log_include_identifiers": _parse_bool(
            os.environ.get("NPB_LOG_INCLUDE_IDENTIFIERS", "false")
        ),
    }


def load_env_config() -> Dict[str, Any]:
    """Load all configuration from environment variables.

    Returns:
        Flat configuration dict assembled from the ``_load_*_config()``
        helpers, plus ``property_defaults`` holding the seeded instance
        properties. The ``url`` property defaults to ``base_url``.
    """
    config: Dict[str, Any] = {}
    config.update(_load_networking_config())
    config.update(_load_polling_config())
    config.update(_load_advanced_config())
    config.update(_load_logging_config())

    property_defaults = _load_property_seeds()
    property_defaults.setdefault("url", config["base_url"])
    config["property_defaults"] = property_defaults
    return config
