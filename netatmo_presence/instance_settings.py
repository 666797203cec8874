"""
Instance Settings Management
Persists the bridge instance's configuration properties and last diagnostic
status to disk (/data/instance-settings.json).
Follows the same file-locking pattern as object_tree.py for atomic operations.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional

import sentry_sdk


try:
    import fcntl
except ImportError:  # pragma: no cover - unavailable on non-POSIX
    fcntl = None

try:
    import msvcrt
except ImportError:  # pragma: no cover - unavailable on non-Windows
    msvcrt = None


logger = logging.getLogger(__name__)

STRING_PROPERTIES = ("email", "password", "client_id", "client_secret", "url", "ip")
INTEGER_PROPERTIES = ("refresh_rate",)
SECRET_PROPERTIES = ("password", "client_secret")
DEFAULT_REFRESH_RATE = 15

_ERROR_ROOT_NOT_DICT = "Root must be a dict"
_ERROR_PROPERTIES_NOT_DICT = "'properties' must be a dict"
_ERROR_STATUS_NOT_DICT = "'status' must be a dict"


class SettingsValidationError(ValueError):
    """Raised when settings validation fails."""


def _permission_guidance(path: Path, operation: str) -> str:
    """Build actionable guidance for permission-denied settings operations."""
    return (
        f"Permission denied while {operation} at '{path}'. "
        "Check /data mount ownership and write permissions for the service user, "
        "or set NPB_SETTINGS_PATH to a writable location "
        "(for example, ./data/instance-settings.json)."
    )


def validate_property(key: str, value: Any) -> Any:
    """Validate one instance property value.

    Args:
        key: Property name.
        value: Candidate value. None means "unset".

    Returns:
        The value, stripped when it is a string.

    Raises:
        SettingsValidationError: If the key is unknown or the type is wrong.
    """
    if value is None:
        return None
    if key in STRING_PROPERTIES:
        if not isinstance(value, str):
            message = f"Property '{key}' must be a string"
            raise SettingsValidationError(message)
        return value if key in SECRET_PROPERTIES else value.strip()
    if key in INTEGER_PROPERTIES:
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            message = f"Property '{key}' must be a positive integer"
            raise SettingsValidationError(message)
        return value
    message = f"Unknown property '{key}'"
    raise SettingsValidationError(message)


class InstanceSettings:
    """
    Manages the persistent properties of one bridge instance stored in JSON.

    Properties mirror the host platform's registered properties:
    email, password, client_id, client_secret, url, ip, refresh_rate.
    A property that was never written resolves to its registered default.

    Uses file-based locking so each mutating operation performs an atomic
    read-modify-write cycle across threads/processes.
    """

    DEFAULT_SCHEMA: ClassVar = {
        "version": 1,
        "properties": {key: None for key in STRING_PROPERTIES + INTEGER_PROPERTIES},
        "status": {
            "code": None,
            "last_error": None,
            "updated_at": None,
        },
        "last_modified": None,
        "modified_by": "system",
    }

    def __init__(
        self,
        path: str = "/data/instance-settings.json",
        defaults: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize InstanceSettings with file path and registered defaults.

        Args:
            path: Path to JSON settings file.
            defaults: Registered property defaults used when a property is unset.
        """
        self.path = Path(path)
        self.defaults: Dict[str, Any] = {
            "email": "",
            "password": "",
            "client_id": "",
            "client_secret": "",
            "url": "",
            "ip": "",
            "refresh_rate": DEFAULT_REFRESH_RATE,
        }
        self.defaults.update(defaults or {})
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Subsequent operations raise actionable errors as needed.
            logger.debug("Could not create settings directory %s: %s", self.path.parent, e)

    def load(self) -> Dict[str, Any]:
        """
        Load settings from disk. Returns merged schema with persisted values.

        Raises:
            SettingsValidationError: If file is corrupted or invalid
        """
        try:
            with self._exclusive_lock():
                return self._load_unlocked()
        except SettingsValidationError:
            raise
        except Exception as exc:
            logger.error("Failed to load settings: %s", exc)
            message = f"Failed to load settings: {exc}"
            raise SettingsValidationError(message) from exc

    def _load_unlocked(self) -> Dict[str, Any]:
        """Load settings from disk without acquiring the file lock."""
        if not self.path.exists():
            return self._clone_schema()

        try:
            try:
                content = self.path.read_text(encoding="utf-8").strip()
            except PermissionError as exc:
                message = _permission_guidance(self.path, "reading settings file")
                logger.error(message)
                raise SettingsValidationError(message) from exc
            except (FileNotFoundError, OSError):
                return self._clone_schema()

            if not content:
                return self._clone_schema()

            raw = json.loads(content)
            self._validate_settings_structure(raw)

            schema = self._clone_schema()
            schema["properties"].update(
                {k: v for k, v in raw["properties"].items() if k in schema["properties"]}
            )
            schema["status"].update(
                {k: v for k, v in raw.get("status", {}).items() if k in schema["status"]}
            )
            if raw.get("last_modified"):
                schema["last_modified"] = raw["last_modified"]
            if raw.get("modified_by"):
                schema["modified_by"] = raw["modified_by"]

        except json.JSONDecodeError as exc:
            logger.error("Corrupted settings file %s: %s", self.path, exc)
            message = f"Corrupted settings file: {exc}"
            raise SettingsValidationError(message) from exc
        else:
            return schema

    def read_properties(self) -> Dict[str, Any]:
        """Resolve every property, falling back to registered defaults."""
        persisted = self.load()["properties"]
        return {
            key: self.defaults.get(key) if value is None else value
            for key, value in persisted.items()
        }

    def get_property(self, key: str) -> Any:
        return self.read_properties()[key] if key in self.defaults else None

    def set_property(self, key: str, value: Any, modified_by: str = "system") -> None:
        """
        Set a single property value and persist.

        Raises:
            SettingsValidationError: If key unknown or value invalid
        """
        self.update_properties({key: value}, modified_by=modified_by)

    def update_properties(self, updates: Dict[str, Any], modified_by: str = "system") -> None:
        """
        Update multiple properties in one locked read-modify-write.

        Raises:
            SettingsValidationError: If any key or value is invalid
        """
        validated = {key: validate_property(key, value) for key, value in updates.items()}

        with sentry_sdk.new_scope() as scope:
            scope.set_tag("component", "settings")
            scope.set_context("settings_operation", {"modified_by": modified_by})

            with self._exclusive_lock():
                data = self._load_unlocked()
                data["properties"].update(validated)
                data["last_modified"] = datetime.now(timezone.utc).isoformat()
                data["modified_by"] = modified_by
                self._save_atomic(data)
        logger.info("Properties %s saved by %s", ", ".join(sorted(validated)), modified_by)

    def get_status(self) -> Dict[str, Any]:
        return self.load()["status"]

    def set_status(self, code: int, last_error: Optional[str] = None) -> None:
        """Persist the last diagnostic status code reported to the host."""
        with self._exclusive_lock():
            data = self._load_unlocked()
            data["status"] = {
                "code": code,
                "last_error": last_error,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            self._save_atomic(data)

    def masked_properties(self) -> Dict[str, Any]:
        """Return properties with secrets replaced for display."""
        properties = self.read_properties()
        for key in SECRET_PROPERTIES:
            if properties.get(key):
                properties[key] = "********"
        return properties

    def reset(self, modified_by: str = "system") -> None:
        """
        Clear all persisted settings; revert to registered defaults.
        """
        with self._exclusive_lock():
            if self.path.exists():
                try:
                    self.path.unlink()
                except PermissionError as exc:
                    message = _permission_guidance(self.path, "resetting settings file")
                    logger.error(message)
                    raise SettingsValidationError(message) from exc
            logger.info("Settings reset to defaults by %s", modified_by)

    @staticmethod
    def _clone_schema() -> Dict[str, Any]:
        """Create a copy of default schema."""
        return json.loads(json.dumps(InstanceSettings.DEFAULT_SCHEMA))

    @staticmethod
    def _validate_settings_structure(data: Dict[str, Any]) -> None:
        """Validate settings structure before use."""
        if not isinstance(data, dict):
            raise SettingsValidationError(_ERROR_ROOT_NOT_DICT)

        if data.get("version") != 1:
            version = data.get("version")
            message = f"Unsupported schema version: {version}"
            raise SettingsValidationError(message)

        if not isinstance(data.get("properties"), dict):
            raise SettingsValidationError(_ERROR_PROPERTIES_NOT_DICT)

        if not isinstance(data.get("status", {}), dict):
            raise SettingsValidationError(_ERROR_STATUS_NOT_DICT)

    def _save_atomic(self, data: Dict[str, Any]) -> None:
        """Save data to file atomically using temp file + rename."""
        try:
            with tempfile.NamedTemporaryFile(
                "w", delete=False, dir=self.path.parent, encoding="utf-8", suffix=".tmp"
            ) as temp:
                json.dump(data, temp, indent=2)
                temp.flush()
                os.fsync(temp.fileno())
                temp_path = temp.name
            Path(temp_path).replace(self.path)
        except PermissionError as exc:
            message = _permission_guidance(self.path, "writing settings file")
            logger.error(message)
            raise SettingsValidationError(message) from exc

    @contextmanager
    def _exclusive_lock(self):
        """Context manager for exclusive file-based locking."""
        lock_path = self.path.parent / f"{self.path.name}.lock"
        try:
            with lock_path.open("a+b") as lock_file:
                if fcntl is not None:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                    try:
                        yield
                    finally:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                    return

                if msvcrt is not None:
                    file_size = lock_file.seek(0, 2)
                    if file_size == 0:
                        lock_file.write(b"\0")
                        lock_file.flush()
                    lock_file.seek(0)
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                    try:
                        yield
                    finally:
                        lock_file.seek(0)
                        msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                    return

                message = "No supported file-lock backend available for this platform"
                raise RuntimeError(message)
        except PermissionError as exc:
            message = _permission_guidance(lock_path, "acquiring settings lock")
            logger.error(message)
            raise SettingsValidationError(message) from exc
