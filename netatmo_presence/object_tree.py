import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


try:
    import fcntl
except ImportError:  # pragma: no cover - unavailable on non-POSIX
    fcntl = None

try:
    import msvcrt
except ImportError:  # pragma: no cover - unavailable on non-Windows
    msvcrt = None


logger = logging.getLogger(__name__)


# Object tree schema and validation constants
ROOT_PARENT_ID = 0
REQUIRED_NODE_FIELDS = {"parent_id", "ident", "name", "kind"}
OPTIONAL_NODE_FIELDS = {"position", "value", "info", "properties"}
ALLOWED_NODE_KINDS = {"category", "variable", "image"}


class NodeRepositoryError(ValueError):
    """Exception raised for object node validation or repository operation errors.

    Used to wrap validation failures, permission issues, or file corruption errors.
    """


def value_type_for(value: Any) -> str:
    """Classify a leaf value the way the host stores variable types.

    Args:
        value: Scalar leaf value.

    Returns:
        One of "boolean", "integer", "float", "string" or "none".
    """
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    return "string"


class NodeRepository(ABC):
    """Abstract base class for persisted object tree implementations.

    Nodes are addressed by a numeric id and identified among their siblings by
    ``(parent_id, ident)``. Implementations must keep that pair unique.
    """

    @abstractmethod
    def list_nodes(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """List nodes, optionally restricted to the children of one parent.

        Args:
            parent_id: Parent node id, or None for the whole tree.

        Returns:
            List of node dictionaries ordered by position then id.
        """
        raise NotImplementedError

    @abstractmethod
    def get_node(self, node_id: int) -> Optional[Dict[str, Any]]:
        """Get node by id.

        Args:
            node_id: Numeric node id.

        Returns:
            Node dictionary or None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def find_node(self, parent_id: int, ident: str) -> Optional[Dict[str, Any]]:
        """Find the child of ``parent_id`` carrying identifier ``ident``.

        Returns:
            Node dictionary or None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert_node(
        self,
        parent_id: int,
        ident: str,
        create_value: Dict[str, Any],
        patch_value: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Create node if not exists, else update with patch.

        Args:
            parent_id: Parent node id.
            ident: Identifier unique among the parent's children.
            create_value: Data for node creation (if new).
            patch_value: Data for node update (if exists).

        Returns:
            Dict with 'node' and 'upserted' keys ("created" or "updated").

        Raises:
            NodeRepositoryError: If validation fails.
        """
        raise NotImplementedError

    @abstractmethod
    def delete_node(self, node_id: int) -> bool:
        """Delete a node and its whole subtree.

        Returns:
            True if deleted, False if not found.
        """
        raise NotImplementedError


def _validate_required_fields_present(node: Dict[str, Any], partial: bool) -> None:
    if not partial:
        missing = REQUIRED_NODE_FIELDS.difference(node.keys())
        if missing:
            missing_fields = ", ".join(sorted(missing))
            message = f"missing required fields: {missing_fields}"
            raise NodeRepositoryError(message)


def _validate_ident(value: Any) -> str:
    if not isinstance(value, str) or not value:
        message = "ident must be a non-empty string"
        raise NodeRepositoryError(message)
    return value


def _validate_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        message = "value must be a scalar"
        raise NodeRepositoryError(message)
    return value


def validate_node(node: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate and normalize object node data.

    Validates required fields (unless partial=True) and type-checks every known
    field. Derives ``value_type`` whenever ``value`` is present.

    Args:
        node: Node data dictionary.
        partial: If True, only provided fields are checked (for patches).

    Returns:
        Validated node dictionary restricted to known fields.

    Raises:
        NodeRepositoryError: If validation fails for any field.
    """
    if not isinstance(node, dict):
        message = "node payload must be an object"
        raise NodeRepositoryError(message)

    _validate_required_fields_present(node, partial)

    validated: Dict[str, Any] = {}

    if "parent_id" in node:
        parent_id = node["parent_id"]
        if not isinstance(parent_id, int) or isinstance(parent_id, bool) or parent_id < 0:
            message = "parent_id must be a non-negative integer"
            raise NodeRepositoryError(message)
        validated["parent_id"] = parent_id

    if "ident" in node:
        validated["ident"] = _validate_ident(node["ident"])

    if "name" in node:
        name = node["name"]
        if name is None:
            name = ""
        validated["name"] = str(name)

    if "kind" in node:
        kind = node["kind"]
        if kind not in ALLOWED_NODE_KINDS:
            message = "kind must be one of: category, image, variable"
            raise NodeRepositoryError(message)
        validated["kind"] = kind

    if "position" in node:
        position = node["position"]
        if not isinstance(position, int) or isinstance(position, bool):
            message = "position must be an integer"
            raise NodeRepositoryError(message)
        validated["position"] = position

    if "value" in node:
        validated["value"] = _validate_value(node["value"])
        validated["value_type"] = value_type_for(validated["value"])

    if "info" in node:
        info = node["info"]
        if info is not None and not isinstance(info, str):
            message = "info must be a string or null"
            raise NodeRepositoryError(message)
        validated["info"] = info

    if "properties" in node:
        properties = node["properties"]
        if not isinstance(properties, dict):
            message = "properties must be an object"
            raise NodeRepositoryError(message)
        validated["properties"] = properties

    return validated


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FileNodeRepository(NodeRepository):
    """File-based object tree with POSIX/Windows file locking.

    Stores nodes in a JSON file with exclusive locking so each mutation is an
    atomic read-modify-write cycle across threads and processes.

    Attributes:
        path: Path to JSON object tree file.

    Raises:
        NodeRepositoryError: If the directory is not writable or the file is corrupted.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            message = (
                f"Permission denied accessing object tree path: {self.path.parent}. "
                f"Set NPB_OBJECT_TREE_PATH to a writable directory "
                f"(e.g., ./data/object-tree.json)."
            )
            logger.error(message)
            raise NodeRepositoryError(message) from e

    def _load(self) -> Dict[str, Any]:
        """Load the tree from disk.

        Returns:
            Dict with "next_id" and "nodes" keys.

        Raises:
            NodeRepositoryError: If the file is corrupted.
        """
        if not self.path.exists():
            return {"next_id": 1, "nodes": []}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            message = f"object tree file is corrupted and cannot be parsed: {self.path}"
            raise NodeRepositoryError(message) from exc
        if not isinstance(raw, dict):
            return {"next_id": 1, "nodes": []}
        nodes = raw.get("nodes", [])
        if not isinstance(nodes, list):
            nodes = []
        for index, node in enumerate(nodes):
            if not isinstance(node, dict) or not isinstance(node.get("id"), int):
                message = f"object node at index {index} must be an object with an id"
                raise NodeRepositoryError(message)
        next_id = raw.get("next_id")
        highest = max((node["id"] for node in nodes), default=0)
        if not isinstance(next_id, int) or next_id <= highest:
            next_id = highest + 1
        return {"next_id": next_id, "nodes": nodes}

    def _save(self, data: Dict[str, Any]) -> None:
        """Save tree to JSON file with atomic write (temp file + rename)."""
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=self.path.parent, encoding="utf-8"
        ) as temp:
            json.dump(data, temp, indent=2)
            temp.flush()
            os.fsync(temp.fileno())
            temp_path = temp.name
        Path(temp_path).replace(self.path)

    @contextmanager
    def _exclusive_lock(self):
        """Context manager for exclusive file locking.

        Uses fcntl.flock (Unix) or msvcrt.locking (Windows). The lock file is
        created next to the tree file.

        Raises:
            RuntimeError: If no supported locking backend available.
        """
        lock_path = self.path.parent / f"{self.path.name}.lock"
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
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                return

            message = "No supported file-lock backend available for this platform"
            raise RuntimeError(message)

    def list_nodes(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._exclusive_lock():
            nodes = self._load()["nodes"]
        if parent_id is not None:
            nodes = [node for node in nodes if node.get("parent_id") == parent_id]
        return sorted(nodes, key=lambda node: (node.get("position", 0), node["id"]))

    def get_node(self, node_id: int) -> Optional[Dict[str, Any]]:
        with self._exclusive_lock():
            nodes = self._load()["nodes"]
        for node in nodes:
            if node["id"] == node_id:
                return node
        return None

    def find_node(self, parent_id: int, ident: str) -> Optional[Dict[str, Any]]:
        with self._exclusive_lock():
            nodes = self._load()["nodes"]
        for node in nodes:
            if node.get("parent_id") == parent_id and node.get("ident") == ident:
                return node
        return None

    def upsert_node(
        self,
        parent_id: int,
        ident: str,
        create_value: Dict[str, Any],
        patch_value: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Create or update a node under one exclusive lock.

        If ``(parent_id, ident)`` exists the validated patch is merged into it.
        Otherwise the node is created from ``create_value`` with the next free
        id. The parent must exist unless it is the root.

        Returns:
            Dict with keys: 'node' (the node), 'upserted' ("created" or "updated").

        Raises:
            NodeRepositoryError: If validation fails or the parent is unknown.
        """
        candidate = validate_node({**create_value, "parent_id": parent_id, "ident": ident})
        validated_patch = validate_node(patch_value, partial=True)
        validated_patch.pop("parent_id", None)
        validated_patch.pop("ident", None)

        with self._exclusive_lock():
            data = self._load()
            for index, existing in enumerate(data["nodes"]):
                if existing.get("parent_id") != parent_id or existing.get("ident") != ident:
                    continue
                merged = {**existing, **validated_patch, "updated_at": _utc_now_iso()}
                data["nodes"][index] = merged
                self._save(data)
                return {"node": merged, "upserted": "updated"}

            if parent_id != ROOT_PARENT_ID and not any(
                node["id"] == parent_id for node in data["nodes"]
            ):
                message = f"parent node {parent_id} does not exist"
                raise NodeRepositoryError(message)

            now_iso = _utc_now_iso()
            created = {
                "id": data["next_id"],
                "position": 0,
                "value": None,
                "value_type": "none",
                "info": None,
                "properties": {},
                **candidate,
                "created_at": now_iso,
                "updated_at": now_iso,
            }
            data["next_id"] += 1
            data["nodes"].append(created)
            self._save(data)
            return {"node": created, "upserted": "created"}

    def delete_node(self, node_id: int) -> bool:
        with self._exclusive_lock():
            data = self._load()
            doomed = {node_id}
            changed = True
            while changed:
                changed = False
                for node in data["nodes"]:
                    if node.get("parent_id") in doomed and node["id"] not in doomed:
                        doomed.add(node["id"])
                        changed = True
            previous_count = len(data["nodes"])
            data["nodes"] = [node for node in data["nodes"] if node["id"] not in doomed]
            if previous_count == len(data["nodes"]):
                return False
            self._save(data)
            return True
