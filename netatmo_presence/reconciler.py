"""Idempotent projection of camera polls and webhook pushes onto the object tree.

Every write goes through ``NodeRepository.upsert_node`` keyed by
``(parent_id, ident)``, so replaying the same data never creates duplicates.
Identifiers are the semantic keys themselves (camera id, attribute name,
payload key); display names are stored but never used for lookups.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union, cast

from .object_tree import ROOT_PARENT_ID, NodeRepository


logger = logging.getLogger(__name__)

ScalarType = Union[str, int, float, bool, None]

# Attribute order drives leaf positions; keep it stable.
CAMERA_ATTRIBUTES = (
    "name",
    "type",
    "status",
    "sd_status",
    "alim_status",
    "light_mode_status",
    "is_local",
    "snapshot_local",
    "snapshot_vpn",
)
CAMERA_CATEGORY_INFO = "Camera"
WEBHOOK_CATEGORY_IDENT = "Webhook"
SNAPSHOT_IMAGE_IDENT = "snapshot"
SNAPSHOT_IMAGE_NAME = "Snapshot"
IMAGE_TYPE_URL = 1
MAX_PAYLOAD_DEPTH = 2


@dataclass(frozen=True)
class CameraRecord:
    id: str
    name: str
    type: Optional[str] = None
    status: Optional[str] = None
    sd_status: Optional[str] = None
    alim_status: Optional[str] = None
    light_mode_status: Optional[str] = None
    is_local: Optional[bool] = None
    snapshot_local: Optional[str] = None
    snapshot_vpn: Optional[str] = None


@dataclass(frozen=True)
class PayloadScalar:
    value: ScalarType


@dataclass(frozen=True)
class PayloadMapping:
    entries: Tuple[Tuple[str, "PayloadValue"], ...] = ()
    truncated: bool = False


PayloadValue = Union[PayloadScalar, PayloadMapping]


def _parse_value(value: Any, depth: int) -> PayloadValue:
    if isinstance(value, (dict, list)):
        if depth >= MAX_PAYLOAD_DEPTH:
            return PayloadMapping(truncated=True)
        items = value.items() if isinstance(value, dict) else enumerate(value)
        return PayloadMapping(
            entries=tuple((str(key), _parse_value(inner, depth + 1)) for key, inner in items)
        )
    if value is None or isinstance(value, (str, int, float, bool)):
        return PayloadScalar(value)
    return PayloadScalar(str(value))


def parse_payload(raw: Any) -> PayloadMapping:
    """Convert decoded JSON into the bounded payload variant.

    Objects and arrays (arrays keyed by index) become ``PayloadMapping``.
    Anything nested deeper than two levels collapses into an empty, truncated
    mapping so the reconciler still sees a mapping and skips it.

    Args:
        raw: Decoded JSON document.

    Returns:
        Top-level mapping.

    Raises:
        ValueError: If the document is not a JSON object.
    """
    if not isinstance(raw, dict):
        message = "webhook payload must be a JSON object"
        raise ValueError(message)
    return cast(PayloadMapping, _parse_value(raw, 0))


class ObjectTreeReconciler:
    """Maps camera records and webhook payloads onto persisted tree nodes."""

    def __init__(self, repository: NodeRepository, root_id: int = ROOT_PARENT_ID, lock=None):
        self.repository = repository
        self.root_id = root_id
        self._lock = lock

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    def _upsert_category(
        self, parent_id: int, ident: str, name: Optional[str] = None, info: Optional[str] = None
    ) -> Dict[str, Any]:
        create_value: Dict[str, Any] = {"kind": "category", "name": name or ident}
        # A key that switches from scalar to mapping drops its old value.
        patch_value: Dict[str, Any] = {"kind": "category", "value": None}
        if name:
            patch_value["name"] = name
        if info is not None:
            create_value["info"] = info
            patch_value["info"] = info
        return self.repository.upsert_node(parent_id, ident, create_value, patch_value)

    def _upsert_variable(
        self, parent_id: int, ident: str, value: ScalarType, position: Optional[int] = None
    ) -> Dict[str, Any]:
        create_value: Dict[str, Any] = {"kind": "variable", "name": ident, "value": value}
        patch_value: Dict[str, Any] = {"kind": "variable", "value": value}
        if position is not None:
            create_value["position"] = position
            patch_value["position"] = position
        return self.repository.upsert_node(parent_id, ident, create_value, patch_value)

    def _upsert_image(
        self,
        category_id: int,
        url: Optional[str],
        position: int,
        fallback_url: Optional[str],
        refresh_rate: int,
    ) -> Dict[str, Any]:
        properties = {
            "image_type": IMAGE_TYPE_URL,
            "image_address": url or fallback_url,
            "fallback_address": fallback_url,
            "interval": refresh_rate,
        }
        return self.repository.upsert_node(
            category_id,
            SNAPSHOT_IMAGE_IDENT,
            {
                "kind": "image",
                "name": SNAPSHOT_IMAGE_NAME,
                "position": position,
                "properties": properties,
            },
            {"kind": "image", "position": position, "properties": properties},
        )

    def ensure_webhook_category(self) -> Dict[str, Any]:
        with self._guard():
            return self._upsert_category(self.root_id, WEBHOOK_CATEGORY_IDENT)["node"]

    def reconcile_poll(
        self, cameras: Sequence[CameraRecord], refresh_rate: int = 15
    ) -> Dict[str, int]:
        """Mirror a poll cycle's cameras into the tree.

        Each camera gets a category keyed by its id. Attributes become leaves
        positioned by their index in ``CAMERA_ATTRIBUTES``; the snapshot image
        resource is written just before the ``snapshot_local`` leaf and shares
        its position.

        Args:
            cameras: Camera records in the order returned by the cloud.
            refresh_rate: Image refresh interval in seconds.

        Returns:
            Counts of created and updated nodes.
        """
        counts = {"created": 0, "updated": 0}
        with self._guard():
            for camera in cameras:
                category = self._upsert_category(
                    self.root_id, camera.id, name=camera.name, info=CAMERA_CATEGORY_INFO
                )
                counts[category["upserted"]] += 1
                category_id = category["node"]["id"]

                for position, attribute in enumerate(CAMERA_ATTRIBUTES):
                    value = getattr(camera, attribute)
                    if attribute == "snapshot_local":
                        image = self._upsert_image(
                            category_id, value, position, camera.snapshot_vpn, refresh_rate
                        )
                        counts[image["upserted"]] += 1

                    leaf = self._upsert_variable(category_id, attribute, value, position)
                    counts[leaf["upserted"]] += 1

        logger.info(
            "reconcile_poll: cameras=%s created=%s updated=%s",
            len(cameras),
            counts["created"],
            counts["updated"],
        )
        return counts

    def reconcile_webhook(self, payload: PayloadMapping) -> Dict[str, int]:
        """Mirror a webhook payload under the root "Webhook" category.

        Top-level mappings become subcategories holding their scalar entries;
        mappings nested inside them are skipped. Top-level scalars become
        leaves directly under "Webhook". Empty keys cannot be node identifiers
        and are skipped. A key that changes shape between pushes keeps its
        node: the latest kind wins, and children written while it was a
        category stay in place.

        Returns:
            Counts of created and updated nodes plus skipped entries.
        """
        counts = {"created": 0, "updated": 0, "skipped": 0}
        with self._guard():
            webhook_id = self._upsert_category(self.root_id, WEBHOOK_CATEGORY_IDENT)["node"]["id"]

            for key, value in payload.entries:
                if not key:
                    counts["skipped"] += 1
                    continue
                if isinstance(value, PayloadMapping):
                    sub_category = self._upsert_category(webhook_id, key)
                    counts[sub_category["upserted"]] += 1
                    for inner_key, inner_value in value.entries:
                        if not inner_key or isinstance(inner_value, PayloadMapping):
                            counts["skipped"] += 1
                            continue
                        leaf = self._upsert_variable(
                            sub_category["node"]["id"], inner_key, inner_value.value
                        )
                        counts[leaf["upserted"]] += 1
                else:
                    leaf = self._upsert_variable(webhook_id, key, value.value)
                    counts[leaf["upserted"]] += 1

        logger.info(
            "reconcile_webhook: keys=%s created=%s updated=%s skipped=%s",
            len(payload.entries),
            counts["created"],
            counts["updated"],
            counts["skipped"],
        )
        return counts

