from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import yaml

from gateway_deployer.src.errors import ApplyError, ManifestDecodeError, UnknownResourceError
from gateway_deployer.src.kinds import GroupVersionResource, resolve_resource
from gateway_deployer.src.metrics import METRICS

# Label stamped on every generated object; its value names the controller.
MANAGED_LABEL = "gateway.istio.io/managed"

LOGGER = logging.getLogger(__name__)


class Patcher(Protocol):
    """Force-applies a serialized object under the controller's field manager."""

    def __call__(
        self,
        gvr: GroupVersionResource,
        name: str,
        namespace: str,
        body: bytes,
    ) -> None: ...


def managed_label_value(controller: str) -> str:
    return controller.replace("/", "-")


def decode_manifest(manifest: str) -> dict[str, Any]:
    try:
        document = yaml.safe_load(manifest)
    except yaml.YAMLError as exc:
        raise ManifestDecodeError(f"decode manifest: {exc}") from exc
    if not isinstance(document, Mapping):
        raise ManifestDecodeError(
            f"decode manifest: expected a mapping, got {type(document).__name__}"
        )
    return dict(document)


def set_managed_label(document: dict[str, Any], controller: str) -> None:
    metadata = document.get("metadata")
    if metadata is None:
        metadata = document["metadata"] = {}
    if not isinstance(metadata, dict):
        raise ManifestDecodeError("decode manifest: metadata must be a mapping")
    labels = metadata.get("labels")
    if labels is None:
        labels = metadata["labels"] = {}
    if not isinstance(labels, dict):
        raise ManifestDecodeError("decode manifest: metadata.labels must be a mapping")
    labels[MANAGED_LABEL] = managed_label_value(controller)


class Applier:
    """Applies rendered manifests to the cluster.

    Each manifest is decoded, labelled as managed by *controller*, resolved
    to its resource type and force-applied.  Nothing is retried here: a
    failure surfaces to the reconciler and from there to the work queue.
    """

    def __init__(self, patcher: Patcher) -> None:
        self.patcher = patcher

    def apply(self, controller: str, manifest: str) -> GroupVersionResource:
        document = decode_manifest(manifest)
        set_managed_label(document, controller)

        metadata = document["metadata"]
        api_version = str(document.get("apiVersion") or "")
        kind = str(document.get("kind") or "")
        name = str(metadata.get("name") or "")
        namespace = str(metadata.get("namespace") or "")
        try:
            gvr = resolve_resource(document)
        except UnknownResourceError as exc:
            raise UnknownResourceError(
                f"patch {api_version}, Kind={kind}/{namespace}/{name}: {exc}"
            ) from exc
        body = json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")

        LOGGER.debug("Applying %s %s/%s", kind, namespace, name)
        try:
            self.patcher(gvr, name, namespace, body)
        except Exception as exc:
            raise ApplyError(
                f"patch {gvr.api_version}, Kind={kind}/{namespace}/{name}: {exc}"
            ) from exc
        METRICS.applies_total.labels(kind=kind).inc()
        return gvr
