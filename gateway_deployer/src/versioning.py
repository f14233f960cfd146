from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, NamedTuple

# Annotation written on the Gateway by the controller that last took ownership.
# The number has no meaning other than "larger numbers win"; it lets several
# controller builds coexist (e.g. during a rolling upgrade) without fighting
# over the same Gateway.
CONTROLLER_VERSION_ANNOTATION = "gateway.istio.io/controller-version"

# Known versions: 1 (or no annotation at all) for the oldest builds, 5 for the
# current one. 2-4 are intentionally unused so a version can be inserted
# between them if ever needed.
CONTROLLER_VERSION = 5

GATEWAY_API_VERSION = "gateway.networking.k8s.io/v1beta1"

_VERSION_PATTERN = re.compile(r"[+-]?[0-9]+")


class VersionDecision(NamedTuple):
    """Outcome of comparing a Gateway's ownership marker with our version.

    ``existing`` is the raw annotation value (``""`` when absent) and is only
    used for logging.  ``take_over`` means the marker must be (re)written with
    our version; ``manage`` means this process should reconcile the Gateway.
    """

    existing: str
    take_over: bool
    manage: bool


def resolve_controller_version(
    annotations: Mapping[str, str] | None,
    current: int = CONTROLLER_VERSION,
) -> VersionDecision:
    """Decide whether this controller owns a Gateway, given its annotations."""
    annotations = annotations or {}
    if CONTROLLER_VERSION_ANNOTATION not in annotations:
        return VersionDecision(existing="", take_over=True, manage=True)

    existing = annotations[CONTROLLER_VERSION_ANNOTATION]
    if not isinstance(existing, str) or _VERSION_PATTERN.fullmatch(existing) is None:
        # Some scheme we do not understand; leave it alone.
        return VersionDecision(existing=str(existing), take_over=False, manage=False)
    parsed = int(existing)

    if parsed > current:
        return VersionDecision(existing=existing, take_over=False, manage=False)
    if parsed == current:
        # Already ours. Rewriting would only race with equal-version writers.
        return VersionDecision(existing=existing, take_over=False, manage=True)
    return VersionDecision(existing=existing, take_over=True, manage=True)


def controller_version_patch(
    name: str,
    namespace: str,
    version: int = CONTROLLER_VERSION,
) -> dict[str, Any]:
    """Return the apply body that stamps *version* on a Gateway.

    Only the annotation is included so a force-apply under our field manager
    owns exactly that one field of the user's object.
    """
    return {
        "apiVersion": GATEWAY_API_VERSION,
        "kind": "Gateway",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": {CONTROLLER_VERSION_ANNOTATION: str(version)},
        },
    }
