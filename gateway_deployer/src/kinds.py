from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NamedTuple

from gateway_deployer.src.errors import UnknownResourceError


class GroupVersionResource(NamedTuple):
    group: str
    version: str
    resource: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return f"{self.api_version}/{self.resource}"


# Every kind a gateway template may render, keyed by (apiVersion, kind).
_RESOURCES: dict[tuple[str, str], GroupVersionResource] = {
    ("v1", "Service"): GroupVersionResource("", "v1", "services"),
    ("v1", "ServiceAccount"): GroupVersionResource("", "v1", "serviceaccounts"),
    ("v1", "ConfigMap"): GroupVersionResource("", "v1", "configmaps"),
    ("apps/v1", "Deployment"): GroupVersionResource("apps", "v1", "deployments"),
    ("autoscaling/v2", "HorizontalPodAutoscaler"): GroupVersionResource(
        "autoscaling", "v2", "horizontalpodautoscalers"
    ),
    ("policy/v1", "PodDisruptionBudget"): GroupVersionResource(
        "policy", "v1", "poddisruptionbudgets"
    ),
    ("gateway.networking.k8s.io/v1beta1", "Gateway"): GroupVersionResource(
        "gateway.networking.k8s.io", "v1beta1", "gateways"
    ),
    ("gateway.networking.k8s.io/v1", "Gateway"): GroupVersionResource(
        "gateway.networking.k8s.io", "v1", "gateways"
    ),
    ("gateway.networking.k8s.io/v1beta1", "GatewayClass"): GroupVersionResource(
        "gateway.networking.k8s.io", "v1beta1", "gatewayclasses"
    ),
    ("gateway.networking.k8s.io/v1", "GatewayClass"): GroupVersionResource(
        "gateway.networking.k8s.io", "v1", "gatewayclasses"
    ),
}

GATEWAY_RESOURCE = _RESOURCES[("gateway.networking.k8s.io/v1beta1", "Gateway")]
GATEWAY_CLASS_RESOURCE = _RESOURCES[("gateway.networking.k8s.io/v1beta1", "GatewayClass")]


def resolve_resource(document: Mapping[str, Any]) -> GroupVersionResource:
    """Return the resource type for a manifest from its ``apiVersion`` and ``kind``."""
    api_version = str(document.get("apiVersion") or "")
    kind = str(document.get("kind") or "")
    try:
        return _RESOURCES[(api_version, kind)]
    except KeyError:
        raise UnknownResourceError(
            f"unknown resource type for apiVersion={api_version!r} kind={kind!r}"
        ) from None
