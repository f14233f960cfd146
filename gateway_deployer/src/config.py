from __future__ import annotations

import os
from dataclasses import dataclass


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_name(name: str, default: str) -> str:
    value = os.getenv(name, default).strip()
    if not value:
        raise ValueError(f"{name} must be a non-empty string")
    return value


@dataclass(frozen=True)
class ControllerSettings:
    """Process-wide settings, read once at startup."""

    cluster_id: str = "Kubernetes"
    # Empty means Gateways in every namespace.
    watch_namespace: str = ""
    istio_namespace: str = "istio-system"
    injector_config_map: str = "istio-sidecar-injector"
    mesh_config_map: str = "istio"
    enable_ambient_controllers: bool = False
    workers: int = 1
    max_attempts: int = 5
    health_port: int = 8080


def settings_from_env() -> ControllerSettings:
    """Build :class:`ControllerSettings` from environment variables.

    Environment variables (with defaults):
        ``CLUSTER_ID``                 — cluster identifier passed to templates (``Kubernetes``).
        ``WATCH_NAMESPACE``            — restrict Gateways to one namespace (all).
        ``ISTIO_NAMESPACE``            — namespace of the injection ConfigMaps (``istio-system``).
        ``INJECTOR_CONFIGMAP``         — injector templates/values ConfigMap (``istio-sidecar-injector``).
        ``MESH_CONFIGMAP``             — mesh configuration ConfigMap (``istio``).
        ``ENABLE_AMBIENT_CONTROLLERS`` — also implement the waypoint class (``false``).
        ``RECONCILE_WORKERS``          — concurrent reconcile workers (``1``).
        ``RECONCILE_MAX_ATTEMPTS``     — attempts before a Gateway key is dropped (``5``).
        ``HEALTH_PORT``                — health/metrics listen port (``8080``).
    """
    return ControllerSettings(
        cluster_id=_env_name("CLUSTER_ID", "Kubernetes"),
        watch_namespace=os.getenv("WATCH_NAMESPACE", "").strip(),
        istio_namespace=_env_name("ISTIO_NAMESPACE", "istio-system"),
        injector_config_map=_env_name("INJECTOR_CONFIGMAP", "istio-sidecar-injector"),
        mesh_config_map=_env_name("MESH_CONFIGMAP", "istio"),
        enable_ambient_controllers=parse_bool_env("ENABLE_AMBIENT_CONTROLLERS"),
        workers=env_int("RECONCILE_WORKERS", 1, minimum=1, maximum=64),
        max_attempts=env_int("RECONCILE_MAX_ATTEMPTS", 5, minimum=1),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
