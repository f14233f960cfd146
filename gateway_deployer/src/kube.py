from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, dynamic
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    VersionApi,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from gateway_deployer.src.classes import GATEWAY_CONTROLLER
from gateway_deployer.src.kinds import GroupVersionResource

LOGGER = logging.getLogger(__name__)

# Field manager for every server-side apply.  It must stay the same across
# controller versions and classes so a newer build owns the fields an older
# build wrote and can retract them.
FIELD_MANAGER = GATEWAY_CONTROLLER

_serializer: ApiClient | None = None


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    custom_objects: CustomObjectsApi
    version: VersionApi
    dynamic: Any


def build_clients() -> KubeClients:
    """Return the API clients used by the controller, sharing one connection pool."""
    api_client = client.ApiClient()
    return KubeClients(
        core=client.CoreV1Api(api_client),
        apps=client.AppsV1Api(api_client),
        custom_objects=client.CustomObjectsApi(api_client),
        version=client.VersionApi(api_client),
        dynamic=dynamic.DynamicClient(api_client),
    )


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert a typed client model (or a plain dict) to its JSON shape."""
    global _serializer
    if isinstance(obj, dict):
        return obj
    if _serializer is None:
        _serializer = client.ApiClient()
    result = _serializer.sanitize_for_serialization(obj)
    return result if isinstance(result, dict) else {}


class ServerSideApplyPatcher:
    """Force-applies objects through the dynamic client.

    ``force_conflicts`` makes our field manager take over any field another
    manager claims, while fields no manager of ours ever set are left alone.
    """

    def __init__(self, dynamic_client: Any, field_manager: str = FIELD_MANAGER) -> None:
        self.dynamic_client = dynamic_client
        self.field_manager = field_manager

    def __call__(
        self,
        gvr: GroupVersionResource,
        name: str,
        namespace: str,
        body: bytes,
    ) -> None:
        resource = self.dynamic_client.resources.get(
            api_version=gvr.api_version,
            name=gvr.resource,
        )
        # Older clients json.dumps the body for the apply-patch content type,
        # which turns a str into a quoted scalar; a dict encodes everywhere.
        self.dynamic_client.server_side_apply(
            resource,
            body=json.loads(body),
            name=name,
            namespace=namespace or None,
            field_manager=self.field_manager,
            force_conflicts=True,
        )


_MINOR_VERSION = re.compile(r"^(\d+)")


class KubeVersionProbe:
    """Reports whether the API server is at least a given ``1.<minor>`` release.

    The server version is fetched once and cached; until a fetch succeeds the
    probe answers ``False`` so templates fall back to the conservative path.
    """

    def __init__(self, version_api: VersionApi) -> None:
        self.version_api = version_api
        self._version: tuple[int, int] | None = None
        self._lock = threading.Lock()

    def _server_version(self) -> tuple[int, int] | None:
        with self._lock:
            if self._version is not None:
                return self._version
            try:
                info = self.version_api.get_code()
            except ApiException as exc:
                LOGGER.warning("Failed to read Kubernetes server version: %s", exc.reason)
                return None
            major_match = _MINOR_VERSION.match(str(getattr(info, "major", "") or ""))
            minor_match = _MINOR_VERSION.match(str(getattr(info, "minor", "") or ""))
            if major_match is None or minor_match is None:
                LOGGER.warning(
                    "Unrecognized Kubernetes server version %s.%s",
                    getattr(info, "major", None),
                    getattr(info, "minor", None),
                )
                return None
            self._version = (int(major_match.group(1)), int(minor_match.group(1)))
            return self._version

    def is_at_least(self, minor: int) -> bool:
        version = self._server_version()
        if version is None:
            return False
        return version >= (1, minor)
