from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Annotations a user may set on a Gateway to rename the generated objects.
NAME_OVERRIDE_ANNOTATION = "gateway.istio.io/name-override"
SERVICE_ACCOUNT_OVERRIDE_ANNOTATION = "gateway.istio.io/service-account"

IP_ADDRESS_TYPE = "IPAddress"


@dataclass(frozen=True)
class Listener:
    name: str
    port: int
    protocol: str


@dataclass(frozen=True)
class Gateway:
    """Read-only view of a ``gateway.networking.k8s.io`` Gateway object.

    Built from the JSON shape returned by the cluster (camelCase keys).  The
    raw object is kept so templates can reach any field, not only the ones
    the controller itself reasons about.
    """

    name: str
    namespace: str
    class_name: str
    listeners: tuple[Listener, ...] = ()
    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    addresses: tuple[Mapping[str, Any], ...] = ()
    uid: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> Gateway:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        listeners = tuple(
            Listener(
                name=str(item.get("name") or ""),
                port=int(item.get("port") or 0),
                protocol=str(item.get("protocol") or ""),
            )
            for item in spec.get("listeners") or []
            if isinstance(item, Mapping)
        )
        addresses = tuple(
            item for item in spec.get("addresses") or [] if isinstance(item, Mapping)
        )
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            class_name=str(spec.get("gatewayClassName") or ""),
            listeners=listeners,
            annotations=dict(metadata.get("annotations") or {}),
            labels=dict(metadata.get("labels") or {}),
            addresses=addresses,
            uid=str(metadata.get("uid") or ""),
            raw=obj,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def is_managed(self) -> bool:
        """Return False when the user points the Gateway at an existing deployment.

        A single IP address only requests an address for the generated
        Service, so it is still managed.  Hostnames, or more than one address,
        mean the data plane lives elsewhere.
        """
        if not self.addresses:
            return True
        if len(self.addresses) > 1:
            return False
        address_type = self.addresses[0].get("type")
        return address_type in (None, "", IP_ADDRESS_TYPE)

    def default_name(self) -> str:
        return f"{self.name}-{self.class_name}"

    def deployment_name(self) -> str:
        return self.annotations.get(NAME_OVERRIDE_ANNOTATION, self.default_name())

    def service_account_name(self) -> str:
        return self.annotations.get(SERVICE_ACCOUNT_OVERRIDE_ANNOTATION, self.default_name())


def format_key(key: tuple[str, str]) -> str:
    namespace, name = key
    return f"{namespace}/{name}"
