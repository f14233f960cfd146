from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

DEFAULT_CLASS_NAME = "istio"
WAYPOINT_CLASS_NAME = "istio-waypoint"

GATEWAY_CONTROLLER = "istio.io/gateway-controller"
MESH_CONTROLLER = "istio.io/mesh-controller"

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassInfo:
    """Static description of a GatewayClass this controller implements."""

    controller: str
    description: str
    # Key of the template set used to render this class's workloads.
    templates: str
    # Whether the GatewayClass should be reported as accepted once created.
    report_status: bool = False


class ClassRegistry(Mapping[str, ClassInfo]):
    """Immutable table of the classes this process implements.

    Built once at startup by :func:`build_class_registry`; feature flags are
    resolved then and the table never changes afterwards.
    """

    def __init__(self, classes: Mapping[str, ClassInfo]) -> None:
        self._classes = MappingProxyType(dict(classes))
        self.known_controllers = frozenset(info.controller for info in self._classes.values())

    def __getitem__(self, name: str) -> ClassInfo:
        return self._classes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._classes)

    def __len__(self) -> int:
        return len(self._classes)

    def for_controller(self, controller: str) -> ClassInfo | None:
        """Return the static entry implemented by *controller*, if any."""
        for name in sorted(self._classes):
            info = self._classes[name]
            if info.controller == controller:
                return info
        return None


def build_class_registry(enable_waypoint: bool = False) -> ClassRegistry:
    classes = {
        DEFAULT_CLASS_NAME: ClassInfo(
            controller=GATEWAY_CONTROLLER,
            description="The default Istio GatewayClass",
            templates="kube-gateway",
        ),
    }
    if enable_waypoint:
        classes[WAYPOINT_CLASS_NAME] = ClassInfo(
            controller=MESH_CONTROLLER,
            description="The default Istio waypoint GatewayClass",
            templates="waypoint",
            report_status=True,
        )
    return ClassRegistry(classes)


class ClassMatcher:
    """Decides whether a Gateway's class is one this controller implements.

    Statically known class names match directly.  Any other name is looked up
    as a cluster GatewayClass; it matches only when its ``controllerName`` is
    one of ours, and the template set then comes from the static entry with
    that controller.  GatewayClass objects never supply template data.
    """

    def __init__(
        self,
        registry: ClassRegistry,
        get_gateway_class: Callable[[str], Mapping[str, Any] | None],
    ) -> None:
        self.registry = registry
        self.get_gateway_class = get_gateway_class

    def match(self, class_name: str) -> ClassInfo | None:
        info = self.registry.get(class_name)
        if info is not None:
            return info

        gateway_class = self.get_gateway_class(class_name)
        if gateway_class is None:
            return None

        controller = str((gateway_class.get("spec") or {}).get("controllerName") or "")
        if controller not in self.registry.known_controllers:
            LOGGER.debug(
                "GatewayClass %s is implemented by %s, not by this controller",
                class_name,
                controller or "<unset>",
            )
            return None
        return self.registry.for_controller(controller)
