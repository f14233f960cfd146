from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from gateway_deployer.src.informer import Informer, ObjectKey, WatchEvent, object_key
from gateway_deployer.src.injection import InjectionConfigSource
from gateway_deployer.src.workqueue import WorkQueue

GATEWAY_API_GROUP = "gateway.networking.k8s.io"

LOGGER = logging.getLogger(__name__)

KeyHandler = Callable[[WatchEvent], list[ObjectKey]]


def gateway_keys(event: WatchEvent) -> list[ObjectKey]:
    return [object_key(event.obj)]


def _owning_gateways(obj: dict[str, Any] | None) -> list[ObjectKey]:
    if not obj:
        return []
    metadata = obj.get("metadata") or {}
    namespace = str(metadata.get("namespace") or "")
    keys = []
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") != "Gateway":
            continue
        group = str(ref.get("apiVersion") or "").partition("/")[0]
        if group != GATEWAY_API_GROUP:
            continue
        keys.append((namespace, str(ref.get("name") or "")))
    return keys


def parent_gateway_keys(event: WatchEvent) -> list[ObjectKey]:
    """Map a change to a generated object onto the Gateway that owns it.

    Owner references are namespaced, so the Gateway lives in the child's
    namespace.  The previous state is consulted too so a child whose owner
    reference was just stripped still wakes its former parent.
    """
    keys: list[ObjectKey] = []
    for key in _owning_gateways(event.obj) + _owning_gateways(event.old):
        if key not in keys:
            keys.append(key)
    return keys


def gateways_for_class(
    class_name: str,
    gateways: Iterable[dict[str, Any]],
) -> list[ObjectKey]:
    return [
        object_key(gateway)
        for gateway in gateways
        if (gateway.get("spec") or {}).get("gatewayClassName") == class_name
    ]


class Wiring:
    """Connects informers and the injection configuration to the work queue.

    Every handler is a function from a :class:`WatchEvent` to the Gateway keys
    it should wake; the wiring only forwards those keys into the queue.
    Handlers that need "all Gateways" query the Gateway informer's current
    listing when the event arrives.
    """

    def __init__(self, queue: WorkQueue, gateways: Informer) -> None:
        self.queue = queue
        self.gateways = gateways

    def _enqueue(self, keys: Iterable[ObjectKey]) -> None:
        for key in keys:
            self.queue.add(key)

    def forward(self, handler: KeyHandler) -> Callable[[WatchEvent], None]:
        def _handle(event: WatchEvent) -> None:
            self._enqueue(handler(event))

        return _handle

    def gateway_class_keys(self, event: WatchEvent) -> list[ObjectKey]:
        class_name = object_key(event.obj)[1]
        return gateways_for_class(class_name, self.gateways.list())

    def all_gateway_keys(self) -> list[ObjectKey]:
        return [object_key(gateway) for gateway in self.gateways.list()]

    def on_injection_change(self) -> None:
        keys = self.all_gateway_keys()
        LOGGER.info("Injection configuration changed; requeueing %d gateway(s)", len(keys))
        self._enqueue(keys)

    def register(
        self,
        gateway_classes: Informer,
        children: Iterable[Informer],
        injection_source: InjectionConfigSource,
    ) -> None:
        self.gateways.add_event_handler(self.forward(gateway_keys))
        gateway_classes.add_event_handler(self.forward(self.gateway_class_keys))
        for informer in children:
            informer.add_event_handler(self.forward(parent_gateway_keys))
        injection_source.subscribe(self.on_injection_change)
