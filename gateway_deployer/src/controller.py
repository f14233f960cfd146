from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from gateway_deployer.src.apply import MANAGED_LABEL, Applier, Patcher
from gateway_deployer.src.classes import ClassInfo, ClassMatcher, build_class_registry
from gateway_deployer.src.config import ControllerSettings
from gateway_deployer.src.errors import AnnotationWriteError, ReconcileError
from gateway_deployer.src.gateway import Gateway, format_key
from gateway_deployer.src.informer import DELETED, Informer, WatchEvent
from gateway_deployer.src.injection import InjectionConfigSource
from gateway_deployer.src.kinds import GATEWAY_CLASS_RESOURCE, GATEWAY_RESOURCE
from gateway_deployer.src.kube import KubeClients, KubeVersionProbe, ServerSideApplyPatcher
from gateway_deployer.src.metrics import METRICS
from gateway_deployer.src.render import Renderer, build_template_input
from gateway_deployer.src.templating import load_builtin_templates
from gateway_deployer.src.versioning import controller_version_patch, resolve_controller_version
from gateway_deployer.src.wiring import Wiring
from gateway_deployer.src.workqueue import WorkQueue

NOT_FOUND = "not_found"
UNMATCHED = "unmatched"
UNMANAGED = "unmanaged"
NOT_OWNER = "not_owner"
APPLIED = "applied"


class GatewayLister(Protocol):
    def get(self, namespace: str, name: str) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass that did not fail."""

    key: tuple[str, str]
    outcome: str
    applied: int = 0


class DeploymentController:
    """Materializes Gateways into a Deployment, Service and ServiceAccount.

    Generated objects are rendered from templates and server-side applied
    with a single, version-independent field manager, so each pass replaces
    exactly the fields the previous pass owned.

    Reconciliation is level-triggered: any change to a Gateway, its class,
    one of its generated objects or the injection configuration puts the
    Gateway's ``(namespace, name)`` key on the work queue, and a pass always
    recomputes the full desired state from scratch.
    """

    def __init__(
        self,
        gateways: GatewayLister,
        matcher: ClassMatcher,
        renderer: Renderer,
        applier: Applier,
        patcher: Patcher,
        cluster_id: str,
        kube_version_122: Callable[[], bool] = lambda: True,
        informers: Sequence[Informer] = (),
        max_attempts: int = 5,
        workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.gateways = gateways
        self.matcher = matcher
        self.renderer = renderer
        self.applier = applier
        self.patcher = patcher
        self.cluster_id = cluster_id
        self.kube_version_122 = kube_version_122
        self.informers = list(informers)
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.queue = WorkQueue(
            "gateway deployment",
            self.reconcile,
            max_attempts=max_attempts,
            logger=self.logger,
        )
        self.ready = threading.Event()

    def is_ready(self) -> bool:
        return self.ready.is_set() and all(informer.has_synced for informer in self.informers)

    def reconcile(self, key: tuple[str, str]) -> ReconcileResult:
        """Bring the objects generated for the Gateway *key* to their desired state.

        Not-found, unmatched-class and unmanaged Gateways are successful
        no-ops.  Any :class:`ReconcileError` propagates so the queue retries.
        """
        started = time.monotonic()
        try:
            result = self._reconcile(key)
        except ReconcileError as exc:
            METRICS.reconcile_errors_total.labels(stage=exc.stage).inc()
            METRICS.reconciles_total.labels(outcome="error").inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        METRICS.reconciles_total.labels(outcome=result.outcome).inc()
        return result

    def _reconcile(self, key: tuple[str, str]) -> ReconcileResult:
        namespace, name = key
        obj = self.gateways.get(namespace, name)
        if obj is None:
            # Deleted Gateways cannot be fixed by a requeue; a new notification
            # arrives if the object comes back.
            self.logger.debug("Gateway %s not found; nothing to do", format_key(key))
            return ReconcileResult(key=key, outcome=NOT_FOUND)

        gateway = Gateway.from_object(obj)
        class_info = self.matcher.match(gateway.class_name)
        if class_info is None:
            self.logger.debug(
                "Gateway %s uses class %s which this controller does not implement",
                format_key(key),
                gateway.class_name,
            )
            return ReconcileResult(key=key, outcome=UNMATCHED)

        return self.configure_gateway(gateway, class_info)

    def configure_gateway(self, gateway: Gateway, class_info: ClassInfo) -> ReconcileResult:
        key = gateway.key
        if not gateway.is_managed():
            # Explicit addresses point at a deployment the user runs themselves.
            self.logger.debug("Skipping unmanaged gateway %s", format_key(key))
            return ReconcileResult(key=key, outcome=UNMANAGED)

        decision = resolve_controller_version(gateway.annotations)
        if not decision.manage:
            self.logger.debug(
                "Skipping gateway %s which is managed by controller version %s",
                format_key(key),
                decision.existing,
            )
            return ReconcileResult(key=key, outcome=NOT_OWNER)

        self.logger.info("Reconciling gateway %s", format_key(key))
        template_input = build_template_input(
            gateway,
            cluster_id=self.cluster_id,
            kube_version_122=self.kube_version_122(),
        )

        if decision.take_over:
            self.logger.debug(
                "Writing controller version for %s, existing=%r",
                format_key(key),
                decision.existing,
            )
            self._set_controller_version(gateway)
        else:
            self.logger.debug(
                "Controller version for %s already %s, no action needed",
                format_key(key),
                decision.existing,
            )

        manifests = self.renderer.render(class_info.templates, template_input)
        for manifest in manifests:
            self.applier.apply(class_info.controller, manifest)

        self.logger.info(
            "Gateway %s updated (%d object(s) applied)", format_key(key), len(manifests)
        )
        return ReconcileResult(key=key, outcome=APPLIED, applied=len(manifests))

    def _set_controller_version(self, gateway: Gateway) -> None:
        body = json.dumps(
            controller_version_patch(gateway.name, gateway.namespace),
            separators=(",", ":"),
        ).encode("utf-8")
        try:
            self.patcher(GATEWAY_RESOURCE, gateway.name, gateway.namespace, body)
        except Exception as exc:
            raise AnnotationWriteError(f"update gateway annotation: {exc}") from exc

    def _wait_for_sync(
        self,
        stop: threading.Event,
        threads: Sequence[threading.Thread],
    ) -> bool:
        while not stop.is_set():
            if all(informer.has_synced for informer in self.informers):
                return True
            for informer, thread in zip(self.informers, threads):
                if not thread.is_alive() and not informer.has_synced:
                    self.logger.error("Informer %s exited before its cache synced", informer.name)
                    return False
            stop.wait(timeout=0.1)
        return False

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start every informer, wait for their caches, then process the queue.

        On shutdown the queue stops handing out keys, in-flight passes finish,
        and all watches are closed.
        """
        stop = shutdown_event or threading.Event()
        threads = [
            threading.Thread(
                target=informer.run,
                args=(stop,),
                name=f"informer-{informer.name}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in threads:
            thread.start()

        try:
            if self._wait_for_sync(stop, threads):
                self.ready.set()
                self.logger.info("Caches synced; starting gateway deployment controller")
                self.queue.run(stop, workers=self.workers)
            else:
                self.queue.shutdown()
        finally:
            self.ready.clear()
            for informer in self.informers:
                informer.request_stop()
            for thread in threads:
                thread.join(timeout=5)
            self.logger.info("Gateway deployment controller stopped")


def config_map_handler(update: Callable[[Any], bool]) -> Callable[[WatchEvent], None]:
    """Feed ConfigMap ``data`` into an injection source update method."""

    def _handle(event: WatchEvent) -> None:
        update(None if event.type == DELETED else event.obj.get("data"))

    return _handle


def build_controller(clients: KubeClients, settings: ControllerSettings) -> DeploymentController:
    """Construct a :class:`DeploymentController` and all of its informers."""
    registry = build_class_registry(enable_waypoint=settings.enable_ambient_controllers)
    injection_source = InjectionConfigSource(builtin_templates=load_builtin_templates())

    def custom_informer(name: str, group: str, version: str, plural: str) -> Informer:
        if settings.watch_namespace and plural != GATEWAY_CLASS_RESOURCE.resource:
            return Informer(
                name,
                clients.custom_objects.list_namespaced_custom_object,
                group=group,
                version=version,
                namespace=settings.watch_namespace,
                plural=plural,
            )
        return Informer(
            name,
            clients.custom_objects.list_cluster_custom_object,
            group=group,
            version=version,
            plural=plural,
        )

    def core_informer(
        name: str,
        namespaced: Callable[..., Any],
        all_namespaces: Callable[..., Any],
        **kwargs: Any,
    ) -> Informer:
        if settings.watch_namespace:
            return Informer(name, namespaced, namespace=settings.watch_namespace, **kwargs)
        return Informer(name, all_namespaces, **kwargs)

    gateways = custom_informer("gateways", *GATEWAY_RESOURCE)
    gateway_classes = custom_informer("gatewayclasses", *GATEWAY_CLASS_RESOURCE)
    # This controller is the only one watching these Deployments, so filter to ours.
    deployments = core_informer(
        "deployments",
        clients.apps.list_namespaced_deployment,
        clients.apps.list_deployment_for_all_namespaces,
        label_selector=MANAGED_LABEL,
    )
    services = core_informer(
        "services",
        clients.core.list_namespaced_service,
        clients.core.list_service_for_all_namespaces,
    )
    service_accounts = core_informer(
        "serviceaccounts",
        clients.core.list_namespaced_service_account,
        clients.core.list_service_account_for_all_namespaces,
    )
    injector_config_map = Informer(
        "injector-configmap",
        clients.core.list_namespaced_config_map,
        namespace=settings.istio_namespace,
        field_selector=f"metadata.name={settings.injector_config_map}",
    )
    mesh_config_map = Informer(
        "mesh-configmap",
        clients.core.list_namespaced_config_map,
        namespace=settings.istio_namespace,
        field_selector=f"metadata.name={settings.mesh_config_map}",
    )
    injector_config_map.add_event_handler(config_map_handler(injection_source.update_injector))
    mesh_config_map.add_event_handler(config_map_handler(injection_source.update_mesh))

    version_probe = KubeVersionProbe(clients.version)
    patcher = ServerSideApplyPatcher(clients.dynamic)
    controller = DeploymentController(
        gateways=gateways,
        matcher=ClassMatcher(registry, lambda name: gateway_classes.get("", name)),
        renderer=Renderer(injection_source),
        applier=Applier(patcher),
        patcher=patcher,
        cluster_id=settings.cluster_id,
        kube_version_122=lambda: version_probe.is_at_least(22),
        informers=[
            injector_config_map,
            mesh_config_map,
            gateway_classes,
            deployments,
            services,
            service_accounts,
            gateways,
        ],
        max_attempts=settings.max_attempts,
        workers=settings.workers,
    )

    wiring = Wiring(controller.queue, gateways)
    wiring.register(
        gateway_classes=gateway_classes,
        children=[deployments, services, service_accounts],
        injection_source=injection_source,
    )
    return controller
