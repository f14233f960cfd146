from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jinja2 import TemplateError

from gateway_deployer.src.errors import MissingTemplateError, TemplateExecutionError
from gateway_deployer.src.gateway import Gateway
from gateway_deployer.src.injection import InjectionConfigSource, proxy_image
from gateway_deployer.src.templating import execute, split_documents

STATUS_PORT_NAME = "status-port"
STATUS_PORT = 15021


@dataclass(frozen=True)
class ServicePort:
    name: str
    port: int
    app_protocol: str
    protocol: str = "TCP"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "port": self.port,
            "protocol": self.protocol,
            "appProtocol": self.app_protocol,
        }


def extract_service_ports(gateway: Gateway) -> list[ServicePort]:
    """Derive the Service ports for a Gateway.

    The status port always comes first.  Listener ports follow in declaration
    order; a Service cannot carry the same port twice, so when several
    listeners share a port only the first one is kept.
    """
    ports = [ServicePort(name=STATUS_PORT_NAME, port=STATUS_PORT, app_protocol="tcp")]
    seen: set[int] = set()
    for index, listener in enumerate(gateway.listeners):
        if listener.port in seen:
            continue
        seen.add(listener.port)
        protocol = listener.protocol.lower()
        # Listener names are required by the API, but an invalid object can still get in.
        name = listener.name or f"{protocol}-{index}"
        ports.append(ServicePort(name=name, port=listener.port, app_protocol=protocol))
    return ports


@dataclass(frozen=True)
class TemplateInput:
    gateway: Gateway
    deployment_name: str
    service_account: str
    ports: tuple[ServicePort, ...]
    cluster_id: str
    kube_version_122: bool

    def to_context(self) -> dict[str, Any]:
        """Return the template context: the raw Gateway plus derived fields."""
        return {
            "gateway": self.gateway.raw,
            "name": self.gateway.name,
            "namespace": self.gateway.namespace,
            "uid": self.gateway.uid,
            "annotations": dict(self.gateway.annotations),
            "labels": dict(self.gateway.labels),
            "deployment_name": self.deployment_name,
            "service_account": self.service_account,
            "ports": [port.to_dict() for port in self.ports],
            "cluster_id": self.cluster_id,
            "kube_version_122": self.kube_version_122,
        }


def build_template_input(
    gateway: Gateway,
    cluster_id: str,
    kube_version_122: bool,
) -> TemplateInput:
    return TemplateInput(
        gateway=gateway,
        deployment_name=gateway.deployment_name(),
        service_account=gateway.service_account_name(),
        ports=tuple(extract_service_ports(gateway)),
        cluster_id=cluster_id,
        kube_version_122=kube_version_122,
    )


class Renderer:
    """Renders a template set into one manifest string per object."""

    def __init__(self, injection_source: InjectionConfigSource) -> None:
        self.injection_source = injection_source

    def render(self, template_name: str, template_input: TemplateInput) -> list[str]:
        config = self.injection_source.get()
        template = config.templates.get(template_name)
        if template is None:
            raise MissingTemplateError(f"no {template_name!r} template defined")

        proxy_config = config.default_proxy_config()
        context = template_input.to_context()
        context.update(
            proxy_image=proxy_image(
                config.values,
                proxy_config,
                template_input.gateway.annotations,
            ),
            proxy_config=proxy_config,
            mesh_config=dict(config.mesh_config),
            values=dict(config.values),
        )
        try:
            output = execute(template, context)
        except TemplateError as exc:
            raise TemplateExecutionError(
                f"template {template_name!r} failed: {exc}"
            ) from exc
        return split_documents(output)
