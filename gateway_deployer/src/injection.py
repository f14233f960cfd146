from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from hashlib import sha256
from types import MappingProxyType
from typing import Any

import yaml
from jinja2 import Template, TemplateSyntaxError

from gateway_deployer.src.errors import InvalidProxyImageError
from gateway_deployer.src.metrics import METRICS
from gateway_deployer.src.templating import compile_template

PROXY_IMAGE_TYPE_ANNOTATION = "sidecar.istio.io/proxyImageType"
DEFAULT_PROXY_IMAGE_NAME = "proxyv2"
_IMAGE_TYPE_SUFFIXES = ("-distroless", "-debug")


class InjectionConfigError(ValueError):
    """Raised when injector or mesh ConfigMap content cannot be parsed."""


@dataclass(frozen=True)
class InjectionConfig:
    """Immutable snapshot of the injection configuration used for rendering."""

    templates: Mapping[str, Template] = field(default_factory=dict)
    values: Mapping[str, Any] = field(default_factory=dict)
    mesh_config: Mapping[str, Any] = field(default_factory=dict)

    def default_proxy_config(self) -> dict[str, Any]:
        return dict(self.mesh_config.get("defaultConfig") or {})


def _with_image_type(tag: str, image_type: str) -> str:
    if not image_type:
        return tag
    for suffix in _IMAGE_TYPE_SUFFIXES:
        if tag.endswith(suffix):
            tag = tag[: -len(suffix)]
            break
    if image_type == "default":
        return tag
    return f"{tag}-{image_type}"


def proxy_image(
    values: Mapping[str, Any],
    proxy_config: Mapping[str, Any] | None,
    annotations: Mapping[str, str] | None,
) -> str:
    """Compute the gateway proxy image from Helm values and mesh defaults.

    ``global.proxy.image`` may be a bare image name (joined with
    ``global.hub``) or a full reference containing ``/``.  The image type
    (``distroless``, ``debug``, ``default``) comes from the default proxy
    config and can be overridden per Gateway with an annotation.

    Raises :class:`InvalidProxyImageError` when the values lack the hub or
    tag needed to form a pullable reference.
    """
    global_values = values.get("global") or {}
    hub = str(global_values.get("hub") or "")
    tag = "" if global_values.get("tag") is None else str(global_values["tag"])
    image_name = str((global_values.get("proxy") or {}).get("image") or DEFAULT_PROXY_IMAGE_NAME)

    image_type = str(((proxy_config or {}).get("image") or {}).get("imageType") or "")
    if annotations and PROXY_IMAGE_TYPE_ANNOTATION in annotations:
        image_type = annotations[PROXY_IMAGE_TYPE_ANNOTATION]

    if not tag:
        raise InvalidProxyImageError("proxy image requires global.tag to be set")
    if "/" not in image_name and not hub:
        raise InvalidProxyImageError(
            f"proxy image {image_name!r} requires global.hub to be set"
        )

    tag = _with_image_type(tag, image_type)
    if "/" in image_name:
        return f"{image_name}:{tag}"
    return f"{hub}/{image_name}:{tag}"


def _normalize_data(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def _hash_data(data: Mapping[str, str]) -> str:
    stable_payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def parse_injector_data(data: Mapping[str, str]) -> tuple[dict[str, str], dict[str, Any]]:
    """Parse the injector ConfigMap into ``(template sources, values)``.

    ``config`` is YAML with a ``templates`` mapping of name to template text;
    ``values`` is the JSON-encoded Helm values.
    """
    try:
        config = yaml.safe_load(data.get("config") or "") or {}
    except yaml.YAMLError as exc:
        raise InjectionConfigError(f"invalid injector config: {exc}") from exc
    if not isinstance(config, Mapping):
        raise InjectionConfigError("injector config must be a mapping")

    templates = config.get("templates") or {}
    if not isinstance(templates, Mapping):
        raise InjectionConfigError("injector config templates must be a mapping")

    try:
        values = json.loads(data.get("values") or "{}")
    except json.JSONDecodeError as exc:
        raise InjectionConfigError(f"invalid injector values: {exc}") from exc
    if not isinstance(values, Mapping):
        raise InjectionConfigError("injector values must be a JSON object")

    return {str(k): str(v) for k, v in templates.items()}, dict(values)


def parse_mesh_data(data: Mapping[str, str]) -> dict[str, Any]:
    try:
        mesh = yaml.safe_load(data.get("mesh") or "") or {}
    except yaml.YAMLError as exc:
        raise InjectionConfigError(f"invalid mesh config: {exc}") from exc
    if not isinstance(mesh, Mapping):
        raise InjectionConfigError("mesh config must be a mapping")
    return dict(mesh)


class InjectionConfigSource:
    """Hot-reloadable holder of the injection configuration.

    Fed from the injector and mesh ConfigMaps.  The ``data`` of each ConfigMap
    is hashed and only a real content change rebuilds the snapshot and
    notifies subscribers, so metadata-only updates and watch re-lists do not
    requeue every Gateway.  When content fails to parse the previous snapshot
    stays in effect; a single template that fails to compile is skipped and
    the rest of the ConfigMap, values included, still loads.

    Templates shipped with the package act as defaults; a template of the same
    name in the injector ConfigMap replaces them.
    """

    def __init__(
        self,
        builtin_templates: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._builtin_sources = dict(builtin_templates or {})
        self._template_sources: dict[str, str] = {}
        self._values: dict[str, Any] = {}
        self._mesh: dict[str, Any] = {}
        self._data_hashes: dict[str, str] = {}
        self._subscribers: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._config = self._build(self._template_sources, self._values, self._mesh)

    def _build(
        self,
        template_sources: Mapping[str, str],
        values: Mapping[str, Any],
        mesh: Mapping[str, Any],
    ) -> InjectionConfig:
        sources = {**self._builtin_sources, **template_sources}
        templates: dict[str, Template] = {}
        for name, source in sources.items():
            try:
                templates[name] = compile_template(source)
            except TemplateSyntaxError as exc:
                # The injector ConfigMap also carries sidecar templates in a
                # syntax we cannot compile. Drop just that template, falling
                # back to the packaged one of the same name.
                self.logger.warning("Skipping template %r: %s", name, exc)
                METRICS.injection_template_errors_total.inc()
                builtin = self._builtin_sources.get(name)
                if builtin is not None and builtin != source:
                    templates[name] = compile_template(builtin)
        return InjectionConfig(
            templates=MappingProxyType(templates),
            values=MappingProxyType(dict(values)),
            mesh_config=MappingProxyType(dict(mesh)),
        )

    def get(self) -> InjectionConfig:
        with self._lock:
            return self._config

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run after every effective configuration change."""
        with self._lock:
            self._subscribers.append(callback)

    def _changed(self, source: str, raw_data: Any) -> Mapping[str, str] | None:
        data = _normalize_data(raw_data)
        digest = _hash_data(data)
        if self._data_hashes.get(source) == digest:
            self.logger.debug("Ignoring unchanged %s configuration", source)
            return None
        self._data_hashes[source] = digest
        return data

    def update_injector(self, raw_data: Any) -> bool:
        """Load injector ConfigMap ``data``; ``None`` reverts to the builtin templates."""
        with self._lock:
            data = self._changed("injector", raw_data)
            if data is None:
                return False
            try:
                template_sources, values = parse_injector_data(data)
                config = self._build(template_sources, values, self._mesh)
            except InjectionConfigError:
                self.logger.exception("Keeping previous injection configuration")
                METRICS.injection_reloads_total.labels(result="error").inc()
                return False
            self._template_sources = template_sources
            self._values = values
            self._config = config
        self._notify("injector")
        return True

    def update_mesh(self, raw_data: Any) -> bool:
        """Load mesh ConfigMap ``data``; ``None`` reverts to an empty mesh config."""
        with self._lock:
            data = self._changed("mesh", raw_data)
            if data is None:
                return False
            try:
                mesh = parse_mesh_data(data)
                config = self._build(self._template_sources, self._values, mesh)
            except InjectionConfigError:
                self.logger.exception("Keeping previous mesh configuration")
                METRICS.injection_reloads_total.labels(result="error").inc()
                return False
            self._mesh = mesh
            self._config = config
        self._notify("mesh")
        return True

    def _notify(self, source: str) -> None:
        METRICS.injection_reloads_total.labels(result="success").inc()
        self.logger.info("Reloaded %s configuration", source)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback()
            except Exception:
                self.logger.exception("Injection configuration subscriber failed")
