from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from gateway_deployer.src.kube import to_dict
from gateway_deployer.src.metrics import METRICS

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

ObjectKey = tuple[str, str]


@dataclass(frozen=True)
class WatchEvent:
    """A single change to a watched object, as delivered to event handlers.

    ``old`` carries the previously cached state for ``MODIFIED`` events (and
    the last known state for ``DELETED``) when the informer had one.
    """

    type: str
    obj: dict[str, Any]
    old: dict[str, Any] | None = None
    informer: str = ""


def object_key(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return (str(metadata.get("namespace") or ""), str(metadata.get("name") or ""))


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class Informer:
    """List-then-watch cache for one resource kind.

    The informer lists the kind once to seed its cache (delivering an
    ``ADDED`` event per object, which is how every existing Gateway gets its
    first reconciliation), then streams changes from the list's
    ``resourceVersion``:

    * ``410 Gone`` (etcd compacted past our version) re-lists and delivers
      synthetic events for whatever changed while the stream was stale;
    * ``401`` / ``403`` are RBAC/auth configuration errors and terminate the
      loop with a clear log line instead of retrying forever;
    * any other error backs off exponentially with jitter, capped at 30 s.

    Handler failures are logged and never stop the loop.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        *,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self._cache: dict[ObjectKey, dict[str, Any]] = {}
        self._cache_lock = threading.Lock()
        self._handlers: list[Callable[[WatchEvent], None]] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def has_synced(self) -> bool:
        return self.synced.is_set()

    def add_event_handler(self, handler: Callable[[WatchEvent], None]) -> None:
        self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        with self._cache_lock:
            return self._cache.get((namespace, name))

    def list(self, namespace: str | None = None) -> list[dict[str, Any]]:
        with self._cache_lock:
            return [
                obj
                for (obj_namespace, _), obj in sorted(self._cache.items())
                if namespace is None or obj_namespace == namespace
            ]

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event: WatchEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "Event handler failed for %s %s %s/%s",
                    self.name,
                    event.type,
                    *object_key(event.obj),
                )

    def _apply_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = object_key(obj)
        with self._cache_lock:
            old = self._cache.get(key)
            if event_type == DELETED:
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj

        if event_type == ADDED and old is not None:
            event_type = MODIFIED
        self._dispatch(WatchEvent(type=event_type, obj=obj, old=old, informer=self.name))

    def _replace(self, items: list[dict[str, Any]]) -> None:
        """Swap the cache for a fresh listing and deliver the differences."""
        fresh = {object_key(obj): obj for obj in items}
        with self._cache_lock:
            previous = self._cache
            self._cache = dict(fresh)

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch(WatchEvent(type=ADDED, obj=obj, informer=self.name))
            elif _resource_version(old) != _resource_version(obj):
                self._dispatch(WatchEvent(type=MODIFIED, obj=obj, old=old, informer=self.name))
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch(WatchEvent(type=DELETED, obj=old, old=old, informer=self.name))

    def _list(self) -> str | None:
        listing = to_dict(self.list_fn(**self.list_kwargs))
        items = [to_dict(item) for item in listing.get("items") or []]
        self._replace(items)
        return _resource_version(listing)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until *stop_event* is set or :meth:`request_stop` is called."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.synced.set()
                self.logger.info(
                    "Informer %s synced; watching from resourceVersion %s",
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list of %s failed", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.synced.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    raw = event.get("object")
                    if raw is None:
                        continue
                    obj = to_dict(raw)
                    version = _resource_version(obj)
                    if version:
                        resource_version = version

                    event_type = str(event.get("type", ""))
                    if event_type in {ADDED, MODIFIED, DELETED}:
                        self._apply_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version for %s expired, re-listing", self.name
                    )
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.name,
                                relist_exc.status,
                            )
                            self.synced.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(informer=self.name).inc()
                    self.synced.clear()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
