from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from gateway_deployer.src.informer import ADDED, DELETED, MODIFIED, Informer, WatchEvent


def make_object(name: str, resource_version: str, namespace: str = "default") -> dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
        }
    }


def fake_lister(*listings: tuple[str, list[dict[str, Any]]]) -> Any:
    """Return a list function that serves *listings* in order, repeating the last."""
    calls: list[dict[str, Any]] = []
    remaining = list(listings)

    def _list(**kwargs: Any) -> dict[str, Any]:
        calls.append(kwargs)
        resource_version, items = remaining[0] if len(remaining) == 1 else remaining.pop(0)
        return {"metadata": {"resourceVersion": resource_version}, "items": items}

    _list.calls = calls  # type: ignore[attr-defined]
    return _list


def record_events(informer: Informer) -> list[WatchEvent]:
    events: list[WatchEvent] = []
    informer.add_event_handler(events.append)
    return events


def test_initial_list_emits_added_and_fills_cache() -> None:
    informer = Informer("gateways", fake_lister(("100", [make_object("a", "1")])))
    events = record_events(informer)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert [(e.type, e.obj["metadata"]["name"]) for e in events] == [(ADDED, "a")]
    assert events[0].informer == "gateways"
    assert informer.get("default", "a") == make_object("a", "1")
    assert mock_watcher.stream.call_args.kwargs["resource_version"] == "100"
    assert mock_watcher.stop.call_count >= 1


def test_list_kwargs_are_forwarded_to_list_and_watch() -> None:
    lister = fake_lister(("1", []))
    informer = Informer("deployments", lister, label_selector="gateway.istio.io/managed")
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert lister.calls == [{"label_selector": "gateway.istio.io/managed"}]
    assert mock_watcher.stream.call_args.args == (lister,)
    assert mock_watcher.stream.call_args.kwargs["label_selector"] == "gateway.istio.io/managed"


def test_watch_events_update_cache_and_carry_old_state() -> None:
    informer = Informer("services", fake_lister(("100", [make_object("a", "1")])))
    events = record_events(informer)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter(
                [
                    {"type": "MODIFIED", "object": make_object("a", "2")},
                    {"type": "ADDED", "object": make_object("b", "3")},
                    {"type": "DELETED", "object": make_object("a", "4")},
                    {"type": "BOOKMARK", "object": make_object("", "5")},
                ]
            )
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert [(e.type, e.obj["metadata"]["name"]) for e in events] == [
        (ADDED, "a"),
        (MODIFIED, "a"),
        (ADDED, "b"),
        (DELETED, "a"),
    ]
    assert events[1].old == make_object("a", "1")
    assert informer.get("default", "a") is None
    assert informer.list() == [make_object("b", "3")]
    # The second stream resumes from the last resourceVersion seen.
    assert mock_watcher.stream.call_args_list[1].kwargs["resource_version"] == "5"


def test_added_for_cached_object_is_reported_as_modified() -> None:
    informer = Informer("gateways", fake_lister(("100", [make_object("a", "1")])))
    events = record_events(informer)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter([{"type": "ADDED", "object": make_object("a", "2")}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert [e.type for e in events] == [ADDED, MODIFIED]


def test_relist_on_410_emits_differences() -> None:
    lister = fake_lister(
        ("100", [make_object("a", "1"), make_object("b", "1")]),
        ("200", [make_object("a", "1"), make_object("c", "1"), make_object("b", "2")]),
    )
    informer = Informer("gateways", lister)
    events = record_events(informer)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    resource_versions_seen: list[Any] = []
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        resource_versions_seen.append(kwargs.get("resource_version"))
        if call_count == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert resource_versions_seen == ["100", "200"]
    relist_events = [(e.type, e.obj["metadata"]["name"]) for e in events[2:]]
    assert sorted(relist_events) == [(ADDED, "c"), (MODIFIED, "b")]


def test_relist_emits_deleted_for_vanished_objects() -> None:
    lister = fake_lister(("100", [make_object("a", "1")]), ("200", []))
    informer = Informer("gateways", lister)
    events = record_events(informer)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert [e.type for e in events] == [ADDED, DELETED]
    assert informer.list() == []


def test_retries_initial_list_on_transient_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    list_attempts = 0

    def flaky_list(**kwargs: Any) -> dict[str, Any]:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return {"metadata": {"resourceVersion": "100"}, "items": []}

    informer = Informer("gateways", flaky_list)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher),
        patch("gateway_deployer.src.informer.threading.Event.wait", side_effect=fake_wait),
        patch("gateway_deployer.src.informer.random.random", return_value=0.5),
    ):
        informer.run(shutdown_event)

    assert list_attempts == 2
    assert wait_values == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_exits_fast_on_startup_rbac_denied() -> None:
    def forbidden(**kwargs: Any) -> dict[str, Any]:
        raise ApiException(status=403, reason="forbidden")

    informer = Informer("gateways", forbidden)
    watch_factory = MagicMock()

    with patch("gateway_deployer.src.informer.watch.Watch", watch_factory):
        informer.run(threading.Event())

    watch_factory.assert_not_called()
    assert not informer.has_synced


def test_exits_fast_on_watch_rbac_denied() -> None:
    informer = Informer("gateways", fake_lister(("1", [])))
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher),
        patch("gateway_deployer.src.informer.threading.Event.wait", side_effect=fake_wait),
    ):
        informer.run(threading.Event())

    assert wait_values == []
    assert not informer.has_synced


def test_applies_exponential_backoff_on_api_error() -> None:
    informer = Informer("gateways", fake_lister(("1", [])))
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher),
        patch("gateway_deployer.src.informer.threading.Event.wait", side_effect=fake_wait),
        patch("gateway_deployer.src.informer.random.random", return_value=0.5),
    ):
        informer.run(shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_handler_failure_does_not_stop_dispatch() -> None:
    informer = Informer("gateways", fake_lister(("1", [make_object("a", "1")])))
    events: list[WatchEvent] = []

    def broken(event: WatchEvent) -> None:
        raise RuntimeError("boom")

    informer.add_event_handler(broken)
    informer.add_event_handler(events.append)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert [e.type for e in events] == [ADDED]


def test_synced_is_set_after_list_and_cleared_on_exit() -> None:
    informer = Informer("gateways", fake_lister(("1", [])))
    shutdown_event = threading.Event()
    synced_during_watch: list[bool] = []
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        synced_during_watch.append(informer.has_synced)
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(shutdown_event)

    assert synced_during_watch == [True]
    assert not informer.has_synced


def test_list_filters_by_namespace() -> None:
    informer = Informer("gateways", fake_lister(("1", [])))
    informer._replace(
        [
            make_object("b", "1", namespace="ns1"),
            make_object("a", "1", namespace="ns2"),
            make_object("a", "1", namespace="ns1"),
        ]
    )

    assert [o["metadata"]["name"] for o in informer.list("ns1")] == ["a", "b"]
    assert len(informer.list()) == 3


def test_request_stop_interrupts_active_watch() -> None:
    informer = Informer("gateways", fake_lister(("1", [])))
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        informer.request_stop()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("gateway_deployer.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(threading.Event())

    assert mock_watcher.stop.call_count >= 2
    assert mock_watcher.stream.call_count == 1
