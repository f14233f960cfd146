from __future__ import annotations

import pytest

from gateway_deployer.src.config import (
    ControllerSettings,
    env_int,
    parse_bool_env,
    settings_from_env,
)

_ENV_VARS = (
    "CLUSTER_ID",
    "WATCH_NAMESPACE",
    "ISTIO_NAMESPACE",
    "INJECTOR_CONFIGMAP",
    "MESH_CONFIGMAP",
    "ENABLE_AMBIENT_CONTROLLERS",
    "RECONCILE_WORKERS",
    "RECONCILE_MAX_ATTEMPTS",
    "HEALTH_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    assert settings_from_env() == ControllerSettings()


def test_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLUSTER_ID", "east")
    monkeypatch.setenv("WATCH_NAMESPACE", " apps ")
    monkeypatch.setenv("ISTIO_NAMESPACE", "istio")
    monkeypatch.setenv("INJECTOR_CONFIGMAP", "injector")
    monkeypatch.setenv("MESH_CONFIGMAP", "mesh")
    monkeypatch.setenv("ENABLE_AMBIENT_CONTROLLERS", "true")
    monkeypatch.setenv("RECONCILE_WORKERS", "4")
    monkeypatch.setenv("RECONCILE_MAX_ATTEMPTS", "10")
    monkeypatch.setenv("HEALTH_PORT", "9090")

    settings = settings_from_env()

    assert settings == ControllerSettings(
        cluster_id="east",
        watch_namespace="apps",
        istio_namespace="istio",
        injector_config_map="injector",
        mesh_config_map="mesh",
        enable_ambient_controllers=True,
        workers=4,
        max_attempts=10,
        health_port=9090,
    )


def test_rejects_empty_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ISTIO_NAMESPACE", "  ")

    with pytest.raises(ValueError, match="ISTIO_NAMESPACE must be a non-empty string"):
        settings_from_env()


def test_rejects_too_many_workers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONCILE_WORKERS", "100")

    with pytest.raises(ValueError, match="RECONCILE_WORKERS must be <= 64, got: 100"):
        settings_from_env()


def test_rejects_zero_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONCILE_MAX_ATTEMPTS", "0")

    with pytest.raises(ValueError, match="RECONCILE_MAX_ATTEMPTS must be >= 1, got: 0"):
        settings_from_env()


def test_env_int_rejects_non_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOME_INT", "ten")

    with pytest.raises(ValueError, match="SOME_INT must be an integer"):
        env_int("SOME_INT", 1)


class TestParseBoolEnv:
    def test_returns_default_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_BOOL_VAR", raising=False)
        assert parse_bool_env("TEST_BOOL_VAR", default=False) is False
        assert parse_bool_env("TEST_BOOL_VAR", default=True) is True

    @pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on"])
    def test_truthy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert parse_bool_env("TEST_BOOL_VAR") is True

    @pytest.mark.parametrize("value", ["false", "False", "0", "no", "off", ""])
    def test_falsy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert parse_bool_env("TEST_BOOL_VAR") is False

    def test_whitespace_is_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", "  true  ")
        assert parse_bool_env("TEST_BOOL_VAR") is True
