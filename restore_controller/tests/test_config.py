from __future__ import annotations

import pytest

from restore_controller.src.config import (
    RUNTIME_VERSION,
    ConfigError,
    ControllerConfig,
    env_float,
    env_int,
    load_config,
)


def test_load_config_defaults() -> None:
    config = load_config(env={})

    assert config == ControllerConfig(namespace="default")
    assert config.workers == 2
    assert config.cache_sync_timeout_seconds == 60
    assert config.retry_base_delay_seconds == 0.005
    assert config.retry_max_delay_seconds == 1000.0
    assert config.retry_qps == 10.0
    assert config.retry_burst == 100
    assert config.operator_version == RUNTIME_VERSION
    assert config.health_port == 8080
    assert config.log_level == "INFO"


def test_load_config_reads_environment() -> None:
    config = load_config(
        env={
            "WATCH_NAMESPACE": " mysql ",
            "RESTORE_WORKERS": "4",
            "CACHE_SYNC_TIMEOUT_SECONDS": "10",
            "RETRY_BASE_DELAY_SECONDS": "0.5",
            "RETRY_MAX_DELAY_SECONDS": "30",
            "RETRY_QPS": "2.5",
            "RETRY_BURST": "20",
            "OPERATOR_VERSION": "1.2.3",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.namespace == "mysql"
    assert config.workers == 4
    assert config.cache_sync_timeout_seconds == 10
    assert config.retry_base_delay_seconds == 0.5
    assert config.retry_max_delay_seconds == 30.0
    assert config.retry_qps == 2.5
    assert config.retry_burst == 20
    assert config.operator_version == "1.2.3"
    assert config.health_port == 9090
    assert config.log_level == "DEBUG"


def test_load_config_rejects_blank_namespace() -> None:
    with pytest.raises(ConfigError, match="WATCH_NAMESPACE"):
        load_config(env={"WATCH_NAMESPACE": "  "})


def test_load_config_rejects_blank_operator_version() -> None:
    with pytest.raises(ConfigError, match="OPERATOR_VERSION"):
        load_config(env={"OPERATOR_VERSION": ""})


def test_load_config_rejects_inverted_retry_bounds() -> None:
    with pytest.raises(ConfigError, match="RETRY_MAX_DELAY_SECONDS"):
        load_config(env={"RETRY_BASE_DELAY_SECONDS": "5", "RETRY_MAX_DELAY_SECONDS": "1"})


@pytest.mark.parametrize(
    "env, message",
    [
        ({"RESTORE_WORKERS": "0"}, "RESTORE_WORKERS must be >= 1, got: 0"),
        ({"RESTORE_WORKERS": "two"}, "RESTORE_WORKERS must be an integer"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535, got: 70000"),
        ({"RETRY_BASE_DELAY_SECONDS": "0"}, "RETRY_BASE_DELAY_SECONDS must be > 0"),
        ({"RETRY_MAX_DELAY_SECONDS": "soon"}, "RETRY_MAX_DELAY_SECONDS must be a number"),
        ({"RETRY_QPS": "0"}, "RETRY_QPS must be > 0"),
        ({"RETRY_BURST": "0"}, "RETRY_BURST must be >= 1, got: 0"),
    ],
)
def test_load_config_rejects_bad_numbers(env: dict[str, str], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        load_config(env=env)


def test_env_int_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOME_INT", "7")
    assert env_int("SOME_INT", 1) == 7

    monkeypatch.delenv("SOME_INT")
    assert env_int("SOME_INT", 1) == 1


def test_env_float_default_is_not_validated() -> None:
    assert env_float("MISSING", 2.5, env={}) == 2.5
