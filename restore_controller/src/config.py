from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

RUNTIME_VERSION = "0.3.0"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace whose Restores, Clusters, Backups and Pods are watched.
        workers: Number of worker threads draining the restore queue.
        cache_sync_timeout_seconds: How long ``run`` waits for the initial
            list of every watched kind before giving up.
        retry_base_delay_seconds: Backoff for the first failure of a key.
        retry_max_delay_seconds: Upper bound for the per-key backoff.
        retry_qps: Refill rate of the overall retry token bucket.
        retry_burst: Capacity of the overall retry token bucket.
        operator_version: Value written to (and required on) the version label.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level: Root log level name.
    """

    namespace: str
    workers: int = 2
    cache_sync_timeout_seconds: int = 60
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    retry_qps: float = 10.0
    retry_burst: int = 100
    operator_version: str = RUNTIME_VERSION
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    env: Mapping[str, str] | None = None,
) -> float:
    """Parse a strictly positive float from the environment."""
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            namespace to watch (``default``).
        ``RESTORE_WORKERS``            worker threads (``2``).
        ``CACHE_SYNC_TIMEOUT_SECONDS`` startup cache sync timeout (``60``).
        ``RETRY_BASE_DELAY_SECONDS``   first retry delay (``0.005``).
        ``RETRY_MAX_DELAY_SECONDS``    retry delay cap (``1000``).
        ``RETRY_QPS``                  overall retry rate (``10``).
        ``RETRY_BURST``                overall retry burst (``100``).
        ``OPERATOR_VERSION``           version label value (runtime version).
        ``HEALTH_PORT``                health server port (``8080``).
        ``LOG_LEVEL``                  root log level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    base_delay = env_float("RETRY_BASE_DELAY_SECONDS", 0.005, env=values)
    max_delay = env_float("RETRY_MAX_DELAY_SECONDS", 1000.0, env=values)
    if max_delay < base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be greater than or equal to "
            "RETRY_BASE_DELAY_SECONDS"
        )

    operator_version = values.get("OPERATOR_VERSION", RUNTIME_VERSION).strip()
    if not operator_version:
        raise ConfigError("OPERATOR_VERSION must be a non-empty string")

    return ControllerConfig(
        namespace=namespace.strip(),
        workers=env_int("RESTORE_WORKERS", 2, minimum=1, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1, env=values
        ),
        retry_base_delay_seconds=base_delay,
        retry_max_delay_seconds=max_delay,
        retry_qps=env_float("RETRY_QPS", 10.0, env=values),
        retry_burst=env_int("RETRY_BURST", 100, minimum=1, env=values),
        operator_version=operator_version,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
