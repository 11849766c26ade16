from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from restore_controller.src.config import ConfigError, load_config
from restore_controller.src.controller import build_controller
from restore_controller.src.health import start_health_server
from restore_controller.src.kube import build_clients, load_kube_configuration
from restore_controller.src.metrics import METRICS
from restore_controller.src.store import CacheSyncTimeoutError

LOGGER = logging.getLogger("restore_controller")

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects.

    A ``restore`` attribute passed through ``extra=`` is copied into the
    entry so log queries can filter on one ``namespace/name`` key.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        restore_key = getattr(record, "restore", None)
        if restore_key:
            log_entry["restore"] = str(restore_key)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def main() -> int:
    """Controller entrypoint: load config, start caches and workers, block until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO").upper())
    try:
        config = load_config()
    except (ConfigError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    logging.root.setLevel(getattr(logging, config.log_level, logging.INFO))

    METRICS.build_info.info(
        {
            "version": config.operator_version,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()
    runtime = build_controller(config, core_api=core_api, custom_api=custom_api)

    health_server = start_health_server(ready=runtime.controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _handle_informer_failure(kind: str) -> None:
        LOGGER.error("%s cache stopped updating, shutting down", kind)
        runtime.controller.ready.clear()
        shutdown_event.set()

    runtime.store.on_fatal = _handle_informer_failure

    exit_code = 0
    runtime.recorder.start()
    runtime.store.start()
    try:
        runtime.controller.run(shutdown_event, config.workers)
    except CacheSyncTimeoutError:
        LOGGER.exception("RestoreController failed to start")
        exit_code = 1
    finally:
        runtime.store.stop(join_timeout_seconds=5)
        runtime.recorder.stop()
        health_server.shutdown()

    if runtime.store.failed.is_set():
        exit_code = 1
    LOGGER.info("Controller stopped")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
