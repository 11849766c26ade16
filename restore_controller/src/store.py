"""Read-only resource store contract consumed by the restore controller.

The controller never talks to the API server for reads.  It looks objects
up in local caches kept fresh by watch streams (see
:mod:`restore_controller.src.informer`) through the small interface below, so
tests can hand it an in-memory fake instead.

Objects are plain JSON-style dicts exactly as the API serves them.  Callers
must copy an object before changing it: the dicts are shared with the cache.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

RESTORE = "Restore"
CLUSTER = "Cluster"
BACKUP = "Backup"
POD = "Pod"

Predicate = Callable[[dict[str, Any]], bool]


class ResourceStore(Protocol):
    def get_by_key(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the cached object, ``None`` if absent. Raises on cache errors."""
        ...

    def list_by_predicate(
        self, kind: str, namespace: str, predicate: Predicate
    ) -> list[dict[str, Any]]: ...

    def has_synced(self, kind: str) -> bool: ...


class KeyFuncError(KeyError):
    """Raised when an object has no usable metadata to build a queue key from."""


class CacheSyncTimeoutError(RuntimeError):
    """Raised when the watched caches do not finish their initial list in time."""


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` (or ``name`` for cluster-scoped objects)."""
    if not isinstance(obj, Mapping):
        raise KeyFuncError(f"object has no metadata: {type(obj).__name__}")
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        raise KeyFuncError("object has no metadata")
    name = metadata.get("name")
    if not name:
        raise KeyFuncError("object has no metadata.name")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Invert :func:`meta_namespace_key`. Raises ``ValueError`` on malformed keys."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def object_labels(obj: dict[str, Any]) -> dict[str, str]:
    metadata = obj.get("metadata") or {}
    labels = metadata.get("labels") or {}
    return labels if isinstance(labels, dict) else {}


def label_selector_predicate(selector: Mapping[str, str]) -> Predicate:
    """Build a predicate matching objects whose labels contain every pair in *selector*."""
    wanted = dict(selector)

    def _matches(obj: dict[str, Any]) -> bool:
        labels = object_labels(obj)
        return all(labels.get(key) == value for key, value in wanted.items())

    return _matches


def wait_for_cache_sync(
    store: ResourceStore,
    kinds: Iterable[str],
    timeout_seconds: float,
    stop_event: threading.Event | None = None,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Poll ``has_synced`` for every kind until all report True.

    Returns False if *timeout_seconds* elapses or *stop_event* is set first.
    """
    pending = list(kinds)
    stop = stop_event or threading.Event()
    deadline = time.monotonic() + timeout_seconds
    while True:
        pending = [kind for kind in pending if not store.has_synced(kind)]
        if not pending:
            return True
        if stop.is_set():
            LOGGER.warning("Stop requested while waiting for caches: %s", ", ".join(pending))
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            LOGGER.error("Timed out waiting for caches to sync: %s", ", ".join(pending))
            return False
        stop.wait(timeout=min(poll_interval_seconds, remaining))
