from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from restore_controller.src.kube import to_plain_dict
from restore_controller.src.metrics import METRICS
from restore_controller.src.store import KeyFuncError, Predicate, meta_namespace_key

LOGGER = logging.getLogger(__name__)

AddHandler = Callable[[dict[str, Any]], None]
FatalHandler = Callable[[str], None]


class ResourceInformer:
    """List-then-watch cache for one resource kind in one namespace.

    A background thread lists the kind once, marks the cache as synced, then
    streams watch events from the list's ``resourceVersion`` to keep it
    fresh.  Objects are stored as plain dicts keyed by ``namespace/name``.

    ``on_added`` is invoked (outside the cache lock) for every object that
    enters the cache: every item of the initial list, items that appear in a
    re-list after ``410 Gone``, and ``ADDED`` or ``MODIFIED`` watch events for
    keys not yet cached.  Handler errors are logged and never stop the
    watch.

    Watch failures back off exponentially with jitter (1 s doubling to 30 s).
    ``401``/``403`` mean missing RBAC, which retrying will not fix, so the
    informer stops, reports itself as no longer synced and calls
    ``on_fatal`` with its kind.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        on_added: AddHandler | None = None,
        on_fatal: FatalHandler | None = None,
        watch_timeout_seconds: int = 60,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.on_added = on_added
        self.on_fatal = on_fatal
        self.watch_timeout_seconds = watch_timeout_seconds
        self.watch_factory = watch_factory

        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._resource_version: str | None = None
        self._has_synced = False
        self._failed = False
        self._needs_relist = True
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        METRICS.cache_synced.labels(kind=kind).set(0)

    @property
    def has_synced(self) -> bool:
        """Return True once an initial list has completed, until a fatal watch error."""
        return self._has_synced and not self._failed

    @property
    def failed(self) -> bool:
        return self._failed

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            name=f"informer-{self.kind.lower()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, join_timeout_seconds: float | None = None) -> None:
        """Stop the watch loop and interrupt any open stream."""
        self._stop_event.set()
        with self._lock:
            watcher = self._active_watcher
        if watcher is not None:
            watcher.stop()
        if self._thread is not None and join_timeout_seconds is not None:
            self._thread.join(timeout=join_timeout_seconds)

    def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            return self._cache.get(key)

    def list(self, namespace: str, predicate: Predicate | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._cache.values())
        return [
            item
            for item in items
            if (item.get("metadata") or {}).get("namespace", "") == namespace
            and (predicate is None or predicate(item))
        ]

    def run(self) -> None:
        backoff_seconds = 1.0
        while not self._stop_event.is_set():
            try:
                if self._needs_relist:
                    self.relist()
                    backoff_seconds = 1.0
                self._watch_once()
                backoff_seconds = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("%s watch resource version expired, re-listing", self.kind)
                    self._needs_relist = True
                    continue
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied for %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._fail()
                    return
                LOGGER.exception("Kubernetes API error while watching %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                LOGGER.exception("Unexpected error while watching %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                backoff_seconds = self._backoff(backoff_seconds)

    def _fail(self) -> None:
        self._failed = True
        METRICS.cache_synced.labels(kind=self.kind).set(0)
        if self.on_fatal is not None:
            self.on_fatal(self.kind)

    def _backoff(self, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30.0)

    def relist(self) -> None:
        """Replace the cache with a fresh list and dispatch adds for new objects."""
        response = to_plain_dict(self.list_fn())
        metadata = response.get("metadata") or {}
        fresh: dict[str, dict[str, Any]] = {}
        for item in response.get("items") or []:
            item = to_plain_dict(item)
            try:
                fresh[meta_namespace_key(item)] = item
            except KeyFuncError:
                LOGGER.warning("Skipping %s without metadata.name in list response", self.kind)

        with self._lock:
            added = [obj for key, obj in fresh.items() if key not in self._cache]
            self._cache = fresh
            self._resource_version = metadata.get("resourceVersion")
            self._needs_relist = False
            self._has_synced = True
        METRICS.cache_synced.labels(kind=self.kind).set(1)
        LOGGER.info(
            "Listed %d %s object(s) at resourceVersion %s",
            len(fresh),
            self.kind,
            self._resource_version,
        )
        for obj in added:
            self._dispatch_add(obj)

    def _watch_once(self) -> None:
        watcher = self.watch_factory()
        with self._lock:
            self._active_watcher = watcher
        try:
            for event in watcher.stream(
                self.list_fn,
                resource_version=self._resource_version,
                timeout_seconds=self.watch_timeout_seconds,
            ):
                if self._stop_event.is_set():
                    break
                self.handle_event(event)
        finally:
            watcher.stop()
            with self._lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def handle_event(self, event: Mapping[str, Any]) -> None:
        raw = event.get("object")
        event_type = str(event.get("type", ""))
        if raw is None or event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return

        obj = to_plain_dict(raw)
        try:
            key = meta_namespace_key(obj)
        except KeyFuncError:
            LOGGER.warning("Ignoring %s %s event without metadata.name", self.kind, event_type)
            return

        with self._lock:
            known = key in self._cache
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj
            resource_version = (obj.get("metadata") or {}).get("resourceVersion")
            if resource_version:
                self._resource_version = resource_version

        if event_type != "DELETED" and not known:
            self._dispatch_add(obj)

    def _dispatch_add(self, obj: dict[str, Any]) -> None:
        if self.on_added is None:
            return
        try:
            self.on_added(obj)
        except Exception:
            LOGGER.exception("%s add handler failed", self.kind)


class InformerStore:
    """Serves the :class:`~restore_controller.src.store.ResourceStore` contract from informers.

    ``failed`` is set once any informer stops for good; ``on_fatal`` (if set)
    is then called with that informer's kind so the process can shut down
    instead of serving a cache that no longer updates.
    """

    def __init__(
        self,
        informers: Mapping[str, ResourceInformer],
        on_fatal: FatalHandler | None = None,
    ) -> None:
        self.informers = dict(informers)
        self.on_fatal = on_fatal
        self.failed = threading.Event()
        for informer in self.informers.values():
            informer.on_fatal = self._informer_failed

    def _informer_failed(self, kind: str) -> None:
        LOGGER.error("%s informer stopped; its cache is no longer updated", kind)
        self.failed.set()
        if self.on_fatal is not None:
            self.on_fatal(kind)

    def _informer(self, kind: str) -> ResourceInformer:
        try:
            return self.informers[kind]
        except KeyError:
            raise LookupError(f"no informer registered for kind {kind!r}") from None

    def get_by_key(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        return self._informer(kind).get(namespace, name)

    def list_by_predicate(
        self, kind: str, namespace: str, predicate: Predicate
    ) -> list[dict[str, Any]]:
        return self._informer(kind).list(namespace, predicate)

    def has_synced(self, kind: str) -> bool:
        informer = self.informers.get(kind)
        return informer is not None and informer.has_synced

    def start(self) -> None:
        for informer in self.informers.values():
            informer.start()

    def stop(self, join_timeout_seconds: float | None = None) -> None:
        for informer in self.informers.values():
            informer.stop(join_timeout_seconds=join_timeout_seconds)
