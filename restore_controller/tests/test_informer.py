from __future__ import annotations

import threading
from typing import Any

import pytest
from kubernetes.client import ApiException

from restore_controller.src.informer import InformerStore, ResourceInformer
from restore_controller.src.store import CLUSTER, POD, RESTORE, label_selector_predicate


def obj(name: str, namespace: str = "ns", rv: str = "1", **labels: str) -> dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": rv,
            "labels": dict(labels),
        }
    }


def list_response(*items: dict[str, Any], rv: str = "10") -> dict[str, Any]:
    return {"metadata": {"resourceVersion": rv}, "items": list(items)}


class FakeWatch:
    """Replays scripted streams. Each entry is a list of events or an exception."""

    def __init__(self, script: list[Any], on_exhausted: threading.Event) -> None:
        self.script = script
        self.on_exhausted = on_exhausted
        self.stream_calls: list[dict[str, Any]] = []
        self.stopped = 0
        self.exhausted = False
        self.released = threading.Event()

    def __call__(self) -> FakeWatch:
        return self

    def stream(self, func: Any, **kwargs: Any):
        self.stream_calls.append(kwargs)
        if not self.script:
            self.exhausted = True
            self.on_exhausted.set()
            self.released.wait(timeout=2)
            return
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        yield from step

    def stop(self) -> None:
        self.stopped += 1
        if self.exhausted:
            self.released.set()


def test_relist_fills_cache_and_dispatches_adds() -> None:
    added: list[str] = []
    informer = ResourceInformer(
        RESTORE,
        lambda: list_response(obj("r1"), obj("r2")),
        on_added=lambda o: added.append(o["metadata"]["name"]),
    )

    assert not informer.has_synced
    informer.relist()

    assert informer.has_synced
    assert added == ["r1", "r2"]
    assert informer.get("ns", "r1") == obj("r1")
    assert informer.get("ns", "missing") is None


def test_relist_only_dispatches_new_objects_and_drops_vanished_ones() -> None:
    responses = [list_response(obj("r1"), obj("r2")), list_response(obj("r2"), obj("r3"))]
    added: list[str] = []
    informer = ResourceInformer(
        RESTORE, lambda: responses.pop(0), on_added=lambda o: added.append(o["metadata"]["name"])
    )

    informer.relist()
    informer.relist()

    assert added == ["r1", "r2", "r3"]
    assert informer.get("ns", "r1") is None


def test_handle_event_updates_cache_and_dispatches_only_new_adds() -> None:
    added: list[str] = []
    informer = ResourceInformer(
        RESTORE, lambda: list_response(), on_added=lambda o: added.append(o["metadata"]["name"])
    )
    informer.relist()

    informer.handle_event({"type": "ADDED", "object": obj("r1", rv="11")})
    informer.handle_event({"type": "ADDED", "object": obj("r1", rv="11")})
    informer.handle_event({"type": "MODIFIED", "object": obj("r1", rv="12")})
    assert informer.get("ns", "r1")["metadata"]["resourceVersion"] == "12"

    informer.handle_event({"type": "DELETED", "object": obj("r1", rv="13")})
    informer.handle_event({"type": "BOOKMARK", "object": obj("r9", rv="14")})

    assert added == ["r1"]
    assert informer.get("ns", "r1") is None
    assert informer.get("ns", "r9") is None


def test_handler_errors_do_not_break_the_cache() -> None:
    def boom(_: dict[str, Any]) -> None:
        raise RuntimeError("handler failed")

    informer = ResourceInformer(RESTORE, lambda: list_response(obj("r1")), on_added=boom)

    informer.relist()

    assert informer.get("ns", "r1") is not None


def test_list_filters_by_namespace_and_predicate() -> None:
    informer = ResourceInformer(
        POD,
        lambda: list_response(
            obj("p0", role="primary"),
            obj("p1", role="secondary"),
            obj("p2", namespace="other", role="primary"),
        ),
    )
    informer.relist()

    names = [o["metadata"]["name"] for o in informer.list("ns", label_selector_predicate({"role": "primary"}))]

    assert names == ["p0"]
    assert len(informer.list("ns")) == 2


def test_run_watches_from_list_resource_version() -> None:
    done = threading.Event()
    fake_watch = FakeWatch([[{"type": "ADDED", "object": obj("r1", rv="11")}]], done)
    informer = ResourceInformer(
        RESTORE, lambda: list_response(rv="10"), watch_factory=fake_watch, watch_timeout_seconds=5
    )

    informer.start()
    assert done.wait(timeout=2)
    informer.stop(join_timeout_seconds=2)

    assert fake_watch.stream_calls[0] == {"resource_version": "10", "timeout_seconds": 5}
    assert fake_watch.stream_calls[1]["resource_version"] == "11"
    assert informer.get("ns", "r1") is not None
    assert fake_watch.stopped >= 1


def test_run_relists_after_gone() -> None:
    done = threading.Event()
    lists: list[str] = []

    def list_fn() -> dict[str, Any]:
        lists.append("list")
        return list_response(rv=str(10 + len(lists)))

    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], done)
    informer = ResourceInformer(RESTORE, list_fn, watch_factory=fake_watch)

    informer.start()
    assert done.wait(timeout=2)
    informer.stop(join_timeout_seconds=2)

    assert len(lists) == 2
    assert fake_watch.stream_calls[1]["resource_version"] == "12"


def test_run_stops_on_forbidden_and_reports_failure() -> None:
    failed: list[str] = []
    fake_watch = FakeWatch([ApiException(status=403, reason="Forbidden")], threading.Event())
    informer = ResourceInformer(
        CLUSTER, lambda: list_response(), watch_factory=fake_watch, on_fatal=failed.append
    )

    informer.run()

    assert len(fake_watch.stream_calls) == 1
    assert informer.failed
    assert not informer.has_synced
    assert failed == [CLUSTER]


def test_modified_event_for_uncached_key_dispatches_add() -> None:
    added: list[str] = []
    informer = ResourceInformer(
        RESTORE, lambda: list_response(), on_added=lambda o: added.append(o["metadata"]["name"])
    )
    informer.relist()

    informer.handle_event({"type": "MODIFIED", "object": obj("r5", rv="11")})
    informer.handle_event({"type": "MODIFIED", "object": obj("r5", rv="12")})

    assert added == ["r5"]
    assert informer.get("ns", "r5")["metadata"]["resourceVersion"] == "12"


def test_informer_store_routes_by_kind() -> None:
    restores = ResourceInformer(RESTORE, lambda: list_response(obj("r1")))
    pods = ResourceInformer(POD, lambda: list_response(obj("p0", role="primary")))
    store = InformerStore({RESTORE: restores, POD: pods})

    assert not store.has_synced(RESTORE)
    restores.relist()
    pods.relist()

    assert store.has_synced(RESTORE)
    assert store.has_synced(POD)
    assert not store.has_synced(CLUSTER)
    assert store.get_by_key(RESTORE, "ns", "r1") is not None
    assert store.get_by_key(POD, "ns", "r1") is None
    assert len(store.list_by_predicate(POD, "ns", label_selector_predicate({"role": "primary"}))) == 1

    with pytest.raises(LookupError):
        store.get_by_key(CLUSTER, "ns", "db1")


def test_informer_store_reports_a_stopped_informer() -> None:
    stopped: list[str] = []
    fake_watch = FakeWatch([ApiException(status=401, reason="Unauthorized")], threading.Event())
    pods = ResourceInformer(POD, lambda: list_response(), watch_factory=fake_watch)
    restores = ResourceInformer(RESTORE, lambda: list_response())
    store = InformerStore({RESTORE: restores, POD: pods}, on_fatal=stopped.append)

    restores.relist()
    pods.run()

    assert store.failed.is_set()
    assert stopped == [POD]
    assert not store.has_synced(POD)
    assert store.has_synced(RESTORE)
