from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Callable
from typing import Any

from kubernetes.client import CoreV1Api

from restore_controller.src.conditions import utc_now_rfc3339
from restore_controller.src.metrics import METRICS
from restore_controller.src.models import API_VERSION, RESTORE_KIND, Restore

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

COMPONENT = "operator-restore-controller"


class EventRecorder:
    """Fire-and-forget recorder of Kubernetes Events about Restores.

    ``event`` logs the event and hands it to a background sender thread
    through a bounded buffer, so callers never wait on the API server.  A
    full buffer or a failed ``create_namespaced_event`` call drops the event
    with a warning; neither is ever raised to the caller.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = COMPONENT,
        buffer_size: int = 1000,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.now_fn = now_fn
        self._buffer: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=buffer_size)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._send_loop, name="event-recorder", daemon=True)
        self._thread.start()

    def stop(self, join_timeout_seconds: float = 5.0) -> None:
        """Flush buffered events and stop the sender."""
        if self._thread is None:
            return
        try:
            self._buffer.put(None, timeout=join_timeout_seconds)
        except queue.Full:
            LOGGER.warning("Event buffer still full at shutdown; pending events dropped")
        self._thread.join(timeout=join_timeout_seconds)
        self._thread = None

    def event(self, restore: Restore, event_type: str, reason: str, message: str) -> None:
        log = LOGGER.warning if event_type == EVENT_TYPE_WARNING else LOGGER.info
        log("Event(%s %s): type=%s reason=%s %s", RESTORE_KIND, restore.key, event_type, reason, message)
        try:
            self._buffer.put_nowait(self.build_event(restore, event_type, reason, message))
        except queue.Full:
            METRICS.events_dropped_total.inc()
            LOGGER.warning("Event buffer full; dropping %s event for Restore %s", reason, restore.key)

    def build_event(
        self, restore: Restore, event_type: str, reason: str, message: str
    ) -> dict[str, Any]:
        metadata = restore.raw.get("metadata") or {}
        timestamp = self.now_fn()
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{restore.name}.{uuid.uuid4().hex[:16]}",
                "namespace": restore.namespace,
            },
            "involvedObject": {
                "apiVersion": API_VERSION,
                "kind": RESTORE_KIND,
                "name": restore.name,
                "namespace": restore.namespace,
                "uid": metadata.get("uid"),
                "resourceVersion": metadata.get("resourceVersion"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

    def send(self, body: dict[str, Any]) -> None:
        """Create one Event; failures are logged and counted."""
        try:
            self.core_api.create_namespaced_event(
                namespace=body["metadata"]["namespace"],
                body=body,
            )
        except Exception:
            METRICS.events_dropped_total.inc()
            LOGGER.warning(
                "Failed to record %s event for %s/%s",
                body.get("reason"),
                body["metadata"]["namespace"],
                body["involvedObject"]["name"],
                exc_info=True,
            )

    def _send_loop(self) -> None:
        while True:
            body = self._buffer.get()
            if body is None:
                return
            self.send(body)
