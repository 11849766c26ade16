from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import CoreV1Api, CustomObjectsApi

from restore_controller.src.conditions import (
    ConditionUpdater,
    get_restore_condition,
    is_failed,
    is_scheduled,
)
from restore_controller.src.config import RUNTIME_VERSION, ControllerConfig
from restore_controller.src.events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from restore_controller.src.informer import InformerStore, ResourceInformer
from restore_controller.src.kube import RestoreClient, custom_object_lister, pod_lister
from restore_controller.src.metrics import METRICS
from restore_controller.src.models import (
    BACKUP_PLURAL,
    CLUSTER_PLURAL,
    CONDITION_FAILED,
    CONDITION_FALSE,
    CONDITION_SCHEDULED,
    CONDITION_TRUE,
    RESTORE_PLURAL,
    Restore,
    RestoreCondition,
)
from restore_controller.src.scheduler import schedule_restore
from restore_controller.src.store import (
    BACKUP,
    CLUSTER,
    POD,
    RESTORE,
    CacheSyncTimeoutError,
    KeyFuncError,
    ResourceStore,
    meta_namespace_key,
    split_meta_namespace_key,
    wait_for_cache_sync,
)
from restore_controller.src.validation import AggregateError, FieldPath, not_found, to_aggregate
from restore_controller.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

WATCHED_KINDS = (RESTORE, CLUSTER, BACKUP, POD)

REASON_FAILED_VALIDATION = "FailedValidation"
REASON_SUCCESS_SCHEDULED = "SuccessScheduled"


class RestoreNotFoundError(LookupError):
    """The Restore behind a queue key is no longer in the cache."""


class Recorder(Protocol):
    def event(self, restore: Restore, event_type: str, reason: str, message: str) -> None: ...


class Writer(Protocol):
    def update(self, restore: Restore) -> Restore: ...


class StatusUpdater(Protocol):
    def update(self, restore: Restore, condition: RestoreCondition) -> None: ...


class RestoreController:
    """Validates Restores and schedules each one on its Cluster's primary pod.

    Restore add notifications pass through :meth:`on_restore_added`, which
    enqueues a ``namespace/name`` key unless the Restore is already
    scheduled.  ``num_workers`` threads drain the queue and call
    :meth:`sync_restore` per key, which always re-reads the latest cached
    object rather than trusting the notification payload.

    Outcome of a sync:
        * invalid spec or missing Cluster/Backup: ``Failed`` condition with
          reason ``FailedValidation`` plus a warning event.  Not retried;
          only a failure to write the condition is.
        * valid: ``spec.scheduledMember`` set to the primary pod,
          ``Scheduled=True``, object written back, normal event.
        * any exception (API errors, no primary yet, Restore gone from the
          cache): the key is re-queued with per-key exponential backoff.
    """

    def __init__(
        self,
        store: ResourceStore,
        client: Writer,
        condition_updater: StatusUpdater,
        recorder: Recorder,
        queue: RateLimitingQueue | None = None,
        operator_version: str = RUNTIME_VERSION,
        cache_sync_timeout_seconds: float = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.condition_updater = condition_updater
        self.recorder = recorder
        self.queue = queue or RateLimitingQueue(name="restore")
        self.operator_version = operator_version
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.sync_handler = self.sync_restore
        self.ready = threading.Event()

    def on_restore_added(self, obj: Any) -> None:
        """Admission filter for Restore add notifications."""
        if isinstance(obj, dict):
            restore = Restore.from_dict(obj)
            _, condition = get_restore_condition(restore.status, CONDITION_SCHEDULED)
            if condition is not None and condition.status == CONDITION_TRUE:
                self.logger.debug(
                    "Restore %s is already scheduled on Cluster member %r",
                    restore.key,
                    restore.spec.scheduled_member,
                    extra={"restore": restore.key},
                )
                METRICS.admission_skipped_total.labels(reason="already_scheduled").inc()
                return

        try:
            key = meta_namespace_key(obj)
        except KeyFuncError as exc:
            self.logger.error("Error creating queue key, item not added to queue: %s", exc)
            METRICS.admission_skipped_total.labels(reason="bad_key").inc()
            return
        self.logger.debug("Enqueueing Restore %s", key, extra={"restore": key})
        self.queue.add(key)

    def run(self, stop_event: threading.Event, num_workers: int) -> None:
        """Run *num_workers* workers until *stop_event* is set.

        Blocks until the Restore, Cluster, Backup and Pod caches have each
        completed an initial list, raising :class:`CacheSyncTimeoutError`
        if that takes longer than ``cache_sync_timeout_seconds``.  On return
        the queue is shut down and every worker has exited.
        """
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")

        workers: list[threading.Thread] = []
        self.logger.info("Starting RestoreController")
        try:
            self.logger.info("Waiting for caches to sync")
            if not wait_for_cache_sync(
                self.store, WATCHED_KINDS, self.cache_sync_timeout_seconds, stop_event
            ):
                if stop_event.is_set():
                    return
                raise CacheSyncTimeoutError("timed out waiting for caches to sync")
            self.logger.info("Caches are synced")
            self.ready.set()

            for index in range(num_workers):
                worker = threading.Thread(
                    target=self._run_worker, name=f"restore-worker-{index}", daemon=True
                )
                worker.start()
                workers.append(worker)

            stop_event.wait()
        finally:
            self.logger.info("Waiting for workers to finish their work")
            self.queue.shut_down()
            for worker in workers:
                worker.join()
            self.ready.clear()
            self.logger.info("All workers have finished; RestoreController stopped")

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Handle one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        started = time.monotonic()
        try:
            self.sync_handler(key)
        except Exception:
            self.logger.exception(
                "Error syncing Restore %s, re-adding to queue", key, extra={"restore": key}
            )
            METRICS.sync_total.labels(result="error").inc()
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def sync_restore(self, key: str) -> None:
        """Reconcile the Restore stored under *key*. Raises on retryable failures."""
        namespace, name = split_meta_namespace_key(key)

        cached = self.store.get_by_key(RESTORE, namespace, name)
        if cached is None:
            raise RestoreNotFoundError(f"Restore {key} not found in cache")

        # from_dict deep-copies, so the cached dict is never mutated.
        restore = Restore.from_dict(cached).ensure_defaults(self.operator_version)

        if is_failed(restore) or is_scheduled(restore):
            self.logger.info(
                "Restore %s needs no scheduling (member=%r)",
                key,
                restore.spec.scheduled_member,
                extra={"restore": key},
            )
            METRICS.sync_total.labels(result="skipped").inc()
            return

        validation_error = restore.validate(self.operator_version)
        if validation_error is None:
            validation_error = self.check_references(restore)

        if validation_error is not None:
            message = str(validation_error)
            self.logger.info(
                "Restore %s failed validation: %s", key, message, extra={"restore": key}
            )
            self.recorder.event(restore, EVENT_TYPE_WARNING, REASON_FAILED_VALIDATION, message)
            # Only a failed condition write is retried, never the validation.
            self.condition_updater.update(
                restore,
                RestoreCondition(
                    type=CONDITION_FAILED,
                    status=CONDITION_FALSE,
                    reason=REASON_FAILED_VALIDATION,
                    message=message,
                ),
            )
            METRICS.sync_total.labels(result="invalid").inc()
            return

        restore = schedule_restore(restore, self.store)
        updated = self.client.update(restore)

        self.recorder.event(
            updated,
            EVENT_TYPE_NORMAL,
            REASON_SUCCESS_SCHEDULED,
            f'Scheduled on Pod "{updated.spec.scheduled_member}"',
        )
        METRICS.sync_total.labels(result="scheduled").inc()

    def check_references(self, restore: Restore) -> AggregateError | None:
        """Verify the referenced Cluster and Backup exist in the Restore's namespace."""
        errors = []
        spec_path = FieldPath("spec")
        cluster_name = restore.spec.cluster_name or ""
        backup_name = restore.spec.backup_name or ""

        if self.store.get_by_key(CLUSTER, restore.namespace, cluster_name) is None:
            errors.append(not_found(spec_path.child("cluster").child("name"), cluster_name))
        if self.store.get_by_key(BACKUP, restore.namespace, backup_name) is None:
            errors.append(not_found(spec_path.child("backup").child("name"), backup_name))
        return to_aggregate(errors)


@dataclass(frozen=True)
class ControllerRuntime:
    """Everything ``__main__`` needs to start and stop a wired controller."""

    controller: RestoreController
    store: InformerStore
    recorder: EventRecorder


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> ControllerRuntime:
    """Wire informers, clients, recorder and queue into a :class:`RestoreController`."""
    namespace = config.namespace
    restore_client = RestoreClient(custom_api)
    recorder = EventRecorder(core_api)
    queue = RateLimitingQueue(
        name="restore",
        rate_limiter=default_controller_rate_limiter(
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            qps=config.retry_qps,
            burst=config.retry_burst,
        ),
    )

    restore_informer = ResourceInformer(
        RESTORE, custom_object_lister(custom_api, RESTORE_PLURAL, namespace)
    )
    store = InformerStore(
        {
            RESTORE: restore_informer,
            CLUSTER: ResourceInformer(
                CLUSTER, custom_object_lister(custom_api, CLUSTER_PLURAL, namespace)
            ),
            BACKUP: ResourceInformer(
                BACKUP, custom_object_lister(custom_api, BACKUP_PLURAL, namespace)
            ),
            POD: ResourceInformer(POD, pod_lister(core_api, namespace)),
        }
    )

    controller = RestoreController(
        store=store,
        client=restore_client,
        condition_updater=ConditionUpdater(restore_client),
        recorder=recorder,
        queue=queue,
        operator_version=config.operator_version,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )
    restore_informer.on_added = controller.on_restore_added
    return ControllerRuntime(controller=controller, store=store, recorder=recorder)
