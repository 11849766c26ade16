from __future__ import annotations

import logging
from typing import Any

from restore_controller.src.conditions import is_scheduled, update_restore_condition
from restore_controller.src.models import (
    CLUSTER_LABEL,
    CONDITION_SCHEDULED,
    CONDITION_TRUE,
    PRIMARY_ROLE,
    ROLE_LABEL,
    Restore,
    RestoreCondition,
)
from restore_controller.src.store import POD, ResourceStore, label_selector_predicate

LOGGER = logging.getLogger(__name__)


class SchedulingError(RuntimeError):
    """Raised when no primary member is available to run a Restore."""


def primary_selector(cluster_name: str) -> dict[str, str]:
    """Labels carried by the primary pod of *cluster_name*."""
    return {CLUSTER_LABEL: cluster_name, ROLE_LABEL: PRIMARY_ROLE}


def _pod_name(pod: dict[str, Any]) -> str:
    return str((pod.get("metadata") or {}).get("name") or "")


def schedule_restore(restore: Restore, store: ResourceStore) -> Restore:
    """Pick the primary pod that should execute *restore*.

    Mutates and returns *restore* (a private copy owned by the caller):
    ``spec.scheduled_member`` is set to the chosen pod and the ``Scheduled``
    condition becomes ``True``.  Candidates are sorted by name and the first
    one wins, so a transient double primary still yields a stable choice.

    A Restore that is already scheduled is returned untouched.
    """
    if is_scheduled(restore):
        LOGGER.info(
            "Restore %s already scheduled on %s; keeping existing member",
            restore.key,
            restore.spec.scheduled_member,
        )
        return restore

    cluster_name = restore.spec.cluster_name or ""
    candidates = store.list_by_predicate(
        POD, restore.namespace, label_selector_predicate(primary_selector(cluster_name))
    )
    members = sorted(name for name in (_pod_name(pod) for pod in candidates) if name)
    if not members:
        raise SchedulingError(
            f"no primaries found for Cluster {restore.namespace}/{cluster_name}"
        )
    if len(members) > 1:
        LOGGER.warning(
            "Found %d primaries for Cluster %s/%s (%s); choosing %s",
            len(members),
            restore.namespace,
            cluster_name,
            ", ".join(members),
            members[0],
        )

    update_restore_condition(
        restore.status,
        RestoreCondition(type=CONDITION_SCHEDULED, status=CONDITION_TRUE),
    )
    restore.spec.scheduled_member = members[0]
    return restore
