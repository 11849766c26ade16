from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from kubernetes.client import ApiException

from restore_controller.src.models import (
    CONDITION_FAILED,
    CONDITION_SCHEDULED,
    CONDITION_TRUE,
    Restore,
    RestoreCondition,
    RestoreStatus,
)

LOGGER = logging.getLogger(__name__)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def get_restore_condition(
    status: RestoreStatus, condition_type: str
) -> tuple[int, RestoreCondition | None]:
    """Return ``(index, condition)`` for *condition_type*, or ``(-1, None)``."""
    for index, condition in enumerate(status.conditions):
        if condition.type == condition_type:
            return index, condition
    return -1, None


def update_restore_condition(
    status: RestoreStatus,
    condition: RestoreCondition,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Upsert *condition* into *status* by type. Returns True if anything changed.

    The transition time is stamped with ``now_fn()`` unless a condition of
    the same type already carries the same status value, in which case its
    original transition time is kept.
    """
    condition = dataclasses.replace(condition, last_transition_time=now_fn())
    index, existing = get_restore_condition(status, condition.type)
    if existing is None:
        status.conditions.append(condition)
        return True

    if condition.status == existing.status:
        condition.last_transition_time = existing.last_transition_time

    unchanged = (
        condition.status == existing.status
        and condition.reason == existing.reason
        and condition.message == existing.message
        and condition.last_transition_time == existing.last_transition_time
    )
    status.conditions[index] = condition
    return not unchanged


def is_scheduled(restore: Restore) -> bool:
    """True once a Restore carries ``Scheduled=True`` and names its member."""
    _, condition = get_restore_condition(restore.status, CONDITION_SCHEDULED)
    return (
        condition is not None
        and condition.status == CONDITION_TRUE
        and bool(restore.spec.scheduled_member)
    )


def is_failed(restore: Restore) -> bool:
    _, condition = get_restore_condition(restore.status, CONDITION_FAILED)
    return condition is not None and condition.status == CONDITION_TRUE


class RestoreWriter(Protocol):
    def get(self, namespace: str, name: str) -> Restore: ...

    def update(self, restore: Restore) -> Restore: ...


class ConditionUpdater:
    """Persists a single condition change on a Restore, retrying write conflicts.

    Conflicts (HTTP 409) mean another writer bumped ``resourceVersion``
    between our read and write.  The latest object is re-read, the condition
    re-applied, and the write attempted again, up to ``steps`` attempts
    ``interval_seconds`` apart.  Any other API error is raised immediately.
    """

    def __init__(
        self,
        client: RestoreWriter,
        steps: int = 5,
        interval_seconds: float = 0.01,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if steps < 1:
            raise ValueError("steps must be >= 1")
        self.client = client
        self.steps = steps
        self.interval_seconds = interval_seconds
        self.now_fn = now_fn
        self.sleep_fn = sleep_fn

    def update(self, restore: Restore, condition: RestoreCondition) -> None:
        current = restore
        for attempt in range(1, self.steps + 1):
            if not update_restore_condition(current.status, condition, now_fn=self.now_fn):
                LOGGER.debug(
                    "Condition %s on Restore %s already up to date", condition.type, current.key
                )
                return
            try:
                self.client.update(current)
                return
            except ApiException as exc:
                if exc.status != 409 or attempt == self.steps:
                    raise
                LOGGER.info(
                    "Conflict updating condition %s on Restore %s (attempt %d/%d); re-reading",
                    condition.type,
                    current.key,
                    attempt,
                    self.steps,
                )
            self.sleep_fn(self.interval_seconds)
            current = self.client.get(current.namespace, current.name)
