from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from restore_controller.src.validation import (
    AggregateError,
    FieldError,
    FieldPath,
    invalid,
    required,
    to_aggregate,
)

GROUP = "mysql.oracle.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

RESTORE_KIND = "Restore"
RESTORE_PLURAL = "mysqlrestores"
CLUSTER_PLURAL = "mysqlclusters"
BACKUP_PLURAL = "mysqlbackups"

OPERATOR_VERSION_LABEL = "v1alpha1.mysql.oracle.com/version"
CLUSTER_LABEL = "v1alpha1.mysql.oracle.com/cluster"
ROLE_LABEL = "v1alpha1.mysql.oracle.com/role"
PRIMARY_ROLE = "primary"

CONDITION_SCHEDULED = "Scheduled"
CONDITION_FAILED = "Failed"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


@dataclass
class RestoreCondition:
    """A typed, timestamped status fact. At most one per ``type`` on a Restore."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RestoreCondition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", CONDITION_UNKNOWN)),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
            last_transition_time=raw.get("lastTransitionTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.last_transition_time is not None:
            result["lastTransitionTime"] = self.last_transition_time
        if self.reason:
            result["reason"] = self.reason
        if self.message:
            result["message"] = self.message
        return result


@dataclass
class RestoreStatus:
    conditions: list[RestoreCondition] = field(default_factory=list)


@dataclass
class RestoreSpec:
    """Requester intent: which backup to restore into which cluster.

    ``scheduled_member`` stays empty until the controller picks a primary pod.
    """

    cluster_name: str | None = None
    backup_name: str | None = None
    scheduled_member: str = ""


@dataclass
class Restore:
    """A ``mysqlrestores`` custom resource.

    Only the fields the controller reasons about are modelled; everything
    else in the wire document is kept in ``raw`` and written back untouched
    by :meth:`to_dict`, so updates never drop ``resourceVersion``,
    annotations or owner references.
    """

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    spec: RestoreSpec = field(default_factory=RestoreSpec)
    status: RestoreStatus = field(default_factory=RestoreStatus)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> Restore:
        """Parse a wire document. The input is deep-copied and never mutated."""
        raw = copy.deepcopy(obj)
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}

        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            labels=dict(metadata.get("labels") or {}),
            spec=RestoreSpec(
                cluster_name=_reference_name(spec.get("cluster")),
                backup_name=_reference_name(spec.get("backup")),
                scheduled_member=str(spec.get("scheduledMember") or ""),
            ),
            status=RestoreStatus(
                conditions=[
                    RestoreCondition.from_dict(condition)
                    for condition in status.get("conditions") or []
                    if isinstance(condition, dict)
                ]
            ),
            raw=raw,
        )

    def to_dict(self) -> dict[str, Any]:
        result = copy.deepcopy(self.raw)
        result.setdefault("apiVersion", API_VERSION)
        result.setdefault("kind", RESTORE_KIND)

        metadata = result.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)

        spec = result.setdefault("spec", {})
        if self.spec.cluster_name is not None:
            spec["cluster"] = {"name": self.spec.cluster_name}
        if self.spec.backup_name is not None:
            spec["backup"] = {"name": self.spec.backup_name}
        spec["scheduledMember"] = self.spec.scheduled_member

        status = result.setdefault("status", {})
        status["conditions"] = [condition.to_dict() for condition in self.status.conditions]
        return result

    def deep_copy(self) -> Restore:
        return Restore.from_dict(self.to_dict())

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @property
    def resource_version(self) -> str | None:
        return (self.raw.get("metadata") or {}).get("resourceVersion")

    def ensure_defaults(self, operator_version: str) -> Restore:
        """Stamp the operator version label unless the requester already set one."""
        if OPERATOR_VERSION_LABEL not in self.labels:
            self.labels[OPERATOR_VERSION_LABEL] = operator_version
        return self

    def validate(self, operator_version: str) -> AggregateError | None:
        """Return the structural validation errors of this Restore, if any."""
        errors: list[FieldError] = []

        label_path = FieldPath("metadata").child("labels").key(OPERATOR_VERSION_LABEL)
        version = self.labels.get(OPERATOR_VERSION_LABEL)
        if version is None:
            errors.append(required(label_path, "missing operator version label"))
        elif version != operator_version:
            errors.append(
                invalid(
                    label_path,
                    version,
                    f"restore managed by operator version {version!r}, "
                    f"this operator is {operator_version!r}",
                )
            )

        spec_path = FieldPath("spec")
        if not self.spec.cluster_name:
            errors.append(required(spec_path.child("cluster"), "missing cluster"))
        if not self.spec.backup_name:
            errors.append(required(spec_path.child("backup"), "missing backup"))

        return to_aggregate(errors)


def _reference_name(reference: Any) -> str | None:
    if not isinstance(reference, dict):
        return None
    name = reference.get("name")
    return str(name) if name else None
