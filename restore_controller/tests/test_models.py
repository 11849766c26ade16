from __future__ import annotations

from typing import Any

import pytest

from restore_controller.src.models import OPERATOR_VERSION_LABEL, Restore
from restore_controller.src.validation import (
    AggregateError,
    FieldPath,
    invalid,
    not_found,
    required,
    to_aggregate,
)


def make_restore_dict(**spec_overrides: Any) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "cluster": {"name": "db1"},
        "backup": {"name": "backup-1"},
        "scheduledMember": "",
    }
    spec.update(spec_overrides)
    return {
        "apiVersion": "mysql.oracle.com/v1alpha1",
        "kind": "Restore",
        "metadata": {
            "name": "r1",
            "namespace": "ns",
            "labels": {OPERATOR_VERSION_LABEL: "1.0.0"},
            "resourceVersion": "42",
            "annotations": {"owner": "dba-team"},
        },
        "spec": spec,
        "status": {
            "conditions": [
                {
                    "type": "Scheduled",
                    "status": "False",
                    "lastTransitionTime": "2026-01-01T00:00:00Z",
                    "reason": "Pending",
                }
            ]
        },
    }


def test_from_dict_parses_references_and_conditions() -> None:
    restore = Restore.from_dict(make_restore_dict())

    assert restore.key == "ns/r1"
    assert restore.spec.cluster_name == "db1"
    assert restore.spec.backup_name == "backup-1"
    assert restore.spec.scheduled_member == ""
    assert restore.resource_version == "42"
    assert len(restore.status.conditions) == 1
    condition = restore.status.conditions[0]
    assert condition.type == "Scheduled"
    assert condition.reason == "Pending"
    assert condition.last_transition_time == "2026-01-01T00:00:00Z"


def test_from_dict_does_not_share_state_with_input() -> None:
    raw = make_restore_dict()
    restore = Restore.from_dict(raw)

    restore.labels["extra"] = "x"
    restore.spec.scheduled_member = "pod-0"
    restore.to_dict()

    assert "extra" not in raw["metadata"]["labels"]
    assert raw["spec"]["scheduledMember"] == ""


def test_to_dict_keeps_unmodelled_fields() -> None:
    restore = Restore.from_dict(make_restore_dict())
    restore.spec.scheduled_member = "pod-0"

    out = restore.to_dict()

    assert out["metadata"]["resourceVersion"] == "42"
    assert out["metadata"]["annotations"] == {"owner": "dba-team"}
    assert out["spec"]["scheduledMember"] == "pod-0"
    assert out["spec"]["cluster"] == {"name": "db1"}
    assert out["status"]["conditions"][0]["reason"] == "Pending"


def test_missing_reference_parses_as_none() -> None:
    raw = make_restore_dict()
    del raw["spec"]["backup"]

    restore = Restore.from_dict(raw)

    assert restore.spec.backup_name is None
    assert "backup" not in restore.to_dict()["spec"]


def test_ensure_defaults_sets_version_label_only_when_missing() -> None:
    raw = make_restore_dict()
    raw["metadata"]["labels"] = {}
    restore = Restore.from_dict(raw).ensure_defaults("2.0.0")
    assert restore.labels[OPERATOR_VERSION_LABEL] == "2.0.0"

    pinned = Restore.from_dict(make_restore_dict()).ensure_defaults("2.0.0")
    assert pinned.labels[OPERATOR_VERSION_LABEL] == "1.0.0"


def test_validate_accepts_complete_restore() -> None:
    assert Restore.from_dict(make_restore_dict()).validate("1.0.0") is None


def test_validate_requires_cluster_and_backup() -> None:
    raw = make_restore_dict(cluster={}, backup=None)

    error = Restore.from_dict(raw).validate("1.0.0")

    assert error is not None
    assert [e.field for e in error.errors] == ["spec.cluster", "spec.backup"]
    assert str(error) == (
        "[spec.cluster: Required value: missing cluster, "
        "spec.backup: Required value: missing backup]"
    )


def test_validate_requires_version_label() -> None:
    raw = make_restore_dict()
    raw["metadata"]["labels"] = {}

    error = Restore.from_dict(raw).validate("1.0.0")

    assert error is not None
    assert error.errors[0].field == f"metadata.labels[{OPERATOR_VERSION_LABEL}]"
    assert "Required value" in str(error)


def test_validate_rejects_other_operator_version() -> None:
    error = Restore.from_dict(make_restore_dict()).validate("2.0.0")

    assert error is not None
    assert 'Invalid value: "1.0.0"' in str(error)


def test_field_path_rendering() -> None:
    path = FieldPath("spec").child("backup").child("name")
    assert str(path) == "spec.backup.name"
    assert str(FieldPath("metadata").child("labels").key("app")) == "metadata.labels[app]"


def test_field_error_rendering() -> None:
    path = FieldPath("spec").child("backup").child("name")

    assert str(not_found(path, "missing-backup")) == 'spec.backup.name: Not found: "missing-backup"'
    assert str(required(FieldPath("spec.cluster"))) == "spec.cluster: Required value"
    assert str(invalid(path, "x", "bad name")) == 'spec.backup.name: Invalid value: "x": bad name'


def test_aggregate_of_single_error_is_its_message() -> None:
    error = to_aggregate([not_found(FieldPath("spec.cluster.name"), "db1")])

    assert error is not None
    assert str(error) == 'spec.cluster.name: Not found: "db1"'


def test_to_aggregate_of_nothing_is_none() -> None:
    assert to_aggregate([]) is None
    with pytest.raises(ValueError):
        AggregateError([])
