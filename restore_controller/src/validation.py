from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

ERROR_TYPE_REQUIRED = "Required value"
ERROR_TYPE_NOT_FOUND = "Not found"
ERROR_TYPE_INVALID = "Invalid value"


@dataclass(frozen=True)
class FieldPath:
    """Dotted path to a field of a resource, e.g. ``spec.backup.name``."""

    path: str

    def child(self, name: str) -> FieldPath:
        return FieldPath(f"{self.path}.{name}" if self.path else name)

    def key(self, key: str) -> FieldPath:
        """Address a map entry, e.g. ``metadata.labels[app]``."""
        return FieldPath(f"{self.path}[{key}]")

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class FieldError:
    """A single validation failure attached to a field path.

    The rendered text follows the Kubernetes apimachinery convention so
    users see the same wording they get from the API server.
    """

    error_type: str
    field: str
    value: str | None = None
    detail: str = ""

    def __str__(self) -> str:
        body = self.error_type
        if self.error_type != ERROR_TYPE_REQUIRED:
            body = f'{body}: "{self.value if self.value is not None else ""}"'
        if self.detail:
            body = f"{body}: {self.detail}"
        return f"{self.field}: {body}"


def required(path: FieldPath, detail: str = "") -> FieldError:
    return FieldError(error_type=ERROR_TYPE_REQUIRED, field=str(path), detail=detail)


def not_found(path: FieldPath, value: str) -> FieldError:
    return FieldError(error_type=ERROR_TYPE_NOT_FOUND, field=str(path), value=value)


def invalid(path: FieldPath, value: str, detail: str) -> FieldError:
    return FieldError(error_type=ERROR_TYPE_INVALID, field=str(path), value=value, detail=detail)


class AggregateError(Exception):
    """Several field errors reported as one validation error."""

    def __init__(self, errors: Sequence[FieldError]) -> None:
        if not errors:
            raise ValueError("AggregateError needs at least one field error")
        self.errors: tuple[FieldError, ...] = tuple(errors)
        super().__init__(self._render())

    def _render(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(error) for error in self.errors) + "]"

    def __str__(self) -> str:
        return self._render()


def to_aggregate(errors: Sequence[FieldError]) -> AggregateError | None:
    """Return ``None`` for an empty list, else an :class:`AggregateError`."""
    if not errors:
        return None
    return AggregateError(errors)
