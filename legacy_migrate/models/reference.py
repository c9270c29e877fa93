"""Generic-reference models: content types and resolved references."""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum


UNKNOWN_LOGICAL_NAME = "unknown"


class ReferenceKind(str, Enum):
    """Entity kinds a generic (content type, object id) pair can point at."""
    PATIENT = "patient"
    OFFICE = "office"
    ORDER = "order"
    PROJECT = "project"
    MESSAGE = "message"
    UNKNOWN = "unknown"


# Legacy-id map namespace ("<table>.<backlink column>") for each kind
NAMESPACE_BY_KIND: Dict[ReferenceKind, str] = {
    ReferenceKind.PATIENT: "profiles.legacy_patient_id",
    ReferenceKind.OFFICE: "offices.legacy_office_id",
    ReferenceKind.ORDER: "orders.legacy_instruction_id",
    ReferenceKind.PROJECT: "projects.legacy_project_id",
    ReferenceKind.MESSAGE: "messages.legacy_record_id",
}


@dataclass(frozen=True)
class ContentTypeEntry:
    """One row of the legacy content-type table."""
    id: int
    app_label: str
    model: str

    @property
    def logical_name(self) -> str:
        return f"{self.app_label}.{self.model}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_label": self.app_label,
            "model": self.model,
            "logical_name": self.logical_name,
        }


@dataclass(frozen=True)
class ResolvedReference:
    """
    A generic association resolved to an explicit entity kind.

    ``target_id`` is None when the kind is Unknown or when the referenced
    object has not been loaded (yet).
    """
    kind: ReferenceKind
    target_id: Optional[str]
    object_id: Optional[int]
    type_id: Optional[int] = None
    logical_name: str = UNKNOWN_LOGICAL_NAME

    @property
    def is_unknown(self) -> bool:
        return self.kind == ReferenceKind.UNKNOWN

    @property
    def namespace(self) -> Optional[str]:
        return NAMESPACE_BY_KIND.get(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target_id": self.target_id,
            "object_id": self.object_id,
            "type_id": self.type_id,
            "logical_name": self.logical_name,
        }


@dataclass(frozen=True)
class LegacyRef:
    """A foreign key expressed as a legacy id, resolved at load time."""
    column: str
    namespace: str
    legacy_id: Any
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column": self.column,
            "namespace": self.namespace,
            "legacy_id": self.legacy_id,
            "required": self.required,
        }
