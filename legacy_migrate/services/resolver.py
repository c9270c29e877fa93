"""Generic-reference resolution: (content type, object id) -> explicit reference."""

import logging
from typing import Dict, Optional

from ..models.reference import (
    LegacyRef,
    NAMESPACE_BY_KIND,
    ReferenceKind,
    ResolvedReference,
    UNKNOWN_LOGICAL_NAME,
)
from .content_types import ContentTypeRegistry

logger = logging.getLogger(__name__)


# Model part of the logical name -> entity kind
KIND_BY_MODEL: Dict[str, ReferenceKind] = {
    "order": ReferenceKind.ORDER,
    "instruction": ReferenceKind.ORDER,
    "project": ReferenceKind.PROJECT,
    "patient": ReferenceKind.PATIENT,
    "office": ReferenceKind.OFFICE,
    "record": ReferenceKind.MESSAGE,
    "message": ReferenceKind.MESSAGE,
}

# Target foreign-key column per kind
COLUMN_BY_KIND: Dict[ReferenceKind, str] = {
    ReferenceKind.ORDER: "order_id",
    ReferenceKind.PROJECT: "project_id",
    ReferenceKind.PATIENT: "patient_id",
    ReferenceKind.OFFICE: "office_id",
    ReferenceKind.MESSAGE: "parent_message_id",
}


def kind_for_logical_name(logical_name: str) -> ReferenceKind:
    """Map "app_label.model" (or a bare model name) onto a reference kind."""
    if not logical_name or logical_name == UNKNOWN_LOGICAL_NAME:
        return ReferenceKind.UNKNOWN
    model = logical_name.rsplit(".", 1)[-1].strip().lower()
    return KIND_BY_MODEL.get(model, ReferenceKind.UNKNOWN)


class GenericReferenceResolver:
    """
    Resolves generic associations into tagged references.

    Pure with respect to its inputs: it only reads the content-type registry
    and the run's legacy-id map. Unmapped type ids resolve to Unknown; an
    object that has not been loaded resolves with ``target_id=None`` and is
    reported by the loader when the reference is required.
    """

    def __init__(self, registry: ContentTypeRegistry, id_map=None):
        """
        Initialize the resolver.

        Args:
            registry: Loaded content-type registry
            id_map: LegacyIdMap used to look up target ids (optional)
        """
        self.registry = registry
        self.id_map = id_map

    def resolve(self, type_id: Optional[int], object_id: Optional[int]) -> ResolvedReference:
        """
        Resolve a (type id, object id) pair.

        Args:
            type_id: Content-type id from the generic association
            object_id: Primary key of the referenced legacy row

        Returns:
            ResolvedReference; never raises for unmapped ids
        """
        logical_name = self.registry.resolve_logical_name(type_id)
        kind = kind_for_logical_name(logical_name)

        target_id = None
        if kind != ReferenceKind.UNKNOWN and object_id is not None and self.id_map is not None:
            target_id = self.id_map.get(NAMESPACE_BY_KIND[kind], object_id)

        return ResolvedReference(
            kind=kind,
            target_id=target_id,
            object_id=object_id,
            type_id=type_id,
            logical_name=logical_name,
        )

    @staticmethod
    def to_legacy_ref(
        resolved: ResolvedReference,
        column: Optional[str] = None,
        required: bool = True,
    ) -> Optional[LegacyRef]:
        """
        Deferred foreign key for a resolved reference.

        Returns None for Unknown references, which have no target column.
        """
        if resolved.is_unknown or resolved.object_id is None:
            return None
        return LegacyRef(
            column=column or COLUMN_BY_KIND[resolved.kind],
            namespace=NAMESPACE_BY_KIND[resolved.kind],
            legacy_id=resolved.object_id,
            required=required,
        )
