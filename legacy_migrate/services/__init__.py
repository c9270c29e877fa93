"""Service layer for the migration engine."""

from .schema_prober import SchemaProber
from .content_types import ContentTypeRegistry
from .resolver import GenericReferenceResolver
from .transformer import TransformEngine
from .validator import RecordValidator

__all__ = [
    "SchemaProber",
    "ContentTypeRegistry",
    "GenericReferenceResolver",
    "TransformEngine",
    "RecordValidator",
]
