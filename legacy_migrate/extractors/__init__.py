"""Data extractors for legacy source tables."""

from .base import BaseExtractor, ExtractionResult
from .sql_extractor import SQLExtractor
from .static_extractor import StaticExtractor

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "SQLExtractor",
    "StaticExtractor",
]
