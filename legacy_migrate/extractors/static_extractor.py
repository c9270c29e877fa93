"""Extractor for reference data defined in code rather than in a source table."""

import logging
from typing import Any, Dict, List, Optional

from ..models.migration import MigrationConfig
from ..models.record import LegacyRecord
from ..models.schema import EntitySpec
from .base import BaseExtractor

logger = logging.getLogger(__name__)


class StaticExtractor(BaseExtractor):
    """Serves a fixed list of rows, paged by primary key like a table would be."""

    def __init__(self, spec: EntitySpec, config: MigrationConfig, rows: List[Dict[str, Any]]):
        super().__init__(spec, config)
        pk = spec.primary_key
        self.rows = sorted((dict(r) for r in rows), key=lambda r: r[pk])

    def extract_batch(self, after: Optional[Any] = None, limit: int = 100) -> List[LegacyRecord]:
        pk = self.spec.primary_key
        remaining = [r for r in self.rows if after is None or r[pk] > after]
        return [self.create_record(dict(r), metadata={"static": True}) for r in remaining[:limit]]

    def count(self) -> int:
        return len(self.rows)
