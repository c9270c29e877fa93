"""Base extractor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from datetime import datetime
import logging

from ..models.migration import MigrationConfig, utc_now
from ..models.record import LegacyRecord
from ..models.schema import EntitySpec

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Result of an extraction operation."""
    entity_type: str
    source_table: Optional[str] = None
    total_extracted: int = 0
    batches: int = 0
    column_map: Dict[str, str] = field(default_factory=dict)  # canonical -> source column
    missing_columns: List[str] = field(default_factory=list)
    table_absent: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        """Check if extraction was successful."""
        return len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "source_table": self.source_table,
            "total_extracted": self.total_extracted,
            "batches": self.batches,
            "column_map": self.column_map,
            "missing_columns": self.missing_columns,
            "table_absent": self.table_absent,
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BaseExtractor(ABC):
    """
    Base class for all data extractors.

    Extractors pull the rows of one entity type and convert them to
    LegacyRecord objects. Each call to ``stream`` starts a fresh query; the
    iterator it returns is single-pass.
    """

    def __init__(self, spec: EntitySpec, config: MigrationConfig):
        """
        Initialize the extractor.

        Args:
            spec: Entity spec to extract
            config: Run configuration (page size, retries, timeouts)
        """
        self.spec = spec
        self.config = config
        self.result = ExtractionResult(entity_type=spec.name, source_table=spec.source_table)

    @abstractmethod
    def extract_batch(self, after: Optional[Any] = None, limit: int = 100) -> List[LegacyRecord]:
        """
        Extract one page of records.

        Args:
            after: Primary key of the last record of the previous page
            limit: Maximum records to extract

        Returns:
            Records ordered by primary key
        """
        pass

    def stream(self, batch_size: Optional[int] = None) -> Iterator[List[LegacyRecord]]:
        """
        Stream records in batches, ordered by primary key.

        Args:
            batch_size: Size of each batch (defaults to the configured page size)

        Yields:
            Batches of LegacyRecord objects
        """
        batch_size = batch_size or self.config.effective_page_size
        self.result.started_at = utc_now()
        after = None

        while True:
            batch = self.extract_batch(after=after, limit=batch_size)
            if not batch:
                break

            self.result.total_extracted += len(batch)
            self.result.batches += 1
            yield batch
            after = batch[-1].data.get(self.spec.primary_key, batch[-1].legacy_id)

            if len(batch) < batch_size:
                break

        self.result.completed_at = utc_now()
        logger.info(
            f"Extracted {self.result.total_extracted} {self.spec.name} records "
            f"in {self.result.batches} batches"
        )

    def extract(self) -> Iterator[LegacyRecord]:
        """Lazily yield every record of the entity type."""
        for batch in self.stream():
            yield from batch

    def count(self) -> int:
        """Number of records the source holds for this entity type."""
        return sum(len(batch) for batch in self.stream())

    def create_record(self, data: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None) -> LegacyRecord:
        """
        Create a LegacyRecord from a row keyed by canonical column names.

        Args:
            data: Canonical column -> value
            metadata: Additional metadata

        Returns:
            LegacyRecord object
        """
        type_id = object_id = None
        if self.spec.generic_reference:
            type_column, object_column = self.spec.generic_reference
            type_id = data.get(type_column)
            object_id = data.get(object_column)

        return LegacyRecord(
            source_table=self.spec.source_table or self.spec.name,
            legacy_id=str(data.get(self.spec.primary_key)),
            data=data,
            type_id=type_id,
            object_id=object_id,
            metadata=metadata or {},
        )

    def add_error(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Add an error to the extraction."""
        error = {"message": message, "timestamp": utc_now().isoformat()}
        if details:
            error.update(details)
        self.result.errors.append(error)
        logger.error(f"Extraction error for {self.spec.name}: {message}")

    def add_warning(self, message: str) -> None:
        """Add a warning to the extraction."""
        self.result.warnings.append(message)
        logger.warning(f"Extraction warning for {self.spec.name}: {message}")
