"""Base loader interface for target stores."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional
from datetime import datetime
import logging

from ..context import LegacyIdMap
from ..exceptions import BatchLoadError
from ..models.migration import MigrationConfig, utc_now
from ..models.record import NormalizedEntity, QuarantinedRecord, RecordStatus, RowResult

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Result of a load operation: counts plus per-row detail."""
    entity_type: str
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0
    results: List[RowResult] = field(default_factory=list)
    quarantined: List[QuarantinedRecord] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_attempted(self) -> int:
        return self.inserted + self.updated + self.failed

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add(self, row: RowResult) -> None:
        """Count one row result."""
        self.results.append(row)
        if row.status == RecordStatus.INSERTED:
            self.inserted += 1
        elif row.status == RecordStatus.UPDATED:
            self.updated += 1
        else:
            self.failed += 1
            self.errors.append({
                "legacy_id": row.legacy_id,
                "target_table": row.target_table,
                "error": row.error,
                "error_code": row.error_code,
            })

    def merge(self, other: "LoadResult") -> None:
        """Fold a batch result into this one."""
        for row in other.results:
            self.add(row)
        self.quarantined.extend(other.quarantined)
        self.batches += other.batches
        self.failed_batches += other.failed_batches

    def failed_legacy_ids(self) -> List[str]:
        """Legacy ids with at least one failed row, in first-seen order."""
        seen: Dict[str, None] = {}
        for row in self.results:
            if not row.success:
                seen.setdefault(row.legacy_id)
        return list(seen)

    def succeeded_legacy_ids(self) -> List[str]:
        """Legacy ids whose every row was written."""
        failed = set(self.failed_legacy_ids())
        seen: Dict[str, None] = {}
        for row in self.results:
            if row.legacy_id not in failed:
                seen.setdefault(row.legacy_id)
        return list(seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "total_attempted": self.total_attempted,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
        }


class BaseLoader(ABC):
    """
    Base class for data loaders.

    Loaders write normalized entities to the target store, one transaction
    per batch, and record each committed legacy id in the run's id map.
    """

    def __init__(self, config: MigrationConfig, id_map: LegacyIdMap):
        """
        Initialize the loader.

        Args:
            config: Run configuration (batch size, retries, timeouts)
            id_map: Legacy-id map shared by the run
        """
        self.config = config
        self.id_map = id_map
        self.batch_size = config.batch_size

    @abstractmethod
    def load_batch(self, entities: List[NormalizedEntity]) -> LoadResult:
        """
        Upsert one batch in a single transaction.

        Args:
            entities: Entities of one entity type

        Returns:
            LoadResult with per-row outcomes

        Raises:
            BatchLoadError: If the transaction still fails after all retries
        """
        pass

    def load_all(self, entity_type: str, entities: Iterable[NormalizedEntity]) -> LoadResult:
        """
        Load entities in batches, strictly in order.

        Stops at the first batch that fails after retries; the error carries
        the result accumulated so far.

        Returns:
            LoadResult for the entity type
        """
        result = LoadResult(entity_type=entity_type, started_at=utc_now())

        for batch in self.batches(entities):
            try:
                batch_result = self.load_batch(batch)
            except BatchLoadError as e:
                result.merge(e.result)
                result.completed_at = utc_now()
                e.result = result
                raise
            result.merge(batch_result)

        result.completed_at = utc_now()
        logger.info(
            f"Loaded {entity_type}: {result.inserted} inserted, {result.updated} updated, "
            f"{result.failed} failed"
        )
        return result

    def batches(self, entities: Iterable[NormalizedEntity]) -> Iterator[List[NormalizedEntity]]:
        """
        Split entities into batches of ``batch_size`` source records.

        Rows fanned out from one record stay in the same batch.
        """
        batch: List[NormalizedEntity] = []
        legacy_ids = set()
        for entity in entities:
            if entity.legacy_id not in legacy_ids and len(legacy_ids) >= self.batch_size:
                yield batch
                batch, legacy_ids = [], set()
            batch.append(entity)
            legacy_ids.add(entity.legacy_id)
        if batch:
            yield batch
