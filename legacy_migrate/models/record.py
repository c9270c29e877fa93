"""Record models for migration data."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime

from .migration import utc_now
from .reference import LegacyRef


class RecordStatus(str, Enum):
    """Status of a record during migration."""
    EXTRACTED = "extracted"
    VALIDATED = "validated"
    TRANSFORMED = "transformed"
    INSERTED = "inserted"
    UPDATED = "updated"
    FAILED = "failed"
    REJECTED = "rejected"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """A field-level problem found by the validator."""
    record_legacy_id: Optional[str]
    field_path: str
    message: str
    severity: Severity = Severity.ERROR
    code: str = "validation"
    stage: str = "source"  # source, target
    value: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "record_legacy_id": self.record_legacy_id,
            "field_path": self.field_path,
            "message": self.message,
            "severity": self.severity.value,
            "code": self.code,
            "stage": self.stage,
            "value": _json_safe(self.value),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            record_legacy_id=data.get("record_legacy_id"),
            field_path=data.get("field_path", "__root__"),
            message=data.get("message", ""),
            severity=Severity(data.get("severity", "error")),
            code=data.get("code", "validation"),
            stage=data.get("stage", "source"),
            value=data.get("value"),
        )


@dataclass
class ValidationResult:
    """Either a typed record or an ordered list of field errors."""
    valid: bool
    record: Optional[Any] = None  # pydantic model instance on success
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]


@dataclass
class LegacyRecord:
    """A row read from a source table."""
    source_table: str
    legacy_id: str
    data: Dict[str, Any]
    type_id: Optional[int] = None
    object_id: Optional[int] = None
    extracted_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get(self, column: str, default: Any = None) -> Any:
        """Get a column value, treating None as absent."""
        value = self.data.get(column)
        return default if value is None else value

    def has(self, column: str) -> bool:
        """True when the column was selected from the source table."""
        return column in self.data

    def with_data(self, data: Dict[str, Any]) -> "LegacyRecord":
        """Copy of this record carrying coerced data."""
        return replace(self, data=data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_table": self.source_table,
            "legacy_id": self.legacy_id,
            "data": {k: _json_safe(v) for k, v in self.data.items()},
            "type_id": self.type_id,
            "object_id": self.object_id,
            "extracted_at": self.extracted_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class NormalizedEntity:
    """
    A target-shaped row produced by the transformer.

    Foreign keys to other migrated rows are carried as LegacyRef entries and
    resolved by the loader; ``backlinks`` hold the legacy ids written to the
    target's unique backlink columns.
    """
    entity_type: str
    target_table: str
    legacy_id: str
    data: Dict[str, Any]
    backlinks: Dict[str, Any] = field(default_factory=dict)
    match_on: Optional[str] = None
    references: List[LegacyRef] = field(default_factory=list)
    update_only: bool = False
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.match_on and self.backlinks:
            self.match_on = next(iter(self.backlinks))

    @property
    def match_value(self) -> Any:
        return self.backlinks.get(self.match_on) if self.match_on else None

    def row(self) -> Dict[str, Any]:
        """Data plus backlink columns, without unresolved references."""
        row = dict(self.data)
        row.update(self.backlinks)
        return row

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "target_table": self.target_table,
            "legacy_id": self.legacy_id,
            "data": {k: _json_safe(v) for k, v in self.data.items()},
            "backlinks": self.backlinks,
            "match_on": self.match_on,
            "references": [r.to_dict() for r in self.references],
            "update_only": self.update_only,
            "warnings": self.warnings,
        }


@dataclass
class QuarantinedRecord:
    """A record set aside because it failed validation or transformation."""
    entity_type: str
    legacy_id: str
    stage: str
    data: Dict[str, Any]
    issues: List[ValidationIssue] = field(default_factory=list)
    quarantined_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "legacy_id": self.legacy_id,
            "stage": self.stage,
            "data": {k: _json_safe(v) for k, v in self.data.items()},
            "issues": [i.to_dict() for i in self.issues],
            "quarantined_at": self.quarantined_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuarantinedRecord":
        record = cls(
            entity_type=data["entity_type"],
            legacy_id=str(data["legacy_id"]),
            stage=data.get("stage", "validate"),
            data=data.get("data", {}),
            issues=[ValidationIssue.from_dict(i) for i in data.get("issues", [])],
        )
        if data.get("quarantined_at"):
            record.quarantined_at = datetime.fromisoformat(data["quarantined_at"])
        return record


@dataclass
class RowResult:
    """Result of attempting to write one entity to the target."""
    legacy_id: str
    target_table: str
    target_id: Optional[str] = None
    status: RecordStatus = RecordStatus.FAILED
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    retry_count: int = 0

    @property
    def success(self) -> bool:
        return self.status in (RecordStatus.INSERTED, RecordStatus.UPDATED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "legacy_id": self.legacy_id,
            "target_table": self.target_table,
            "target_id": self.target_id,
            "status": self.status.value,
            "error": self.error,
            "error_code": self.error_code,
            "warnings": self.warnings,
            "retry_count": self.retry_count,
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool, type(None), dict, list)):
        return value
    return str(value)
