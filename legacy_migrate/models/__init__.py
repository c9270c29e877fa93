"""Data models for the migration engine."""

from .schema import (
    MigrationPhase,
    PHASE_ORDER,
    FieldStrategy,
    ForeignKeySpec,
    TargetSpec,
    ParitySpec,
    EntitySpec,
)
from .migration import (
    MigrationConfig,
    MigrationRun,
    MigrationRunRecord,
    MigrationStatus,
    utc_now,
)
from .reference import (
    ContentTypeEntry,
    LegacyRef,
    ReferenceKind,
    ResolvedReference,
)
from .record import (
    LegacyRecord,
    NormalizedEntity,
    QuarantinedRecord,
    RecordStatus,
    RowResult,
    Severity,
    ValidationIssue,
    ValidationResult,
)
from .report import CheckStatus, IntegrityCheck, IntegrityReport

__all__ = [
    "MigrationPhase",
    "PHASE_ORDER",
    "FieldStrategy",
    "ForeignKeySpec",
    "TargetSpec",
    "ParitySpec",
    "EntitySpec",
    "MigrationConfig",
    "MigrationRun",
    "MigrationRunRecord",
    "MigrationStatus",
    "utc_now",
    "ContentTypeEntry",
    "LegacyRef",
    "ReferenceKind",
    "ResolvedReference",
    "LegacyRecord",
    "NormalizedEntity",
    "QuarantinedRecord",
    "RecordStatus",
    "RowResult",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "CheckStatus",
    "IntegrityCheck",
    "IntegrityReport",
]
