"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import json
import os
import uuid

from ..exceptions import ConfigurationError


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class MigrationStatus(str, Enum):
    """Status of a migration run or of one entity type within it."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class MigrationRunRecord:
    """
    One row of the migration run log: a single entity type within a phase.

    Created when the entity type starts, updated as batches complete,
    never deleted.
    """
    run_id: str
    phase: str
    entity_type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_rejected: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    checkpoint: Optional[str] = None  # last committed legacy id
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "phase": self.phase,
            "entity_type": self.entity_type,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_succeeded": self.records_succeeded,
            "records_failed": self.records_failed,
            "records_rejected": self.records_rejected,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "checkpoint": self.checkpoint,
            "warnings": self.warnings,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class MigrationRun:
    """Summary of a complete migration run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False

    # Timing
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    records: List[MigrationRunRecord] = field(default_factory=list)
    current_entity: Optional[str] = None

    # Statistics
    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    total_records_rejected: int = 0
    source_counts: Dict[str, int] = field(default_factory=dict)
    load_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # Errors and review material
    errors: List[Dict[str, Any]] = field(default_factory=list)
    quarantined: List[Any] = field(default_factory=list)  # QuarantinedRecord
    integrity_report: Optional[Any] = None  # IntegrityReport

    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "records": [r.to_dict() for r in self.records],
            "total_records_processed": self.total_records_processed,
            "total_records_succeeded": self.total_records_succeeded,
            "total_records_failed": self.total_records_failed,
            "total_records_rejected": self.total_records_rejected,
            "source_counts": self.source_counts,
            "load_results": self.load_results,
            "errors": self.errors,
            "quarantined": [q.to_dict() for q in self.quarantined],
            "integrity_report": self.integrity_report.to_dict() if self.integrity_report else None,
            "metadata": self.metadata,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_record(self, phase: str, entity_type: str) -> MigrationRunRecord:
        """Start a run-log record for an entity type."""
        record = MigrationRunRecord(run_id=self.id, phase=phase, entity_type=entity_type)
        self.records.append(record)
        return record

    def get_record(self, entity_type: str) -> Optional[MigrationRunRecord]:
        """Get the run-log record for an entity type."""
        for record in self.records:
            if record.entity_type == entity_type:
                return record
        return None

    def update_totals(self) -> None:
        """Update total statistics from run-log records."""
        self.total_records_processed = sum(r.records_processed for r in self.records)
        self.total_records_succeeded = sum(r.records_succeeded for r in self.records)
        self.total_records_failed = sum(r.records_failed for r in self.records)
        self.total_records_rejected = sum(r.records_rejected for r in self.records)

    def resolve_status(self) -> MigrationStatus:
        """Derive the overall status from the entity records."""
        statuses = {r.status for r in self.records}
        if MigrationStatus.FAILED in statuses or MigrationStatus.SKIPPED in statuses:
            return MigrationStatus.PARTIAL
        if self.total_records_failed or self.total_records_rejected:
            return MigrationStatus.PARTIAL
        return MigrationStatus.COMPLETED


# camelCase names accepted in config files and dictionaries
_CONFIG_ALIASES = {
    "batchSize": "batch_size",
    "pageSize": "page_size",
    "maxRetries": "max_retries",
    "timeoutMs": "timeout_ms",
    "retryBackoffMs": "retry_backoff_ms",
    "retryMaxBackoffMs": "retry_max_backoff_ms",
    "parallelWorkers": "parallel_workers",
    "requiredEntityTypes": "required_entity_types",
    "entityTypes": "entity_types",
    "dryRun": "dry_run",
    "sourceUrl": "source_url",
    "targetUrl": "target_url",
    "outputDir": "output_dir",
    "saveRejected": "save_rejected",
    "progressWebhookUrl": "progress_webhook_url",
}

DEFAULT_REQUIRED_ENTITY_TYPES = ["order_types", "order_states", "profiles"]


@dataclass
class MigrationConfig:
    """Configuration for a migration run."""
    name: str = "legacy-migration"
    description: str = ""

    # Connections
    source_url: str = ""
    target_url: str = ""

    # Execution options
    batch_size: int = 100
    page_size: Optional[int] = None  # extraction page, defaults to batch_size
    max_retries: int = 3
    timeout_ms: int = 30000
    retry_backoff_ms: int = 500
    retry_max_backoff_ms: int = 10000
    parallel_workers: int = 1
    required_entity_types: List[str] = field(
        default_factory=lambda: list(DEFAULT_REQUIRED_ENTITY_TYPES)
    )
    entity_types: Optional[List[str]] = None  # None means every catalog entity
    dry_run: bool = False

    # Output
    output_dir: str = "./data"
    save_rejected: bool = True
    progress_webhook_url: Optional[str] = None

    @property
    def effective_page_size(self) -> int:
        return self.page_size or self.batch_size

    def is_required(self, entity_type: str) -> bool:
        return entity_type in self.required_entity_types

    def validate(self) -> None:
        """
        Check the configuration for values the engine cannot run with.

        Raises:
            ConfigurationError: On the first invalid option
        """
        if not self.source_url:
            raise ConfigurationError("source_url is required")
        if not self.target_url:
            raise ConfigurationError("target_url is required")
        for name in ("batch_size", "parallel_workers", "timeout_ms"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.page_size is not None and self.page_size <= 0:
            raise ConfigurationError(f"page_size must be positive, got {self.page_size}")
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must not be negative, got {self.max_retries}")
        if self.retry_backoff_ms < 0 or self.retry_max_backoff_ms < 0:
            raise ConfigurationError("retry backoff values must not be negative")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (connection URLs masked)."""
        return {
            "name": self.name,
            "description": self.description,
            "source_url": _mask_url(self.source_url),
            "target_url": _mask_url(self.target_url),
            "batch_size": self.batch_size,
            "page_size": self.page_size,
            "max_retries": self.max_retries,
            "timeout_ms": self.timeout_ms,
            "retry_backoff_ms": self.retry_backoff_ms,
            "retry_max_backoff_ms": self.retry_max_backoff_ms,
            "parallel_workers": self.parallel_workers,
            "required_entity_types": self.required_entity_types,
            "entity_types": self.entity_types,
            "dry_run": self.dry_run,
            "output_dir": self.output_dir,
            "save_rejected": self.save_rejected,
            "progress_webhook_url": self.progress_webhook_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation. camelCase keys are accepted."""
        data = {_CONFIG_ALIASES.get(k, k): v for k, v in data.items()}

        def as_list(value: Any) -> Optional[List[str]]:
            if value is None:
                return None
            if isinstance(value, str):
                return [v.strip() for v in value.split(",") if v.strip()]
            return list(value)

        try:
            return cls(
                name=data.get("name", "legacy-migration"),
                description=data.get("description", ""),
                source_url=data.get("source_url", ""),
                target_url=data.get("target_url", ""),
                batch_size=int(data.get("batch_size", 100)),
                page_size=int(data["page_size"]) if data.get("page_size") else None,
                max_retries=int(data.get("max_retries", 3)),
                timeout_ms=int(data.get("timeout_ms", 30000)),
                retry_backoff_ms=int(data.get("retry_backoff_ms", 500)),
                retry_max_backoff_ms=int(data.get("retry_max_backoff_ms", 10000)),
                parallel_workers=int(data.get("parallel_workers", 1)),
                required_entity_types=as_list(data.get("required_entity_types"))
                if data.get("required_entity_types") is not None
                else list(DEFAULT_REQUIRED_ENTITY_TYPES),
                entity_types=as_list(data.get("entity_types")),
                dry_run=_as_bool(data.get("dry_run", False)),
                output_dir=data.get("output_dir", "./data"),
                save_rejected=_as_bool(data.get("save_rejected", True)),
                progress_webhook_url=data.get("progress_webhook_url"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}", cause=e) from e

    @classmethod
    def from_json_file(cls, path: str) -> "MigrationConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}", cause=e) from e
        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls,
        prefix: str = "MIGRATION_",
        environ: Optional[Dict[str, str]] = None,
    ) -> "MigrationConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Variable prefix, e.g. MIGRATION_BATCH_SIZE -> batch_size
            environ: Mapping to read instead of os.environ

        Returns:
            MigrationConfig built from the matching variables
        """
        environ = os.environ if environ is None else environ
        data = {
            key[len(prefix):].lower(): value
            for key, value in environ.items()
            if key.startswith(prefix) and value != ""
        }
        return cls.from_dict(data)

    def merge(self, overrides: Dict[str, Any]) -> "MigrationConfig":
        """Return a copy with non-None overrides applied."""
        merged = self.to_dict()
        merged["source_url"] = self.source_url
        merged["target_url"] = self.target_url
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return MigrationConfig.from_dict(merged)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _mask_url(url: str) -> str:
    """Hide the password part of a database URL."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
