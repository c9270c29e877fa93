"""Pydantic models for API responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RunStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class CheckStatusEnum(str, Enum):
    PASS = "PASS"
    WARNING = "WARNING"
    FAIL = "FAIL"


# Response Models
class RunSummaryResponse(BaseModel):
    id: str
    name: Optional[str] = None
    status: RunStatusEnum
    dry_run: bool = False
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    total_records_rejected: int = 0


class RunListResponse(BaseModel):
    runs: List[RunSummaryResponse]
    total: int


class RunRecordResponse(BaseModel):
    id: str
    run_id: str
    phase: str
    entity_type: str
    status: RunStatusEnum
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    records_rejected: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    checkpoint: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class RunResponse(RunSummaryResponse):
    duration_seconds: Optional[float] = None
    records: List[RunRecordResponse] = Field(default_factory=list)
    source_counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    quarantined_count: int = 0


class IntegrityCheckResponse(BaseModel):
    name: str
    category: str
    status: CheckStatusEnum
    message: str
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class IntegrityReportResponse(BaseModel):
    run_id: str
    generated_at: str
    overall_status: CheckStatusEnum
    counts: Dict[str, int] = Field(default_factory=dict)
    items: List[IntegrityCheckResponse]
    rejection_summary: Dict[str, Dict[str, int]] = Field(default_factory=dict)


class ValidationIssueResponse(BaseModel):
    record_legacy_id: Optional[str] = None
    field_path: str
    message: str
    severity: str
    code: str
    stage: str
    value: Optional[Any] = None


class QuarantinedRecordResponse(BaseModel):
    entity_type: str
    legacy_id: str
    stage: str
    data: Dict[str, Any] = Field(default_factory=dict)
    issues: List[ValidationIssueResponse] = Field(default_factory=list)
    quarantined_at: Optional[str] = None


class RejectionListResponse(BaseModel):
    run_id: str
    rejections: List[QuarantinedRecordResponse]
    total: int
