"""Integrity report models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime

from .migration import utc_now


class CheckStatus(str, Enum):
    """Advisory status of an integrity line item."""
    PASS = "PASS"
    WARNING = "WARNING"
    FAIL = "FAIL"


_SEVERITY_RANK = {CheckStatus.PASS: 0, CheckStatus.WARNING: 1, CheckStatus.FAIL: 2}


@dataclass
class IntegrityCheck:
    """One line item of the integrity report."""
    name: str
    category: str  # orphans, duplicates, count_parity, rejections, preflight
    status: CheckStatus
    message: str
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "category": self.category,
            "status": self.status.value,
            "message": self.message,
            "expected": self.expected,
            "actual": self.actual,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityCheck":
        return cls(
            name=data["name"],
            category=data.get("category", ""),
            status=CheckStatus(data["status"]),
            message=data.get("message", ""),
            expected=data.get("expected"),
            actual=data.get("actual"),
            details=data.get("details", {}),
        )


@dataclass
class IntegrityReport:
    """PASS/WARNING/FAIL line items produced after a load."""
    run_id: str
    items: List[IntegrityCheck] = field(default_factory=list)
    rejection_summary: Dict[str, Dict[str, int]] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utc_now)

    @property
    def overall_status(self) -> CheckStatus:
        """Worst status across all line items."""
        status = CheckStatus.PASS
        for item in self.items:
            if _SEVERITY_RANK[item.status] > _SEVERITY_RANK[status]:
                status = item.status
        return status

    def add(self, item: IntegrityCheck) -> IntegrityCheck:
        self.items.append(item)
        return item

    def by_status(self, status: CheckStatus) -> List[IntegrityCheck]:
        return [i for i in self.items if i.status == status]

    def by_category(self, category: str) -> List[IntegrityCheck]:
        return [i for i in self.items if i.category == category]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at.isoformat(),
            "overall_status": self.overall_status.value,
            "counts": {s.value: len(self.by_status(s)) for s in CheckStatus},
            "items": [i.to_dict() for i in self.items],
            "rejection_summary": self.rejection_summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityReport":
        report = cls(
            run_id=data["run_id"],
            items=[IntegrityCheck.from_dict(i) for i in data.get("items", [])],
            rejection_summary=data.get("rejection_summary", {}),
        )
        if data.get("generated_at"):
            report.generated_at = datetime.fromisoformat(data["generated_at"])
        return report
