"""Validation service for migration records."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from ..exceptions import ContractError
from ..models.record import (
    LegacyRecord,
    QuarantinedRecord,
    Severity,
    ValidationIssue,
    ValidationResult,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchValidation:
    """Outcome of validating a batch of source records."""
    accepted: List[LegacyRecord] = field(default_factory=list)
    rejected: List[QuarantinedRecord] = field(default_factory=list)
    field_error_counts: Counter = field(default_factory=Counter)

    @property
    def total(self) -> int:
        return len(self.accepted) + len(self.rejected)


class RecordValidator:
    """
    Checks records against pydantic contracts.

    Validation is pure: it never mutates the input and never touches a
    database. A record either yields a typed contract instance or the full
    ordered list of its field errors.
    """

    def validate(
        self,
        data: Dict[str, Any],
        contract: Type[BaseModel],
        legacy_id: Optional[Any] = None,
        stage: str = "source",
    ) -> ValidationResult:
        """
        Validate one record.

        Args:
            data: Column -> value mapping
            contract: Pydantic model class to validate against
            legacy_id: Id used to label issues
            stage: "source" or "target"

        Returns:
            ValidationResult with the typed record or the field errors

        Raises:
            ContractError: If ``contract`` is not a pydantic model class
        """
        if not (isinstance(contract, type) and issubclass(contract, BaseModel)):
            raise ContractError(f"Contract must be a pydantic model class, got {contract!r}")

        label = None if legacy_id is None else str(legacy_id)
        try:
            record = contract.model_validate(data)
        except ValidationError as e:
            return ValidationResult(valid=False, issues=self._issues_from(e, label, stage))
        return ValidationResult(valid=True, record=record)

    def validate_source(
        self,
        record: LegacyRecord,
        entity_type: str,
        contract: Type[BaseModel],
    ) -> ValidationResult:
        """
        Validate a source record.

        On success the result's record is a LegacyRecord carrying the coerced
        values of the columns that were extracted.
        """
        result = self.validate(record.data, contract, record.legacy_id, stage="source")
        if not result.valid:
            return result
        coerced = result.record.model_dump(exclude_unset=True)
        # extra columns are kept as extracted
        data = {**record.data, **{k: v for k, v in coerced.items() if k in record.data}}
        return ValidationResult(valid=True, record=record.with_data(data))

    def validate_batch(
        self,
        records: Iterable[LegacyRecord],
        entity_type: str,
        contract: Type[BaseModel],
    ) -> BatchValidation:
        """
        Validate a batch of source records, splitting accepted and rejected.

        Rejected records are quarantined with their issues; the rest of the
        batch is unaffected.
        """
        outcome = BatchValidation()
        for record in records:
            result = self.validate_source(record, entity_type, contract)
            if result.valid:
                outcome.accepted.append(result.record)
                continue

            outcome.rejected.append(QuarantinedRecord(
                entity_type=entity_type,
                legacy_id=record.legacy_id,
                stage="validate",
                data=dict(record.data),
                issues=result.issues,
            ))
            for issue in result.errors:
                outcome.field_error_counts[issue.field_path] += 1

        if outcome.rejected:
            logger.warning(
                f"{entity_type}: rejected {len(outcome.rejected)} of {outcome.total} records "
                f"({dict(outcome.field_error_counts)})"
            )
        return outcome

    @staticmethod
    def _issues_from(
        error: ValidationError,
        legacy_id: Optional[str],
        stage: str,
    ) -> List[ValidationIssue]:
        issues = []
        for item in error.errors():
            loc = ".".join(str(part) for part in item.get("loc", ())) or "__root__"
            issues.append(ValidationIssue(
                record_legacy_id=legacy_id,
                field_path=loc,
                message=item.get("msg", "invalid value"),
                severity=Severity.ERROR,
                code=item.get("type", "validation"),
                stage=stage,
                value=item.get("input") if loc != "__root__" else None,
            ))
        return issues


def summarize_rejections(rejected: Iterable[QuarantinedRecord]) -> Dict[str, Dict[str, int]]:
    """entity type -> field path -> rejected-record count."""
    summary: Dict[str, Counter] = {}
    for quarantined in rejected:
        counts = summary.setdefault(quarantined.entity_type, Counter())
        for path in {i.field_path for i in quarantined.issues if i.severity == Severity.ERROR}:
            counts[path] += 1
    return {name: dict(counts) for name, counts in summary.items()}
