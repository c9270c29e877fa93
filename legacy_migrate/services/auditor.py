"""Integrity auditor: orphan, duplicate, count-parity and rejection checks."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import MetaData, Table, column, func, select, table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..catalog import CONTENT_TYPE_TABLE
from ..models.record import QuarantinedRecord
from ..models.report import CheckStatus, IntegrityCheck, IntegrityReport
from ..models.schema import EntitySpec
from .schema_prober import SchemaProber
from .validator import summarize_rejections

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 10


class IntegrityAuditor:
    """
    Read-only checks over the source and the loaded target.

    Line items are advisory (PASS/WARNING/FAIL). Nothing here modifies
    either database.
    """

    def __init__(
        self,
        target_engine: Engine,
        catalog: List[EntitySpec],
        source_prober: Optional[SchemaProber] = None,
    ):
        """
        Initialize the auditor.

        Args:
            target_engine: Target engine
            catalog: Entity specs to check
            source_prober: Prober of the source, used by the preflight checks
        """
        self.target_engine = target_engine
        self.catalog = catalog
        self.source_prober = source_prober
        self._metadata = MetaData()

    def _table(self, name: str) -> Optional[Table]:
        if name in self._metadata.tables:
            return self._metadata.tables[name]
        try:
            return Table(name, self._metadata, autoload_with=self.target_engine)
        except NoSuchTableError:
            return None

    # Post-load

    def run_checks(
        self,
        run_id: str,
        source_counts: Optional[Dict[str, int]] = None,
        failures: Optional[Dict[str, int]] = None,
        rejected: Optional[Iterable[QuarantinedRecord]] = None,
    ) -> IntegrityReport:
        """
        Run every post-load check.

        Args:
            run_id: Run the report belongs to
            source_counts: entity type -> source row count taken before loading
            failures: entity type -> records that failed to load
            rejected: Quarantined records of the run

        Returns:
            IntegrityReport
        """
        report = IntegrityReport(run_id=run_id)
        rejected = list(rejected or [])
        failures = failures or {}

        with self.target_engine.connect() as conn:
            for item in self.check_orphans(conn):
                report.add(item)
            for item in self.check_duplicates(conn):
                report.add(item)
            if source_counts is not None:
                rejected_counts: Dict[str, int] = {}
                for q in rejected:
                    rejected_counts[q.entity_type] = rejected_counts.get(q.entity_type, 0) + 1
                for item in self.check_count_parity(conn, source_counts, failures, rejected_counts):
                    report.add(item)

        report.rejection_summary = summarize_rejections(rejected)
        for item in self.check_rejections(report.rejection_summary):
            report.add(item)

        logger.info(
            f"Integrity report: {len(report.items)} checks, overall {report.overall_status.value}"
        )
        return report

    def check_orphans(self, conn: Connection) -> List[IntegrityCheck]:
        """Foreign keys whose value is missing from the referenced table."""
        items = []
        seen = set()
        for spec in self.catalog:
            for target in spec.targets:
                for fk in target.foreign_keys:
                    key = (target.table, fk.column)
                    if key in seen:
                        continue
                    seen.add(key)

                    name = f"orphans:{target.table}.{fk.column}"
                    child = self._table(target.table)
                    parent = self._table(fk.references_table)
                    if child is None or parent is None or fk.column not in child.c:
                        items.append(IntegrityCheck(
                            name=name,
                            category="orphans",
                            status=CheckStatus.WARNING,
                            message=f"Skipped: {target.table}.{fk.column} or {fk.references_table} not found",
                        ))
                        continue

                    parent_alias = parent.alias("parent")
                    join = child.outerjoin(
                        parent_alias,
                        child.c[fk.column] == parent_alias.c[fk.references_column],
                    )
                    condition = (child.c[fk.column].is_not(None)) & (
                        parent_alias.c[fk.references_column].is_(None)
                    )
                    count = conn.execute(
                        select(func.count()).select_from(join).where(condition)
                    ).scalar_one()
                    sample = []
                    if count:
                        sample = [
                            str(r[0]) for r in conn.execute(
                                select(child.c.id).select_from(join).where(condition).limit(SAMPLE_SIZE)
                            )
                        ]

                    items.append(IntegrityCheck(
                        name=name,
                        category="orphans",
                        status=CheckStatus.PASS if count == 0 else CheckStatus.FAIL,
                        message=(
                            f"No orphaned {fk.column} values" if count == 0
                            else f"{count} rows reference missing {fk.references_table} rows"
                        ),
                        expected=0,
                        actual=count,
                        details={"sample_ids": sample} if sample else {},
                    ))
        return items

    def check_duplicates(self, conn: Connection) -> List[IntegrityCheck]:
        """Legacy-id backlinks that appear on more than one row."""
        items = []
        seen = set()
        for spec in self.catalog:
            for target in spec.targets:
                for backlink in target.backlinks:
                    key = (target.table, backlink)
                    if key in seen:
                        continue
                    seen.add(key)

                    tbl = self._table(target.table)
                    name = f"duplicates:{target.table}.{backlink}"
                    if tbl is None or backlink not in tbl.c:
                        items.append(IntegrityCheck(
                            name=name,
                            category="duplicates",
                            status=CheckStatus.WARNING,
                            message=f"Skipped: {target.table}.{backlink} not found",
                        ))
                        continue

                    query = (
                        select(tbl.c[backlink], func.count().label("n"))
                        .where(tbl.c[backlink].is_not(None))
                        .group_by(tbl.c[backlink])
                        .having(func.count() > 1)
                    )
                    duplicates = {str(r[0]): r[1] for r in conn.execute(query)}
                    items.append(IntegrityCheck(
                        name=name,
                        category="duplicates",
                        status=CheckStatus.PASS if not duplicates else CheckStatus.FAIL,
                        message=(
                            f"{backlink} is unique" if not duplicates
                            else f"{len(duplicates)} legacy ids appear more than once"
                        ),
                        expected=0,
                        actual=len(duplicates),
                        details={"duplicates": dict(list(duplicates.items())[:SAMPLE_SIZE])} if duplicates else {},
                    ))
        return items

    def check_count_parity(
        self,
        conn: Connection,
        source_counts: Dict[str, int],
        failures: Dict[str, int],
        rejected_counts: Dict[str, int],
    ) -> List[IntegrityCheck]:
        """
        Compare target backlink counts with source counts.

        Equal counts pass. A shortfall no larger than the rejected plus failed
        records is a warning; anything else fails.
        """
        items = []
        for spec in self.catalog:
            if spec.parity is None or spec.name not in source_counts:
                continue

            expected = source_counts[spec.name]
            tbl = self._table(spec.parity.target_table)
            name = f"count_parity:{spec.name}"
            if tbl is None or spec.parity.backlink not in tbl.c:
                items.append(IntegrityCheck(
                    name=name,
                    category="count_parity",
                    status=CheckStatus.FAIL,
                    message=f"Target {spec.parity.target_table}.{spec.parity.backlink} not found",
                    expected=expected,
                ))
                continue

            actual = conn.execute(
                select(func.count()).select_from(tbl).where(tbl.c[spec.parity.backlink].is_not(None))
            ).scalar_one()
            explained = rejected_counts.get(spec.name, 0) + failures.get(spec.name, 0)
            shortfall = expected - actual

            if shortfall == 0:
                status, message = CheckStatus.PASS, f"{actual} of {expected} source rows present"
            elif 0 < shortfall <= explained:
                status = CheckStatus.WARNING
                message = f"{shortfall} rows missing, explained by {explained} rejected or failed records"
            else:
                status = CheckStatus.FAIL
                message = f"Expected {expected} rows, found {actual} ({explained} rejected or failed)"

            items.append(IntegrityCheck(
                name=name,
                category="count_parity",
                status=status,
                message=message,
                expected=expected,
                actual=actual,
                details={"rejected_or_failed": explained},
            ))
        return items

    def check_rejections(self, summary: Dict[str, Dict[str, int]]) -> List[IntegrityCheck]:
        """One line item per entity type with quarantined records."""
        if not summary:
            return [IntegrityCheck(
                name="rejections",
                category="rejections",
                status=CheckStatus.PASS,
                message="No records were rejected",
                expected=0,
                actual=0,
            )]

        items = []
        for entity_type, fields in sorted(summary.items()):
            items.append(IntegrityCheck(
                name=f"rejections:{entity_type}",
                category="rejections",
                status=CheckStatus.WARNING,
                message=f"Rejected records in {entity_type}, by field: {fields}",
                actual=sum(fields.values()),
                details={"fields": fields},
            ))
        return items

    # Pre-load

    def run_preflight(self, conn: Connection) -> List[IntegrityCheck]:
        """
        Source-side data-quality checks taken before loading.

        Checks whose tables are absent are skipped.
        """
        checks = [
            self._preflight_orphaned_patients,
            self._preflight_unknown_content_types,
            self._preflight_duplicate_patients,
            self._preflight_duplicate_emails,
            self._preflight_future_birthdates,
        ]
        items = []
        for check in checks:
            try:
                item = check(conn)
            except SQLAlchemyError as e:
                logger.warning(f"Preflight check {check.__name__} failed: {e}")
                continue
            if item is not None:
                items.append(item)
        return items

    def count_source(self, spec: EntitySpec, extractor: Any) -> int:
        """Source count for one entity type; 0 when it cannot be taken."""
        try:
            return extractor.count()
        except SQLAlchemyError as e:
            logger.warning(f"Could not count source rows for {spec.name}: {e}")
            return 0

    def _columns(self, table_name: str, *names: str) -> Optional[Dict[str, str]]:
        """Source column for each canonical name, or None if any is missing."""
        if self.source_prober is None or not self.source_prober.table_exists(table_name):
            return None
        spec = next((s for s in self.catalog if s.source_table == table_name), None)
        found = {}
        for name in names:
            strategy = spec.strategy(name) if spec else None
            candidates = strategy.candidates if strategy else (name,)
            resolved = self.source_prober.resolve_column(table_name, candidates)
            if resolved is None:
                return None
            found[name] = resolved
        return found

    def _count_check(
        self,
        conn: Connection,
        name: str,
        query: Any,
        status_if_found: CheckStatus,
        message: str,
    ) -> IntegrityCheck:
        count = conn.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        return IntegrityCheck(
            name=name,
            category="preflight",
            status=CheckStatus.PASS if count == 0 else status_if_found,
            message=message.format(count=count),
            expected=0,
            actual=count,
        )

    def _preflight_orphaned_patients(self, conn: Connection) -> Optional[IntegrityCheck]:
        patient_cols = self._columns("dispatch_patient", "id", "user_id")
        user_cols = self._columns("auth_user", "id")
        if patient_cols is None or user_cols is None:
            return None
        patients = table("dispatch_patient", column(patient_cols["id"]), column(patient_cols["user_id"]))
        users = table("auth_user", column(user_cols["id"]))
        p_user = patients.c[patient_cols["user_id"]]
        u_id = users.c[user_cols["id"]]
        query = (
            select(patients.c[patient_cols["id"]])
            .select_from(patients.outerjoin(users, p_user == u_id))
            .where(u_id.is_(None))
        )
        return self._count_check(
            conn, "preflight:orphaned_patients", query, CheckStatus.FAIL,
            "{count} patients reference a missing user",
        )

    def _preflight_unknown_content_types(self, conn: Connection) -> Optional[IntegrityCheck]:
        record_cols = self._columns("dispatch_record", "id", "content_type_id")
        ct_cols = self._columns(CONTENT_TYPE_TABLE, "id")
        if record_cols is None:
            return None
        records = table("dispatch_record", column(record_cols["id"]), column(record_cols["content_type_id"]))
        r_type = records.c[record_cols["content_type_id"]]
        if ct_cols is None:
            query = select(records.c[record_cols["id"]])
        else:
            types = table(CONTENT_TYPE_TABLE, column(ct_cols["id"]))
            query = (
                select(records.c[record_cols["id"]])
                .select_from(records.outerjoin(types, r_type == types.c[ct_cols["id"]]))
                .where(types.c[ct_cols["id"]].is_(None))
            )
        return self._count_check(
            conn, "preflight:unknown_content_types", query, CheckStatus.WARNING,
            "{count} records have a content type that is not registered",
        )

    def _preflight_duplicate_patients(self, conn: Connection) -> Optional[IntegrityCheck]:
        cols = self._columns("dispatch_patient", "user_id")
        if cols is None:
            return None
        patients = table("dispatch_patient", column(cols["user_id"]))
        user_id = patients.c[cols["user_id"]]
        query = select(user_id).group_by(user_id).having(func.count() > 1)
        return self._count_check(
            conn, "preflight:duplicate_patients", query, CheckStatus.WARNING,
            "{count} users have more than one patient record",
        )

    def _preflight_duplicate_emails(self, conn: Connection) -> Optional[IntegrityCheck]:
        cols = self._columns("auth_user", "email")
        if cols is None:
            return None
        users = table("auth_user", column(cols["email"]))
        email = func.lower(users.c[cols["email"]])
        query = (
            select(email)
            .where(users.c[cols["email"]].is_not(None))
            .where(users.c[cols["email"]] != "")
            .group_by(email)
            .having(func.count() > 1)
        )
        return self._count_check(
            conn, "preflight:duplicate_emails", query, CheckStatus.WARNING,
            "{count} email addresses are shared by more than one user",
        )

    def _preflight_future_birthdates(self, conn: Connection) -> Optional[IntegrityCheck]:
        cols = self._columns("dispatch_patient", "id", "birthdate")
        if cols is None:
            return None
        patients = table("dispatch_patient", column(cols["id"]), column(cols["birthdate"]))
        birthdate = patients.c[cols["birthdate"]]
        query = select(patients.c[cols["id"]]).where(birthdate > func.current_date())
        return self._count_check(
            conn, "preflight:future_birthdates", query, CheckStatus.WARNING,
            "{count} patients have a birthdate in the future",
        )
