"""Migration orchestrator - coordinates the complete migration process."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .catalog import DEFAULT_ORDER_STATES, build_catalog, phases
from .context import MigrationContext
from .db import create_engine_from_url
from .exceptions import (
    BatchLoadError,
    ConnectivityError,
    ContractError,
    MigrationError,
    RequiredEntityError,
    SchemaDiscoveryError,
    TransformError,
)
from .extractors.base import BaseExtractor
from .extractors.sql_extractor import SQLExtractor
from .extractors.static_extractor import StaticExtractor
from .loaders.base import LoadResult
from .loaders.run_log import RunLogWriter
from .loaders.sql_loader import SQLUpsertLoader
from .models.migration import (
    MigrationConfig,
    MigrationRun,
    MigrationRunRecord,
    MigrationStatus,
    utc_now,
)
from .models.record import LegacyRecord, NormalizedEntity, QuarantinedRecord, Severity, ValidationIssue
from .models.report import IntegrityReport
from .models.schema import EntitySpec, MigrationPhase
from .progress import ProgressSink, ProgressTracker, WebhookProgressSink, logging_sink
from .services.auditor import IntegrityAuditor
from .services.contract_registry import ContractRegistry
from .services.report_store import ReportStore
from .services.resolver import GenericReferenceResolver
from .services.state_log import StateEvent, fold_state_log
from .services.transformer import TransformEngine
from .services.validator import RecordValidator, summarize_rejections

logger = logging.getLogger(__name__)

_DONE = (MigrationStatus.COMPLETED, MigrationStatus.PARTIAL)


class MigrationOrchestrator:
    """
    Orchestrates the complete migration process.

    Handles:
    - Connectivity checks and content-type registry loading
    - Preflight source checks and source counts
    - Phased extraction, validation, transformation and loading
    - Parallel entity types within a phase, in dependency waves
    - Required/optional entity failure policy
    - Integrity auditing and reporting
    """

    def __init__(
        self,
        config: MigrationConfig,
        source_engine: Optional[Engine] = None,
        target_engine: Optional[Engine] = None,
        catalog: Optional[List[EntitySpec]] = None,
        progress_sinks: Optional[List[ProgressSink]] = None,
        contracts: Optional[ContractRegistry] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            source_engine: Source engine (created from config.source_url if omitted)
            target_engine: Target engine (created from config.target_url if omitted)
            catalog: Entity catalog (defaults to the built-in one)
            progress_sinks: Callables receiving ProgressEvent objects
            contracts: Contract registry (defaults to the built-in contracts)
        """
        self.config = config
        self.source_engine = source_engine or create_engine_from_url(config.source_url)
        self.target_engine = target_engine or create_engine_from_url(config.target_url)
        self.catalog = catalog or build_catalog()
        self.contracts = contracts or ContractRegistry()
        self.validator = RecordValidator()
        self.report_store = ReportStore(config.output_dir)

        sinks = list(progress_sinks) if progress_sinks is not None else [logging_sink]
        if config.progress_webhook_url:
            sinks.append(WebhookProgressSink(config.progress_webhook_url))
        self.progress = ProgressTracker(sinks=sinks)

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self.context: Optional[MigrationContext] = None
        self.transformer: Optional[TransformEngine] = None
        self.run_log: Optional[RunLogWriter] = None
        self._outcomes: Dict[str, MigrationStatus] = {}
        self._lock = threading.Lock()

    def run_migration(self) -> MigrationRun:
        """
        Run the complete migration.

        Always returns a MigrationRun summary, also when entity types failed
        or the run was aborted.

        Returns:
            MigrationRun with results and statistics
        """
        self.config.validate()
        self.run = MigrationRun(name=self.config.name, dry_run=self.config.dry_run)
        self.run.started_at = utc_now()
        self.run.status = MigrationStatus.RUNNING
        self.run.metadata["config"] = self.config.to_dict()
        self.context = MigrationContext(
            config=self.config,
            source_engine=self.source_engine,
            target_engine=self.target_engine,
            run_id=self.run.id,
            catalog=self.catalog,
        )
        self._outcomes = {}
        specs = self.context.selected_specs()
        self.progress.total = len(specs)
        preflight = []

        try:
            logger.info("=== STARTING MIGRATION ===")
            self._check_connectivity()
            self.run_log = None if self.config.dry_run else RunLogWriter(self.target_engine, self.config)

            with self.source_engine.connect() as conn:
                self.context.registry.load(conn)
                preflight = self._auditor().run_preflight(conn)
            self.run.metadata["preflight"] = [p.to_dict() for p in preflight]

            self._count_source(specs)
            self.transformer = TransformEngine(
                resolver=GenericReferenceResolver(self.context.registry, self.context.id_map)
            )
            if not self.config.dry_run:
                self._loader().preload_backlinks(self._namespaces())

            self.progress.emit("start", f"Migrating {len(specs)} entity types")
            for number, phase in enumerate(phases(specs), start=1):
                logger.info(f"=== PHASE {number}: {phase.value.upper()} ===")
                self._run_phase(phase, [s for s in specs if s.phase == phase], specs)

            logger.info("=== MIGRATION COMPLETED ===")

        except MigrationError as e:
            logger.error(f"Migration failed: {e}")
            self.run.status = MigrationStatus.FAILED
            self.run.errors.append({**e.to_dict(), "timestamp": utc_now().isoformat()})

        finally:
            self.run.completed_at = utc_now()
            self.run.update_totals()
            if self.run.status != MigrationStatus.FAILED:
                self.run.status = self.run.resolve_status()
            self.run.integrity_report = self._build_report(preflight)
            self._save_report()
            self.progress.emit(
                "complete",
                f"Run {self.run.status.value}: {self.run.total_records_succeeded} succeeded, "
                f"{self.run.total_records_failed} failed, {self.run.total_records_rejected} rejected",
            )

        return self.run

    def audit(self, run_id: str) -> IntegrityReport:
        """
        Re-run the post-load checks for a stored run against the target.

        Raises:
            MigrationError: If no report is stored for the run
        """
        stored = self.report_store.get_run(run_id)
        if stored is None:
            raise MigrationError(f"No stored run {run_id} in {self.report_store.logs_dir}")
        rejected = [
            QuarantinedRecord.from_dict(q)
            for q in self.report_store.get_rejections(run_id) or []
            if q.get("stage") != "target"
        ]
        failures = {r["entity_type"]: r.get("records_failed", 0) for r in stored.get("records", [])}

        report = self._auditor().run_checks(
            run_id,
            source_counts=stored.get("source_counts") or {},
            failures=failures,
            rejected=rejected,
        )
        self.report_store.save_integrity(report)
        return report

    # Setup

    def _check_connectivity(self) -> None:
        for role, engine in (("source", self.source_engine), ("target", self.target_engine)):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except SQLAlchemyError as e:
                raise ConnectivityError(f"Cannot connect to {role} database: {e}", cause=e) from e

    def _auditor(self) -> IntegrityAuditor:
        prober = self.context.prober if self.context else None
        return IntegrityAuditor(self.target_engine, self.catalog, source_prober=prober)

    def _count_source(self, specs: List[EntitySpec]) -> None:
        auditor = self._auditor()
        for spec in specs:
            try:
                extractor = self._create_extractor(spec)
                self.run.source_counts[spec.name] = auditor.count_source(spec, extractor)
            except SchemaDiscoveryError as e:
                logger.warning(f"Cannot count {spec.name}: {e}")
                self.run.source_counts[spec.name] = 0
        logger.info(f"Source counts: {self.run.source_counts}")

    def _namespaces(self) -> List[str]:
        """Every backlink namespace of the catalog."""
        return sorted({
            target.namespace(backlink)
            for spec in self.catalog
            for target in spec.targets
            for backlink in target.backlinks
        })

    def _create_extractor(self, spec: EntitySpec) -> BaseExtractor:
        """Create an appropriate extractor for the entity type."""
        if spec.source_table is None:
            return StaticExtractor(spec, self.config, DEFAULT_ORDER_STATES)
        return SQLExtractor(spec, self.config, self.source_engine, self.context.prober)

    def _loader(self) -> SQLUpsertLoader:
        return SQLUpsertLoader(
            self.target_engine,
            self.config,
            self.context.id_map,
            contracts=self.contracts,
            validator=self.validator,
        )

    # Scheduling

    def _run_phase(self, phase: MigrationPhase, phase_specs: List[EntitySpec], selected: List[EntitySpec]) -> None:
        """
        Run the entity types of one phase in dependency waves.

        Entity types whose dependencies have finished run concurrently, up to
        ``parallel_workers`` at a time.

        Raises:
            RequiredEntityError: If a required entity type failed or was skipped
        """
        selected_names = {s.name for s in selected}
        pending = list(phase_specs)

        while pending:
            ready, blocked = [], []
            for spec in pending:
                deps = [d for d in spec.depends_on if d in selected_names]
                failed = [d for d in deps if self._outcomes.get(d) in (MigrationStatus.FAILED, MigrationStatus.SKIPPED)]
                if failed:
                    self._skip(phase, spec, failed)
                elif all(self._outcomes.get(d) in _DONE for d in deps):
                    ready.append(spec)
                else:
                    blocked.append(spec)

            if not ready:
                if blocked and len(blocked) == len(pending):
                    raise ContractError(
                        f"Dependency cycle among {[s.name for s in blocked]}", phase=phase.value
                    )
                pending = blocked
                continue

            errors = []
            workers = min(self.config.parallel_workers, len(ready))
            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="migrate") as pool:
                    futures = [pool.submit(self._migrate_entity, phase, spec) for spec in ready]
                    for future in futures:
                        try:
                            future.result()
                        except RequiredEntityError as e:
                            errors.append(e)
            else:
                for spec in ready:
                    self._migrate_entity(phase, spec)

            if errors:
                raise errors[0]
            pending = blocked

    def _skip(self, phase: MigrationPhase, spec: EntitySpec, failed_deps: List[str]) -> None:
        record = self._add_record(phase, spec.name)
        record.status = MigrationStatus.SKIPPED
        record.error = f"Skipped: dependencies did not complete: {failed_deps}"
        record.started_at = record.completed_at = utc_now()
        self._outcomes[spec.name] = MigrationStatus.SKIPPED
        self._write_run_log(record)
        logger.warning(f"{spec.name}: {record.error}")
        self.progress.entity_done(phase.value, spec.name, {}, MigrationStatus.SKIPPED.value)

        if self.config.is_required(spec.name) or any(self.config.is_required(d) for d in failed_deps):
            raise RequiredEntityError(
                f"Required entity type {spec.name} cannot run: {failed_deps} did not complete",
                phase=phase.value,
                entity_type=spec.name,
            )

    # One entity type

    def _migrate_entity(self, phase: MigrationPhase, spec: EntitySpec) -> MigrationRunRecord:
        """
        Extract, validate, transform and load one entity type.

        Raises:
            RequiredEntityError: If the entity type is required and failed
        """
        record = self._add_record(phase, spec.name)
        record.status = MigrationStatus.RUNNING
        record.started_at = utc_now()
        with self._lock:
            self.run.current_entity = spec.name
        self._write_run_log(record)
        load_result = LoadResult(entity_type=spec.name, started_at=record.started_at)

        try:
            extractor = self._create_extractor(spec)
            loader = None if self.config.dry_run else self._loader()
            contract = self.contracts.get_source(spec.name)

            if spec.name == "states":
                pages = self._fold_states(spec, extractor, contract, record)
            else:
                pages = self._validated_pages(spec, extractor, contract, record)

            for page, timelines in pages:
                entities, quarantined = self.transformer.transform_batch(page, spec, timelines=timelines)
                self._quarantine(record, quarantined)
                if loader is None:
                    record.records_succeeded += len({e.legacy_id for e in entities})
                    record.checkpoint = page[-1].legacy_id if page else record.checkpoint
                    continue
                self._load(record, loader, spec, entities, load_result)
                record.checkpoint = page[-1].legacy_id if page else record.checkpoint
                self._write_run_log(record)

            if loader is not None:
                self._load(record, loader, spec, None, load_result)

            record.status = (
                MigrationStatus.PARTIAL
                if record.records_failed or record.records_rejected
                else MigrationStatus.COMPLETED
            )
            logger.info(
                f"{spec.name}: {record.records_processed} processed, {record.records_succeeded} succeeded, "
                f"{record.records_failed} failed, {record.records_rejected} rejected"
            )

        except BatchLoadError as e:
            self._fail(record, spec, e)
            load_result = e.result or load_result

        except (SchemaDiscoveryError, TransformError, SQLAlchemyError, TimeoutError) as e:
            self._fail(record, spec, e)

        finally:
            record.completed_at = utc_now()
            load_result.completed_at = record.completed_at
            with self._lock:
                self._outcomes[spec.name] = record.status
                self.run.load_results[spec.name] = load_result.to_dict()
            self._write_run_log(record)
            self.progress.entity_done(
                phase.value,
                spec.name,
                {
                    "processed": record.records_processed,
                    "succeeded": record.records_succeeded,
                    "failed": record.records_failed,
                    "rejected": record.records_rejected,
                },
                record.status.value,
            )

        if record.status == MigrationStatus.FAILED and self.config.is_required(spec.name):
            raise RequiredEntityError(
                f"Required entity type {spec.name} failed: {record.error}",
                phase=phase.value,
                entity_type=spec.name,
            )
        return record

    def _validated_pages(self, spec, extractor, contract, record) -> Iterator[tuple]:
        for batch in extractor.stream():
            record.records_processed += len(batch)
            validated = self.validator.validate_batch(batch, spec.name, contract)
            self._quarantine(record, validated.rejected)
            yield validated.accepted, None

    def _fold_states(self, spec, extractor, contract, record) -> Iterator[tuple]:
        """
        Read the whole state log, fold it per order, then yield it in batches.

        Folding needs every event of an order, so the log is read fully
        before any of it is transformed.
        """
        accepted: List[LegacyRecord] = []
        events: List[StateEvent] = []
        for batch in extractor.stream():
            record.records_processed += len(batch)
            validated = self.validator.validate_batch(batch, spec.name, contract)
            self._quarantine(record, validated.rejected)
            for legacy in validated.accepted:
                try:
                    events.append(self.transformer.state_event(legacy, spec))
                except TransformError as e:
                    self._quarantine(record, [QuarantinedRecord(
                        entity_type=spec.name,
                        legacy_id=legacy.legacy_id,
                        stage="transform",
                        data=dict(legacy.data),
                        issues=[ValidationIssue(
                            record_legacy_id=legacy.legacy_id,
                            field_path=e.field_path,
                            message=e.message,
                            severity=Severity.ERROR,
                            code="transform",
                            stage="transform",
                        )],
                    )])
                    continue
                accepted.append(legacy)

        timelines = fold_state_log(events)
        logger.info(f"Folded {len(events)} state events into {len(timelines)} order timelines")

        size = self.config.batch_size
        for start in range(0, len(accepted), size):
            yield accepted[start:start + size], timelines

    def _load(
        self,
        record: MigrationRunRecord,
        loader: SQLUpsertLoader,
        spec: EntitySpec,
        entities: Optional[List[NormalizedEntity]],
        load_result: LoadResult,
    ) -> None:
        """Load one page, or with ``entities`` None, the rows the loader held back."""
        try:
            if entities is None:
                page_result = loader.finish(spec.name)
            else:
                page_result = loader.load_all(spec.name, entities)
        except BatchLoadError as e:
            self._count_load(record, e.result)
            load_result.merge(e.result)
            e.result = load_result
            raise
        load_result.merge(page_result)
        self._count_load(record, page_result)

    def _count_load(self, record: MigrationRunRecord, result: Optional[LoadResult]) -> None:
        if result is None:
            return
        record.records_succeeded += len(result.succeeded_legacy_ids())
        record.records_failed += len(result.failed_legacy_ids())
        self._quarantine(record, result.quarantined, count=False)
        for row in result.results:
            if row.warnings:
                record.warnings.extend(f"{row.legacy_id}: {w}" for w in row.warnings)

    def _fail(self, record: MigrationRunRecord, spec: EntitySpec, error: Exception) -> None:
        record.status = MigrationStatus.FAILED
        record.error = str(error)
        required = "required" if self.config.is_required(spec.name) else "optional"
        logger.error(f"{spec.name} ({required}) failed on {spec.source_table}: {error}")
        with self._lock:
            self.run.errors.append({
                "entity_type": spec.name,
                "phase": spec.phase.value,
                "error_type": type(error).__name__,
                "error": str(error),
                "timestamp": utc_now().isoformat(),
            })

    def _quarantine(self, record: MigrationRunRecord, quarantined: List[QuarantinedRecord], count: bool = True) -> None:
        if not quarantined:
            return
        if count:
            record.records_rejected += len(quarantined)
        with self._lock:
            self.run.quarantined.extend(quarantined)

    def _add_record(self, phase: MigrationPhase, entity_type: str) -> MigrationRunRecord:
        with self._lock:
            return self.run.add_record(phase.value, entity_type)

    def _write_run_log(self, record: MigrationRunRecord) -> None:
        if self.run_log is not None:
            self.run_log.write(record)

    # Reporting

    def _build_report(self, preflight) -> IntegrityReport:
        auditor = self._auditor()
        rejected = [q for q in self.run.quarantined if q.stage != "target"]
        if self.config.dry_run or (self.run.status == MigrationStatus.FAILED and not self.run.records):
            report = IntegrityReport(run_id=self.run.id)
            report.rejection_summary = summarize_rejections(rejected)
            for item in auditor.check_rejections(report.rejection_summary):
                report.add(item)
        else:
            failures = {r.entity_type: r.records_failed for r in self.run.records}
            try:
                report = auditor.run_checks(
                    self.run.id,
                    source_counts=self.run.source_counts,
                    failures=failures,
                    rejected=rejected,
                )
            except SQLAlchemyError as e:
                logger.error(f"Integrity checks failed: {e}")
                report = IntegrityReport(run_id=self.run.id)
                self.run.errors.append({"error_type": "IntegrityCheckError", "error": str(e)})
        report.items[0:0] = list(preflight)
        return report

    def _save_report(self) -> None:
        """Save the run summary, integrity report and rejections."""
        self.report_store.save_run(self.run)
        if self.run.integrity_report is not None:
            self.report_store.save_integrity(self.run.integrity_report)
        if self.config.save_rejected:
            self.report_store.save_rejected(self.run)

    def summary(self) -> Dict[str, Any]:
        """Counts per entity type for display."""
        if self.run is None:
            return {}
        return {
            r.entity_type: {
                "phase": r.phase,
                "status": r.status.value,
                "processed": r.records_processed,
                "succeeded": r.records_succeeded,
                "failed": r.records_failed,
                "rejected": r.records_rejected,
            }
            for r in self.run.records
        }
