"""Idempotent relational loader: upsert by legacy-id backlink."""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import JSON, MetaData, Table, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..context import LegacyIdMap
from ..db import apply_statement_timeout, retry_policy
from ..exceptions import BatchLoadError, LoadError
from ..models.migration import MigrationConfig, utc_now
from ..models.record import NormalizedEntity, QuarantinedRecord, RecordStatus, RowResult
from ..models.reference import LegacyRef
from ..services.contract_registry import ContractRegistry
from ..services.validator import RecordValidator
from .base import BaseLoader, LoadResult

logger = logging.getLogger(__name__)

ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "legacy-migrate")


def deterministic_id(table: str, backlink: str, legacy_id: Any) -> str:
    """Target primary key for a legacy row; stable across runs and targets."""
    return str(uuid.uuid5(ID_NAMESPACE, f"{table}.{backlink}:{legacy_id}"))


def is_retryable_load_error(error: BaseException) -> bool:
    return isinstance(error, (SQLAlchemyError, TimeoutError))


@dataclass
class _PreparedRow:
    entity: NormalizedEntity
    values: Dict[str, Any]
    in_batch: List[LegacyRef] = field(default_factory=list)  # rows earlier in this batch
    later: List[LegacyRef] = field(default_factory=list)  # optional, filled by finish()
    pending: List[LegacyRef] = field(default_factory=list)  # left NULL by the last write


@dataclass
class _Fixup:
    table: str
    row_id: str
    legacy_id: str
    ref: LegacyRef


class _HoldRow(Exception):
    """A required reference points at a row of the same table not loaded yet."""


class SQLUpsertLoader(BaseLoader):
    """
    Loader for a relational target.

    Each row is matched on its legacy-id backlink: an existing row is
    updated, a missing one is inserted under a deterministic id. Foreign
    keys are resolved from the run's legacy-id map before the transaction
    starts; a required reference that is not in the map fails that row with
    an ``unresolved_reference`` load error instead of writing a null.
    Every row is checked against its target contract before it is written.

    References between rows of the same table (a reply and its parent
    message) cannot wait for the id map alone:

    - a row earlier in the same batch is looked up inside the transaction
    - a required reference to a row not loaded yet holds the row back until
      ``finish()``, which retries held rows until no more resolve
    - an optional one is written as NULL and filled in by ``finish()``
    """

    def __init__(
        self,
        engine: Engine,
        config: MigrationConfig,
        id_map: LegacyIdMap,
        contracts: Optional[ContractRegistry] = None,
        validator: Optional[RecordValidator] = None,
        schema: Optional[str] = None,
    ):
        """
        Initialize the loader.

        Args:
            engine: Target engine
            config: Run configuration
            id_map: Legacy-id map shared by the run
            contracts: Registry holding the target contracts
            validator: Validator used for the target check
            schema: Target schema name, if not the default
        """
        super().__init__(config, id_map)
        self.engine = engine
        self.contracts = contracts or ContractRegistry()
        self.validator = validator or RecordValidator()
        self.schema = schema
        self._metadata = MetaData(schema=schema)
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()
        self._dropped_columns: Set[Tuple[str, str]] = set()
        self._held: List[NormalizedEntity] = []
        self._fixups: List[_Fixup] = []

    # Target metadata

    def table(self, name: str) -> Table:
        """Reflected target table (cached)."""
        with self._lock:
            if name not in self._tables:
                self._tables[name] = Table(name, self._metadata, autoload_with=self.engine)
            return self._tables[name]

    def preload_backlinks(self, namespaces: Iterable[str]) -> Dict[str, int]:
        """
        Seed the id map with legacy ids already present in the target.

        Args:
            namespaces: "<table>.<backlink column>" entries to read

        Returns:
            namespace -> number of ids added
        """
        counts: Dict[str, int] = {}
        with self.engine.connect() as conn:
            apply_statement_timeout(conn, self.config.timeout_ms)
            for namespace in sorted(set(namespaces)):
                table_name, backlink = namespace.split(".", 1)
                try:
                    tbl = self.table(table_name)
                except NoSuchTableError:
                    logger.warning(f"Target table {table_name} does not exist; nothing to preload")
                    continue
                if backlink not in tbl.c:
                    logger.warning(f"Target column {namespace} does not exist; nothing to preload")
                    continue
                rows = conn.execute(
                    select(tbl.c[backlink], tbl.c.id).where(tbl.c[backlink].is_not(None))
                )
                counts[namespace] = self.id_map.seed(namespace, ((r[0], r[1]) for r in rows))

        if counts:
            logger.info(f"Preloaded legacy ids from target: {counts}")
        return counts

    # Loading

    def load_batch(self, entities: List[NormalizedEntity]) -> LoadResult:
        """
        Upsert one batch in a single transaction.

        Rows that fail reference resolution or the target contract are failed
        individually and left out of the transaction. A database error rolls
        back the whole batch, which is then retried with backoff.
        """
        entity_type = entities[0].entity_type if entities else ""
        result = LoadResult(entity_type=entity_type, started_at=utc_now(), batches=1)

        prepared: List[_PreparedRow] = []
        in_batch: Set[Tuple[str, str]] = set()
        for entity in entities:
            try:
                prepared.append(self._prepare(entity, result, in_batch))
            except _HoldRow:
                self._held.append(entity)
            except LoadError as e:
                result.add(RowResult(
                    legacy_id=entity.legacy_id,
                    target_table=entity.target_table,
                    error=e.message,
                    error_code=e.code,
                    warnings=list(entity.warnings),
                ))
            else:
                in_batch.update(
                    (f"{entity.target_table}.{backlink}", str(legacy_id))
                    for backlink, legacy_id in entity.backlinks.items()
                )

        if prepared:
            attempts = {"count": 0}

            def _attempt():
                attempts["count"] += 1
                return self._write(prepared)

            try:
                rows = retry_policy(self.config, logger, is_retryable_load_error)(_attempt)
            except SQLAlchemyError as e:
                legacy_ids = sorted({p.entity.legacy_id for p in prepared})
                for p in prepared:
                    result.add(RowResult(
                        legacy_id=p.entity.legacy_id,
                        target_table=p.entity.target_table,
                        error=str(e.orig if getattr(e, "orig", None) else e),
                        error_code="batch_failed",
                        retry_count=attempts["count"] - 1,
                    ))
                result.failed_batches = 1
                result.completed_at = utc_now()
                logger.error(
                    f"{entity_type}: batch of {len(legacy_ids)} records failed after "
                    f"{attempts['count']} attempts: {e}"
                )
                raise BatchLoadError(
                    f"Batch failed after {attempts['count']} attempts: {e}",
                    legacy_ids=legacy_ids,
                    result=result,
                    entity_type=entity_type,
                    cause=e,
                ) from e

            for row in rows:
                row.retry_count = attempts["count"] - 1
                result.add(row)
            self._register(prepared, rows)
            for p, row in zip(prepared, rows):
                if row.success:
                    self._fixups.extend(
                        _Fixup(p.entity.target_table, row.target_id, p.entity.legacy_id, ref)
                        for ref in p.pending
                    )

        result.completed_at = utc_now()
        return result

    def finish(self, entity_type: str) -> LoadResult:
        """
        Complete references between rows of the same table.

        Held rows are loaded again until a round resolves nothing more; the
        rest fail with ``unresolved_reference``. Optional references written
        as NULL are then filled in where their row has been loaded.

        Raises:
            BatchLoadError: If a batch of held rows still fails after all retries
        """
        result = LoadResult(entity_type=entity_type, started_at=utc_now())

        while self._held:
            held, self._held = self._held, []
            for batch in self.batches(held):
                try:
                    result.merge(self.load_batch(batch))
                except BatchLoadError as e:
                    result.merge(e.result)
                    result.completed_at = utc_now()
                    e.result = result
                    raise
            if len(self._held) == len(held):
                break

        for entity in self._held:
            missing = [
                f"{r.namespace}={r.legacy_id}" for r in entity.references
                if r.required and self.id_map.get(r.namespace, r.legacy_id) is None
            ]
            result.add(RowResult(
                legacy_id=entity.legacy_id,
                target_table=entity.target_table,
                error=f"no migrated row for {', '.join(missing)}",
                error_code="unresolved_reference",
                warnings=list(entity.warnings),
            ))
        self._held = []

        if self._fixups:
            filled = retry_policy(self.config, logger, is_retryable_load_error)(self._apply_fixups)
            logger.info(f"{entity_type}: filled {filled} of {len(self._fixups)} deferred references")
            self._fixups = []

        result.completed_at = utc_now()
        return result

    def _apply_fixups(self) -> int:
        filled = 0
        with self.engine.begin() as conn:
            apply_statement_timeout(conn, self.config.timeout_ms)
            for fixup in self._fixups:
                target_id = self.id_map.get(fixup.ref.namespace, fixup.ref.legacy_id)
                if target_id is None:
                    logger.warning(
                        f"{fixup.table} {fixup.legacy_id}: {fixup.ref.column} left empty, "
                        f"no migrated row for {fixup.ref.namespace}={fixup.ref.legacy_id}"
                    )
                    continue
                tbl = self.table(fixup.table)
                conn.execute(
                    update(tbl).where(tbl.c.id == fixup.row_id).values({fixup.ref.column: target_id})
                )
                filled += 1
        return filled

    def _prepare(
        self,
        entity: NormalizedEntity,
        result: LoadResult,
        in_batch: Optional[Set[Tuple[str, str]]] = None,
    ) -> _PreparedRow:
        """Resolve references and check the row against its target contract."""
        values = entity.row()
        prepared = _PreparedRow(entity, values)
        own = {f"{entity.target_table}.{backlink}" for backlink in entity.backlinks}
        for ref in entity.references:
            target_id = self.id_map.get(ref.namespace, ref.legacy_id)
            if target_id is None and ref.namespace in own:
                values[ref.column] = None
                if (ref.namespace, str(ref.legacy_id)) in (in_batch or ()):
                    prepared.in_batch.append(ref)
                elif ref.required:
                    raise _HoldRow()
                else:
                    prepared.later.append(ref)
                continue
            if target_id is None and ref.required:
                raise LoadError(
                    f"{ref.column}: no migrated row for {ref.namespace}={ref.legacy_id}",
                    code="unresolved_reference",
                    entity_type=entity.entity_type,
                )
            values[ref.column] = target_id

        contract = self.contracts.get_target(entity.entity_type, entity.target_table)
        checked = self.validator.validate(values, contract, entity.legacy_id, stage="target")
        if not checked.valid:
            result.quarantined.append(QuarantinedRecord(
                entity_type=entity.entity_type,
                legacy_id=entity.legacy_id,
                stage="target",
                data=values,
                issues=checked.issues,
            ))
            detail = "; ".join(f"{i.field_path}: {i.message}" for i in checked.errors)
            raise LoadError(
                f"{entity.target_table} contract: {detail}",
                code="target_validation",
                entity_type=entity.entity_type,
            )
        return prepared

    def _write(self, prepared: List[_PreparedRow]) -> List[RowResult]:
        """One transaction for the whole batch."""
        rows: List[RowResult] = []
        with self.engine.begin() as conn:
            apply_statement_timeout(conn, self.config.timeout_ms)
            existing = self._existing_ids(conn, prepared)
            written: Dict[Tuple[str, str], str] = {}
            for p in prepared:
                row = self._upsert(conn, p, existing, written)
                if row.success:
                    for backlink, legacy_id in p.entity.backlinks.items():
                        written[(f"{p.entity.target_table}.{backlink}", str(legacy_id))] = row.target_id
                rows.append(row)
        return rows

    def _existing_ids(self, conn: Connection, prepared: List[_PreparedRow]) -> Dict[Tuple[str, str, str], str]:
        """(table, match column, legacy id) -> target id for rows already in the target."""
        wanted: Dict[Tuple[str, str], Set[Any]] = {}
        for p in prepared:
            key = (p.entity.target_table, p.entity.match_on)
            wanted.setdefault(key, set()).add(p.entity.match_value)

        found: Dict[Tuple[str, str, str], str] = {}
        for (table_name, match_on), values in wanted.items():
            tbl = self.table(table_name)
            query = select(tbl.c[match_on], tbl.c.id).where(tbl.c[match_on].in_(sorted(values)))
            for legacy_id, target_id in conn.execute(query):
                found[(table_name, match_on, str(legacy_id))] = str(target_id)
        return found

    def _upsert(
        self,
        conn: Connection,
        p: _PreparedRow,
        existing: Dict[Tuple[str, str, str], str],
        written: Dict[Tuple[str, str], str],
    ) -> RowResult:
        entity = p.entity
        p.pending = list(p.later)
        for ref in p.in_batch:
            target_id = written.get((ref.namespace, str(ref.legacy_id)))
            if target_id is not None:
                p.values[ref.column] = target_id
            elif ref.required:
                return RowResult(
                    legacy_id=entity.legacy_id,
                    target_table=entity.target_table,
                    error=f"{ref.column}: no migrated row for {ref.namespace}={ref.legacy_id}",
                    error_code="unresolved_reference",
                    warnings=list(entity.warnings),
                )
            else:
                p.pending.append(ref)

        tbl = self.table(entity.target_table)
        values = self._encode(tbl, p.values)
        key = (entity.target_table, entity.match_on, str(entity.match_value))
        target_id = existing.get(key)

        if target_id is not None:
            conn.execute(update(tbl).where(tbl.c.id == target_id).values(**values))
            status = RecordStatus.UPDATED
        elif entity.update_only:
            return RowResult(
                legacy_id=entity.legacy_id,
                target_table=entity.target_table,
                error=f"No {entity.target_table} row with {entity.match_on}={entity.match_value}",
                error_code="missing_target",
                warnings=list(entity.warnings),
            )
        else:
            target_id = deterministic_id(entity.target_table, entity.match_on, entity.match_value)
            conn.execute(insert(tbl).values(id=target_id, **values))
            existing[key] = target_id
            status = RecordStatus.INSERTED

        return RowResult(
            legacy_id=entity.legacy_id,
            target_table=entity.target_table,
            target_id=target_id,
            status=status,
            warnings=list(entity.warnings),
        )

    def _encode(self, tbl: Table, values: Dict[str, Any]) -> Dict[str, Any]:
        """Fit values to the reflected columns of the target table."""
        encoded = {}
        for name, value in values.items():
            if name == "id":
                continue
            if name not in tbl.c:
                if (tbl.name, name) not in self._dropped_columns:
                    self._dropped_columns.add((tbl.name, name))
                    logger.warning(f"Target table {tbl.name} has no column {name}; value dropped")
                continue
            if isinstance(value, (dict, list)) and not isinstance(tbl.c[name].type, JSON):
                value = json.dumps(value, default=str)
            elif isinstance(value, uuid.UUID):
                value = str(value)
            encoded[name] = value
        return encoded

    def _register(self, prepared: List[_PreparedRow], rows: List[RowResult]) -> None:
        """Record committed ids under every backlink namespace of their rows."""
        for p, row in zip(prepared, rows):
            if not row.success:
                continue
            for backlink, legacy_id in p.entity.backlinks.items():
                self.id_map.register(f"{p.entity.target_table}.{backlink}", legacy_id, row.target_id)
