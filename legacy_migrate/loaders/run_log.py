"""Durable run log: one row per phase per entity type in the target store."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import MetaData, Table, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..catalog import RUN_LOG_TABLE
from ..models.migration import MigrationConfig, MigrationRunRecord
from ..db import retry_policy

logger = logging.getLogger(__name__)


class RunLogWriter:
    """
    Writes MigrationRunRecord rows to the run-log table.

    The table is part of the target schema. When it does not exist the
    writer logs once and does nothing; the JSON report still carries the
    same records.
    """

    def __init__(self, engine: Engine, config: MigrationConfig, table_name: str = RUN_LOG_TABLE):
        self.engine = engine
        self.config = config
        self.table_name = table_name
        self._table: Optional[Table] = None
        self._available: Optional[bool] = None

    @property
    def available(self) -> bool:
        if self._available is None:
            try:
                self._table = Table(self.table_name, MetaData(), autoload_with=self.engine)
                self._available = True
            except NoSuchTableError:
                logger.warning(f"Run-log table {self.table_name} does not exist; run log not persisted")
                self._available = False
        return self._available

    def write(self, record: MigrationRunRecord) -> bool:
        """
        Insert or update the row for a run record.

        Returns:
            True if the row was written
        """
        if not self.available:
            return False

        tbl = self._table
        values = self._values(record)
        try:
            retry_policy(self.config, logger)(self._upsert, tbl, record.id, values)
        except SQLAlchemyError as e:
            # the run log never decides the outcome of a run
            logger.error(f"Could not write run log for {record.entity_type}: {e}")
            return False
        return True

    def read(self, run_id: str) -> List[Dict[str, Any]]:
        """Rows written for one run, oldest first."""
        if not self.available:
            return []
        tbl = self._table
        query = select(tbl).where(tbl.c.run_id == run_id)
        if "started_at" in tbl.c:
            query = query.order_by(tbl.c.started_at)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def _upsert(self, tbl: Table, record_id: str, values: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            exists = conn.execute(select(tbl.c.id).where(tbl.c.id == record_id)).first()
            if exists:
                conn.execute(update(tbl).where(tbl.c.id == record_id).values(**values))
            else:
                conn.execute(insert(tbl).values(id=record_id, **values))

    def _values(self, record: MigrationRunRecord) -> Dict[str, Any]:
        values = {
            "run_id": record.run_id,
            "phase": record.phase,
            "entity_type": record.entity_type,
            "status": record.status.value,
            "records_processed": record.records_processed,
            "records_succeeded": record.records_succeeded,
            "records_failed": record.records_failed,
            "records_rejected": record.records_rejected,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
            "error": record.error,
            "checkpoint": record.checkpoint,
        }
        if "warnings" in self._table.c:
            values["warnings"] = json.dumps(record.warnings)
        return {k: v for k, v in values.items() if k in self._table.c}
