"""Relational source extractor with schema-tolerant query construction."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import column, func, select, table
from sqlalchemy.engine import Engine
from sqlalchemy.sql import Select

from ..db import apply_statement_timeout, retry_policy
from ..exceptions import SchemaDiscoveryError
from ..models.migration import MigrationConfig
from ..models.record import LegacyRecord
from ..models.schema import EntitySpec
from ..services.schema_prober import SchemaProber
from .base import BaseExtractor

logger = logging.getLogger(__name__)


class SQLExtractor(BaseExtractor):
    """
    Extractor for one legacy table.

    The query is built from the entity's canonical column list: each column
    is looked up by name and then by alias through the schema prober, found
    columns are selected under their canonical name and missing ones are
    left out for the transformer to default. A missing table extracts as an
    empty sequence. Pages are read with keyset pagination on the primary key.
    """

    def __init__(
        self,
        spec: EntitySpec,
        config: MigrationConfig,
        engine: Engine,
        prober: SchemaProber,
        schema: Optional[str] = None,
    ):
        """
        Initialize the SQL extractor.

        Args:
            spec: Entity spec to extract
            config: Run configuration
            engine: Source engine (read-only use)
            prober: Schema prober for the source database
            schema: Source schema name, if not the default
        """
        super().__init__(spec, config)
        self.engine = engine
        self.prober = prober
        self.schema = schema
        self._planned = False
        self._pk_source: Optional[str] = None

    def plan(self) -> Dict[str, str]:
        """
        Resolve canonical columns against the source table.

        Returns:
            canonical column -> source column, empty when the table is absent

        Raises:
            SchemaDiscoveryError: If a required column has no match
        """
        if self._planned:
            return self.result.column_map

        source_table = self.spec.source_table
        if not source_table or not self.prober.table_exists(source_table):
            self.result.table_absent = True
            self._planned = True
            self.add_warning(f"Source table {source_table} is absent; extracting nothing")
            return {}

        column_map: Dict[str, str] = {}
        missing: List[str] = []
        for strategy in self.spec.fields:
            found = self.prober.resolve_column(source_table, strategy.candidates)
            if found is None:
                if strategy.required:
                    raise SchemaDiscoveryError(
                        f"Required column {strategy.name} (or aliases {list(strategy.aliases)}) "
                        f"not found in {source_table}",
                        entity_type=self.spec.name,
                    )
                missing.append(strategy.name)
                continue
            column_map[strategy.name] = found
            if found != strategy.name:
                logger.debug(f"{source_table}: using {found} for {strategy.name}")

        if self.spec.primary_key not in column_map:
            raise SchemaDiscoveryError(
                f"Primary key {self.spec.primary_key} not found in {source_table}",
                entity_type=self.spec.name,
            )

        if missing:
            logger.info(f"{source_table}: columns absent, defaults apply: {missing}")

        self.result.column_map = column_map
        self.result.missing_columns = missing
        self._pk_source = column_map[self.spec.primary_key]
        self._planned = True
        return column_map

    def build_query(self, after: Optional[Any] = None, limit: Optional[int] = None) -> Select:
        """SELECT for one page, columns labelled with canonical names."""
        column_map = self.plan()
        source = table(self.spec.source_table, schema=self.schema)
        query = select(*[column(src).label(canon) for canon, src in column_map.items()])
        query = query.select_from(source)
        if after is not None:
            query = query.where(column(self._pk_source) > after)
        query = query.order_by(column(self._pk_source))
        if limit:
            query = query.limit(limit)
        return query

    def extract_batch(self, after: Optional[Any] = None, limit: int = 100) -> List[LegacyRecord]:
        """Extract one page of records after the given primary key."""
        if not self.plan():
            return []

        query = self.build_query(after=after, limit=limit)
        rows = retry_policy(self.config, logger)(self._fetch, query)
        return [self.create_record(row) for row in rows]

    def count(self) -> int:
        """Row count of the source table (0 when the table is absent)."""
        if not self.plan():
            return 0
        query = select(func.count()).select_from(table(self.spec.source_table, schema=self.schema))

        def _count():
            with self.engine.connect() as conn:
                apply_statement_timeout(conn, self.config.timeout_ms)
                return conn.execute(query).scalar_one()

        return int(retry_policy(self.config, logger)(_count))

    def _fetch(self, query: Select) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            apply_statement_timeout(conn, self.config.timeout_ms)
            try:
                return [dict(row) for row in conn.execute(query).mappings()]
            except Exception:
                logger.error(f"Query failed on {self.spec.source_table}: {query}")
                raise
