"""Source schema capability discovery."""

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class SchemaProber:
    """
    Discovers which columns exist in each source table.

    The catalog is read once per table per run and cached, so the extractor
    can build queries against any historical version of a table without
    per-version branches. A missing table is not an error: it probes as an
    empty column set and is remembered as absent.
    """

    def __init__(self, engine: Engine, schema: Optional[str] = None):
        """
        Initialize the prober.

        Args:
            engine: Source database engine (read-only use)
            schema: Optional database schema name, e.g. "public"
        """
        self.engine = engine
        self.schema = schema
        self._columns: Dict[str, FrozenSet[str]] = {}
        self._absent: set = set()
        self._primary_keys: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def probe_columns(self, table_name: str) -> FrozenSet[str]:
        """
        Get the set of column names of a source table.

        Args:
            table_name: Source table name

        Returns:
            Column names, or an empty set if the table does not exist
        """
        with self._lock:
            if table_name in self._columns:
                return self._columns[table_name]

            columns: FrozenSet[str] = frozenset()
            try:
                inspector = inspect(self.engine)
                if inspector.has_table(table_name, schema=self.schema):
                    columns = frozenset(
                        col["name"] for col in inspector.get_columns(table_name, schema=self.schema)
                    )
                    logger.debug(f"Probed {table_name}: {len(columns)} columns")
                else:
                    self._absent.add(table_name)
                    logger.warning(f"Source table {table_name} is absent")
            except SQLAlchemyError as e:
                self._absent.add(table_name)
                logger.error(f"Catalog lookup failed for {table_name}: {e}")

            self._columns[table_name] = columns
            return columns

    def table_exists(self, table_name: str) -> bool:
        """True if the table was found in the source catalog."""
        self.probe_columns(table_name)
        return table_name not in self._absent

    def resolve_column(self, table_name: str, candidates: Iterable[str]) -> Optional[str]:
        """First candidate column that exists in the table."""
        columns = self.probe_columns(table_name)
        for candidate in candidates:
            if candidate in columns:
                return candidate
        return None

    def primary_key(self, table_name: str, default: str = "id") -> Optional[str]:
        """
        Single-column primary key of a table.

        Falls back to ``default`` when the catalog has no key but the column
        exists, and to None when neither is available.
        """
        columns = self.probe_columns(table_name)
        with self._lock:
            if table_name in self._primary_keys:
                return self._primary_keys[table_name]

        pk: Optional[str] = None
        if columns:
            try:
                constraint = inspect(self.engine).get_pk_constraint(table_name, schema=self.schema)
                key_columns: List[str] = constraint.get("constrained_columns") or []
                if len(key_columns) == 1:
                    pk = key_columns[0]
            except SQLAlchemyError as e:
                logger.warning(f"Primary key lookup failed for {table_name}: {e}")
            if pk is None and default in columns:
                pk = default

        with self._lock:
            self._primary_keys[table_name] = pk
        return pk

    @property
    def absent_tables(self) -> List[str]:
        with self._lock:
            return sorted(self._absent)
