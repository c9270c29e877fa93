"""Content-type registry for generic associations."""

import logging
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from sqlalchemy import column, select, table
from sqlalchemy.engine import Connection

from ..catalog import CONTENT_TYPE_TABLE
from ..exceptions import RegistryNotLoadedError
from ..models.reference import ContentTypeEntry, UNKNOWN_LOGICAL_NAME
from .schema_prober import SchemaProber

logger = logging.getLogger(__name__)


class ContentTypeRegistry:
    """
    Immutable map of content-type id -> logical name, loaded once per run.

    Must be loaded before any reference is resolved; reads are safe from
    concurrent extraction workers.
    """

    def __init__(self, prober: Optional[SchemaProber] = None, table_name: str = CONTENT_TYPE_TABLE):
        self.prober = prober
        self.table_name = table_name
        self._entries: Optional[Mapping[int, ContentTypeEntry]] = None
        self._names: Optional[Mapping[int, str]] = None

    def load(self, connection: Connection) -> Mapping[int, str]:
        """
        Read the content-type table.

        Args:
            connection: Source connection

        Returns:
            Read-only mapping of type id to logical name ("app_label.model")
        """
        if self.prober is not None and not self.prober.table_exists(self.table_name):
            logger.warning(
                f"{self.table_name} not found; every generic reference will resolve to unknown"
            )
            return self.load_entries([])

        content_types = table(
            self.table_name, column("id"), column("app_label"), column("model")
        )
        rows = connection.execute(
            select(content_types.c.id, content_types.c.app_label, content_types.c.model)
            .order_by(content_types.c.id)
        )
        entries = [
            ContentTypeEntry(id=int(row.id), app_label=str(row.app_label), model=str(row.model))
            for row in rows
        ]
        return self.load_entries(entries)

    def load_entries(self, entries: Iterable[ContentTypeEntry]) -> Mapping[int, str]:
        """Load from already-read entries."""
        by_id: Dict[int, ContentTypeEntry] = {e.id: e for e in entries}
        self._entries = MappingProxyType(by_id)
        self._names = MappingProxyType({k: e.logical_name for k, e in by_id.items()})
        logger.info(f"Loaded {len(by_id)} content types")
        return self._names

    @property
    def is_loaded(self) -> bool:
        return self._names is not None

    @property
    def names(self) -> Mapping[int, str]:
        self._require_loaded()
        return self._names

    def resolve_logical_name(self, type_id: Optional[int]) -> str:
        """Logical name for a type id, or "unknown" when it is not mapped."""
        self._require_loaded()
        if type_id is None:
            return UNKNOWN_LOGICAL_NAME
        try:
            return self._names.get(int(type_id), UNKNOWN_LOGICAL_NAME)
        except (TypeError, ValueError):
            return UNKNOWN_LOGICAL_NAME

    def entry(self, type_id: int) -> Optional[ContentTypeEntry]:
        self._require_loaded()
        return self._entries.get(type_id)

    def __len__(self) -> int:
        return len(self._names or {})

    def _require_loaded(self) -> None:
        if self._names is None:
            raise RegistryNotLoadedError(
                "Content-type registry used before load()", phase="reference"
            )
