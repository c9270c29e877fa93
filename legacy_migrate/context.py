"""Per-run migration context and the legacy-id map."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.engine import Engine

from .catalog import build_catalog, catalog_by_name
from .models.migration import MigrationConfig
from .models.schema import EntitySpec
from .services.content_types import ContentTypeRegistry
from .services.schema_prober import SchemaProber

logger = logging.getLogger(__name__)


class LegacyIdMap:
    """
    legacy id -> new id, per namespace ("<table>.<backlink column>").

    Seeded from the target before loading and extended after each committed
    batch. Each key is written once per run.
    """

    def __init__(self):
        self._ids: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(namespace: str, legacy_id: Any) -> Tuple[str, str]:
        return namespace, str(legacy_id)

    def get(self, namespace: str, legacy_id: Any) -> Optional[str]:
        if legacy_id is None:
            return None
        with self._lock:
            return self._ids.get(self._key(namespace, legacy_id))

    def register(self, namespace: str, legacy_id: Any, new_id: str) -> None:
        key = self._key(namespace, legacy_id)
        with self._lock:
            existing = self._ids.get(key)
            if existing is not None and existing != new_id:
                logger.warning(
                    f"Ignoring remap of {namespace}:{legacy_id} from {existing} to {new_id}"
                )
                return
            self._ids[key] = new_id

    def seed(self, namespace: str, pairs: Iterable[Tuple[Any, str]]) -> int:
        """Add (legacy id, new id) pairs read from the target. Returns the count added."""
        added = 0
        with self._lock:
            for legacy_id, new_id in pairs:
                if legacy_id is None:
                    continue
                key = self._key(namespace, legacy_id)
                if key not in self._ids:
                    self._ids[key] = str(new_id)
                    added += 1
        return added

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class MigrationContext:
    """
    Everything one run shares between components.

    Built once per run by the orchestrator and passed to each component.
    Never shared between runs.
    """
    config: MigrationConfig
    source_engine: Engine
    target_engine: Engine
    run_id: str
    catalog: List[EntitySpec] = field(default_factory=build_catalog)
    id_map: LegacyIdMap = field(default_factory=LegacyIdMap)
    prober: Optional[SchemaProber] = None
    registry: Optional[ContentTypeRegistry] = None

    def __post_init__(self):
        if self.prober is None:
            self.prober = SchemaProber(self.source_engine)
        if self.registry is None:
            self.registry = ContentTypeRegistry(self.prober)
        self._specs = catalog_by_name(self.catalog)

    def spec(self, entity_type: str) -> EntitySpec:
        return self._specs[entity_type]

    def selected_specs(self) -> List[EntitySpec]:
        """Catalog entries this run migrates, in catalog order."""
        if not self.config.entity_types:
            return list(self.catalog)
        wanted = set(self.config.entity_types)
        unknown = wanted - set(self._specs)
        if unknown:
            logger.warning(f"Ignoring unknown entity types: {sorted(unknown)}")
        return [spec for spec in self.catalog if spec.name in wanted]
