"""Entity catalog models: phases, field-resolution strategies and target specs."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum


class MigrationPhase(str, Enum):
    """Ordered stages of a run. Later phases foreign-key into earlier ones."""
    REFERENCE = "reference"
    PARTIES = "parties"
    CORE = "core"
    DEPENDENT = "dependent"
    STATE_LOG = "state_log"


PHASE_ORDER: List[MigrationPhase] = [
    MigrationPhase.REFERENCE,
    MigrationPhase.PARTIES,
    MigrationPhase.CORE,
    MigrationPhase.DEPENDENT,
    MigrationPhase.STATE_LOG,
]


@dataclass(frozen=True)
class FieldStrategy:
    """
    How to find one canonical column in a source table.

    The canonical name is tried first, then each alias in order. When none
    exist the column is left out of the query and the transformer falls back
    to ``default`` (or the current timestamp when ``default_now`` is set).
    """
    name: str
    aliases: Tuple[str, ...] = ()
    default: Any = None
    default_now: bool = False
    required: bool = False
    description: str = ""

    @property
    def candidates(self) -> Tuple[str, ...]:
        return (self.name,) + tuple(self.aliases)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "name": self.name,
            "aliases": list(self.aliases),
            "required": self.required,
        }
        if self.default is not None:
            result["default"] = self.default
        if self.default_now:
            result["default"] = "current_timestamp"
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class ForeignKeySpec:
    """A target foreign key checked by the orphan audit."""
    column: str
    references_table: str
    references_column: str = "id"


@dataclass(frozen=True)
class TargetSpec:
    """A target table an entity type writes to."""
    table: str
    backlinks: Tuple[str, ...]
    foreign_keys: Tuple[ForeignKeySpec, ...] = ()

    def namespace(self, backlink: Optional[str] = None) -> str:
        """Legacy-id map namespace for a backlink column of this table."""
        return f"{self.table}.{backlink or self.backlinks[0]}"


@dataclass(frozen=True)
class ParitySpec:
    """How to compare source and target counts for an entity type."""
    target_table: str
    backlink: str


@dataclass
class EntitySpec:
    """Definition of one migrated entity type."""
    name: str
    phase: MigrationPhase
    source_table: Optional[str]  # None for reference data defined in code
    fields: List[FieldStrategy] = field(default_factory=list)
    targets: List[TargetSpec] = field(default_factory=list)
    primary_key: str = "id"
    depends_on: List[str] = field(default_factory=list)
    generic_reference: Optional[Tuple[str, str]] = None  # (type column, object column)
    parity: Optional[ParitySpec] = None
    description: str = ""

    @property
    def canonical_columns(self) -> List[str]:
        return [f.name for f in self.fields]

    def strategy(self, name: str) -> Optional[FieldStrategy]:
        for strategy in self.fields:
            if strategy.name == name:
                return strategy
        return None

    def defaults(self) -> Dict[str, FieldStrategy]:
        """Strategies that carry a documented default."""
        return {
            f.name: f for f in self.fields
            if f.default is not None or f.default_now
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "phase": self.phase.value,
            "source_table": self.source_table,
            "primary_key": self.primary_key,
            "fields": [f.to_dict() for f in self.fields],
            "targets": [
                {
                    "table": t.table,
                    "backlinks": list(t.backlinks),
                    "foreign_keys": [
                        f"{fk.column}->{fk.references_table}.{fk.references_column}"
                        for fk in t.foreign_keys
                    ],
                }
                for t in self.targets
            ],
            "depends_on": self.depends_on,
            "generic_reference": list(self.generic_reference) if self.generic_reference else None,
            "description": self.description,
        }
