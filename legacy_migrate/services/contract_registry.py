"""Registry of source and target contracts per entity type."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel

from ..contracts import LEGACY_CONTRACTS, TARGET_CONTRACTS
from ..exceptions import ContractError

logger = logging.getLogger(__name__)


class ContractRegistry:
    """
    Registry for the pydantic contracts records are checked against.

    Supports:
    - Looking up the source contract of an entity type
    - Looking up the target contract of an (entity type, table) pair
    - Registering replacement contracts programmatically
    - Exporting JSON Schema documents for review
    """

    def __init__(
        self,
        source: Optional[Dict[str, Type[BaseModel]]] = None,
        target: Optional[Dict[Tuple[str, str], Type[BaseModel]]] = None,
    ):
        """
        Initialize the contract registry.

        Args:
            source: Source contracts keyed by entity type (defaults to the built-ins)
            target: Target contracts keyed by (entity type, table) (defaults to the built-ins)
        """
        self.source: Dict[str, Type[BaseModel]] = dict(LEGACY_CONTRACTS if source is None else source)
        self.target: Dict[Tuple[str, str], Type[BaseModel]] = dict(
            TARGET_CONTRACTS if target is None else target
        )

    def register_source(self, entity_type: str, contract: Type[BaseModel]) -> None:
        """Register a source contract."""
        self._check(contract)
        self.source[entity_type] = contract

    def register_target(self, entity_type: str, table: str, contract: Type[BaseModel]) -> None:
        """Register a target contract."""
        self._check(contract)
        self.target[(entity_type, table)] = contract

    def get_source(self, entity_type: str) -> Type[BaseModel]:
        """
        Source contract for an entity type.

        Raises:
            ContractError: If no contract is registered
        """
        contract = self.source.get(entity_type)
        if contract is None:
            raise ContractError(f"No source contract for {entity_type}", entity_type=entity_type)
        return contract

    def get_target(self, entity_type: str, table: str) -> Type[BaseModel]:
        """
        Target contract for the rows an entity type writes to a table.

        Raises:
            ContractError: If no contract is registered
        """
        contract = self.target.get((entity_type, table))
        if contract is None:
            raise ContractError(
                f"No target contract for {entity_type} -> {table}", entity_type=entity_type
            )
        return contract

    def export_json_schema(self, output_dir: str) -> int:
        """
        Write one JSON Schema file per contract.

        Args:
            output_dir: Directory to write into (created if missing)

        Returns:
            Number of files written
        """
        path = Path(output_dir)
        path.mkdir(parents=True, exist_ok=True)

        written = 0
        documents = [(f"source.{name}", c) for name, c in self.source.items()]
        documents += [(f"target.{name}.{table}", c) for (name, table), c in self.target.items()]
        for stem, contract in documents:
            with open(path / f"{stem}.json", "w") as f:
                json.dump(contract.model_json_schema(), f, indent=2)
            written += 1

        logger.info(f"Exported {written} contract schemas to {output_dir}")
        return written

    @staticmethod
    def _check(contract: Any) -> None:
        if not (isinstance(contract, type) and issubclass(contract, BaseModel)):
            raise ContractError(f"Contract must be a pydantic model class, got {contract!r}")
