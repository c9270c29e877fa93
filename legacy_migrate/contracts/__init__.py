"""Pydantic contracts for source rows and target rows."""

from .legacy import LEGACY_CONTRACTS, LegacyContract
from .target import TARGET_CONTRACTS, TargetContract

__all__ = [
    "LEGACY_CONTRACTS",
    "LegacyContract",
    "TARGET_CONTRACTS",
    "TargetContract",
]
