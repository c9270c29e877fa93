"""Exception hierarchy for migration runs."""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base error carrying the phase and entity type it happened in."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        entity_type: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.entity_type = entity_type
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "phase": self.phase,
            "entity_type": self.entity_type,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(MigrationError):
    """Invalid or incomplete configuration."""


class ConnectivityError(MigrationError):
    """Source or target database cannot be reached at run start."""


class SchemaDiscoveryError(MigrationError):
    """A required canonical column could not be found in the source table."""


class ContractError(MigrationError):
    """A schema contract is malformed. Always a programmer error."""


class RegistryNotLoadedError(MigrationError):
    """The content-type registry was used before it was loaded."""


class LoadError(MigrationError):
    """A row or batch could not be written to the target."""

    def __init__(self, message: str, code: str = "load_error", **kwargs):
        super().__init__(message, **kwargs)
        self.code = code


class BatchLoadError(LoadError):
    """A batch transaction failed after all retries were exhausted."""

    def __init__(
        self,
        message: str,
        legacy_ids: Optional[List[Any]] = None,
        result: Optional[Any] = None,
        **kwargs,
    ):
        super().__init__(message, code="batch_failed", **kwargs)
        self.legacy_ids = legacy_ids or []
        self.result = result  # LoadResult of the failed batch


class RequiredEntityError(MigrationError):
    """A required entity type failed, so the run cannot continue."""


class TransformError(MigrationError):
    """A record could not be mapped onto its target shape."""

    def __init__(self, message: str, field_path: str = "__root__", **kwargs):
        super().__init__(message, **kwargs)
        self.field_path = field_path
