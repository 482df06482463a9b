from __future__ import annotations

"""Exception hierarchy for the persistence layer."""

from typing import Any

__all__ = [
    "PersistenceError",
    "ConfigurationError",
    "EntityScanError",
    "StorageError",
    "PoolTimeoutError",
]


class PersistenceError(Exception):
    """Base class for errors raised by the data access layer."""

    status_code: int = 500
    error_code: str = "persistence_error"
    default_message: str = "Persistence error"

    def __init__(
        self,
        message: str | None = None,
        *,
        detail: Any | None = None,
        status_code: int | None = None,
    ) -> None:
        final_message = message or self.default_message
        super().__init__(final_message)
        self.message = final_message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(PersistenceError):
    """Raised when connection configuration or repository wiring is unusable."""

    error_code = "configuration_error"
    status_code = 500
    default_message = "Database configuration is invalid or incomplete"


class EntityScanError(ConfigurationError):
    """Raised when a namespace cannot be imported while scanning for entities."""

    error_code = "entity_scan_failed"
    default_message = "Entity scan failed"


class StorageError(PersistenceError):
    """Wraps a failure reported by the underlying store.

    The original exception is kept on ``cause`` and chained as ``__cause__``.
    """

    error_code = "storage_error"
    status_code = 503
    default_message = "Storage operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        cause: BaseException | None = None,
        detail: Any | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, detail=detail, status_code=status_code)
        self.cause = cause


class PoolTimeoutError(StorageError):
    """Raised when no pooled connection became available in time."""

    error_code = "pool_timeout"
    default_message = "Timed out waiting for a pooled connection"
