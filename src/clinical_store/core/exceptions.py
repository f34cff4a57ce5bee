"""Core Exceptions Module.

This module defines the exceptions raised by the search compiler, the
versioned store and the storage accessors. Each carries a machine code and
the HTTP status an outer API layer is expected to map it to.
"""

from typing import Optional


class ClinicalStoreError(Exception):
    """Base exception for all Clinical Store errors."""

    default_code = "CLINICAL_STORE_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code, defaults to the class code
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class InvalidArgumentError(ClinicalStoreError):
    """Raised when a search parameter cannot be parsed."""

    default_code = "INVALID_ARGUMENT"
    http_status = 400


class ConflictError(ClinicalStoreError):
    """Raised when a write or delete cannot be applied."""

    default_code = "CONFLICT"
    http_status = 409


class VersionConflictError(ConflictError):
    """Raised when the current record moved past the expected version."""

    default_code = "VERSION_CONFLICT"


class DuplicateRecordError(ConflictError):
    """Raised by accessors when a storage key already exists."""

    default_code = "DUPLICATE_RECORD"


class StorageError(ClinicalStoreError):
    """Raised when a storage operation fails."""

    default_code = "STORAGE_ERROR"


class StorageUnavailableError(StorageError):
    """Raised when the storage backend cannot be reached."""

    default_code = "STORAGE_UNAVAILABLE"
    http_status = 503
