from __future__ import annotations

from typing import Any, Dict, Optional

from refreshguard.service.errors import ServiceError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageError(ServiceError):
    """Opaque persistence failure (503).

    Callers retry with backoff; the token engine never retries internally.
    """

    status_code = 503
    error_code = "storage_error"


__all__ = ["ConstraintViolation", "StorageError"]
